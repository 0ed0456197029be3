# ===----------------------------------------------------------------------=== #
# Copyright (c) 2025, Modular Inc. All rights reserved.
#
# Licensed under the Apache License v2.0 with LLVM Exceptions:
# https://llvm.org/LICENSE.txt
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# ===----------------------------------------------------------------------=== #

"""Bind ctypes functions from the signatures declared on a typing.Protocol."""

from __future__ import annotations

import ctypes
import inspect
import sys
from collections.abc import Callable, Iterable
from typing import Annotated, Any, TypeVar, cast, get_args, get_origin

_T = TypeVar("_T")
_TCData = TypeVar("_TCData", bound="ctypes._CData")

_POINTER_PREFIX = "ctypes._Pointer["


def _protocol_members(protocol: type) -> frozenset[str]:
    if sys.version_info >= (3, 13):
        from typing import get_protocol_members

        return get_protocol_members(protocol)
    return frozenset(
        key for key in protocol.__dict__ if not key.startswith("_")
    )


def _resolve(annotation: Any, namespace: dict[str, Any]) -> Any:
    if annotation is inspect.Parameter.empty:
        raise TypeError("Parameter/return must be annotated")
    if get_origin(annotation) is Annotated:
        # The ctypes type is the metadata, not the Python type.
        return _resolve(get_args(annotation)[1], namespace)
    if not isinstance(annotation, str):
        return annotation
    if annotation.startswith(_POINTER_PREFIX) and annotation.endswith("]"):
        # ctypes._Pointer is not subscriptable at runtime.
        inner = annotation[len(_POINTER_PREFIX) : -1]
        return ctypes.POINTER(_resolve(inner, namespace))
    return _resolve(eval(annotation, namespace), namespace)


# Callable[[], _T] keeps mypy from rejecting protocol classes (mypy #4717).
def bind_protocol(
    dll: ctypes.CDLL,
    protocol: Callable[[], _T],
    optional: Iterable[str] = (),
) -> tuple[_T, frozenset[str]]:
    """Set argtypes/restype on every protocol member found in ``dll``.

    Members listed in ``optional`` may be absent from the library; their names
    are returned so callers can report them as unsupported. Any other missing
    symbol raises ``AttributeError``.
    """
    assert isinstance(protocol, type)
    module = sys.modules.get(getattr(protocol, "__module__", ""))
    if module is None or getattr(module, protocol.__name__, None) is not protocol:
        raise TypeError("Protocol must be defined at module level")
    namespace = vars(module)
    optional = frozenset(optional)
    missing: set[str] = set()

    for member in sorted(_protocol_members(protocol)):
        try:
            cfunc = getattr(dll, member)
        except AttributeError:
            if member not in optional:
                raise
            missing.add(member)
            continue
        signature = inspect.signature(getattr(protocol, member))
        parameters = list(signature.parameters.values())[1:]
        cfunc.argtypes = [
            _resolve(parameter.annotation, namespace) for parameter in parameters
        ]
        cfunc.restype = _resolve(signature.return_annotation, namespace)
    return cast(_T, dll), frozenset(missing)


# typeshed erases the pointee type from ctypes.byref; with POINTER argtypes
# ctypes passes instances by reference on its own.
def byref(value: _TCData) -> ctypes._Pointer[_TCData]:
    return cast("ctypes._Pointer[_TCData]", value)
