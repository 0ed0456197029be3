from __future__ import annotations

from collections.abc import Callable
import enum
from functools import partial
import logging
from types import TracebackType

from rocm_tap.backend import TelemetryBackend
from rocm_tap.rsmi import DEFAULT_LIBRARY, RSMIError, check_status, load_backend

BackendLoader = Callable[[], TelemetryBackend]


class SessionState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"


class SessionError(Exception):
    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class RocmSession:
    """Caller-owned handle on the vendor library's process-wide context.

    Not thread-safe: initialize, shutdown and metric refreshes must not run
    concurrently against the same session.
    """

    def __init__(
        self,
        loader: BackendLoader | None = None,
        library_path: str = DEFAULT_LIBRARY,
    ) -> None:
        self._loader = loader or partial(load_backend, library_path)
        self._backend: TelemetryBackend | None = None
        self.state = SessionState.UNINITIALIZED
        self.device_count = 0
        self.last_error: str | None = None
        self.last_exception: RSMIError | None = None
        self.logger = logging.getLogger(self.__class__.__name__)

    def __enter__(self) -> RocmSession:
        if not self.initialize():
            message = self.last_error or "ROCm SMI initialization failed"
            if self.last_exception is not None:
                raise SessionError(
                    message, code=self.last_exception.code
                ) from self.last_exception
            raise SessionError(message)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.shutdown()

    @property
    def backend(self) -> TelemetryBackend:
        if self._backend is None or self.state is not SessionState.READY:
            raise SessionError("ROCm SMI session is not initialized")
        return self._backend

    def _fail(self, context: str, exc: RSMIError) -> bool:
        self.last_error = f"{context} failed: {exc}"
        self.last_exception = exc
        self.logger.debug("%s (status %s)", self.last_error, exc.code)
        return False

    def initialize(self) -> bool:
        if self.state is SessionState.READY:
            return True

        try:
            backend = self._loader()
        except (OSError, AttributeError) as exc:
            self.last_error = f"Unable to load ROCm SMI: {exc}"
            self.last_exception = None
            self.logger.warning(self.last_error)
            return False

        try:
            check_status(backend, backend.init())
        except RSMIError as exc:
            return self._fail("rsmi_init", exc)

        count = backend.device_count()
        try:
            check_status(backend, count.status)
        except RSMIError as exc:
            backend.shutdown()
            return self._fail("Device count query", exc)

        self._backend = backend
        self.device_count = count.value
        self.state = SessionState.READY
        self.last_error = None
        self.last_exception = None
        self.logger.info("ROCm SMI ready with %s monitored devices.", self.device_count)
        return True

    def shutdown(self) -> None:
        if self.state is not SessionState.READY:
            return
        assert self._backend is not None
        self._backend.shutdown()
        self._backend = None
        self.device_count = 0
        self.state = SessionState.UNINITIALIZED
        self.logger.debug("ROCm SMI shut down.")

    def is_available(self) -> bool:
        return self.state is SessionState.READY
