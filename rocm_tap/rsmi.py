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

"""ctypes binding of the ROCm SMI library."""

from __future__ import annotations

import ctypes
import logging
from typing import Annotated, Any, Protocol, runtime_checkable

from rocm_tap import _bindtools
from rocm_tap.backend import (
    STATUS_NOT_SUPPORTED,
    STATUS_SUCCESS,
    ClockDomain,
    FrequencyTable,
    GpuMetricsBlock,
    MemoryPool,
    MetricsHeader,
    PciThroughput,
    PowerSample,
    Reading,
    TelemetryBackend,
    TemperatureSensor,
)

DEFAULT_LIBRARY = "librocm_smi64.so"

RSMI_INIT_FLAG_THREAD_ONLY_MUTEX = 0x400000000000000
RSMI_MAX_NUM_FREQUENCIES = 33
RSMI_MAX_FAN_SPEED = 255
RSMI_TEMP_CURRENT = 0
RSMI_NUM_HBM_INSTANCES = 4
RSMI_MAX_NUM_VCNS = 4

_rsmi_status_t = Annotated[int, ctypes.c_uint32]
_rsmi_index_t = Annotated[int, ctypes.c_uint32]
_rsmi_enum_t = Annotated[int, ctypes.c_uint32]
_size_t = Annotated[int, ctypes.c_size_t]


class RSMIFrequencies(ctypes.Structure):
    _fields_ = [
        ("has_deep_sleep", ctypes.c_bool),
        ("num_supported", ctypes.c_uint32),
        ("current", ctypes.c_uint32),
        ("frequency", ctypes.c_uint64 * RSMI_MAX_NUM_FREQUENCIES),
    ]


class RSMIMetricsHeader(ctypes.Structure):
    _fields_ = [
        ("structure_size", ctypes.c_uint16),
        ("format_revision", ctypes.c_uint8),
        ("content_revision", ctypes.c_uint8),
    ]


class RSMIGpuMetrics(ctypes.Structure):
    # Leading fields of rsmi_gpu_metrics_t up to the instantaneous PCIe
    # bandwidth; the tail is reserved space so newer table revisions fit.
    _fields_ = [
        ("common_header", RSMIMetricsHeader),
        ("temperature_edge", ctypes.c_uint16),
        ("temperature_hotspot", ctypes.c_uint16),
        ("temperature_mem", ctypes.c_uint16),
        ("temperature_vrgfx", ctypes.c_uint16),
        ("temperature_vrsoc", ctypes.c_uint16),
        ("temperature_vrmem", ctypes.c_uint16),
        ("average_gfx_activity", ctypes.c_uint16),
        ("average_umc_activity", ctypes.c_uint16),
        ("average_mm_activity", ctypes.c_uint16),
        ("average_socket_power", ctypes.c_uint16),
        ("energy_accumulator", ctypes.c_uint64),
        ("system_clock_counter", ctypes.c_uint64),
        ("average_gfxclk_frequency", ctypes.c_uint16),
        ("average_socclk_frequency", ctypes.c_uint16),
        ("average_uclk_frequency", ctypes.c_uint16),
        ("average_vclk0_frequency", ctypes.c_uint16),
        ("average_dclk0_frequency", ctypes.c_uint16),
        ("average_vclk1_frequency", ctypes.c_uint16),
        ("average_dclk1_frequency", ctypes.c_uint16),
        ("current_gfxclk", ctypes.c_uint16),
        ("current_socclk", ctypes.c_uint16),
        ("current_uclk", ctypes.c_uint16),
        ("current_vclk0", ctypes.c_uint16),
        ("current_dclk0", ctypes.c_uint16),
        ("current_vclk1", ctypes.c_uint16),
        ("current_dclk1", ctypes.c_uint16),
        ("throttle_status", ctypes.c_uint32),
        ("current_fan_speed", ctypes.c_uint16),
        ("pcie_link_width", ctypes.c_uint16),
        ("pcie_link_speed", ctypes.c_uint16),
        ("padding", ctypes.c_uint16),
        ("gfx_activity_acc", ctypes.c_uint32),
        ("mem_activity_acc", ctypes.c_uint32),
        ("temperature_hbm", ctypes.c_uint16 * RSMI_NUM_HBM_INSTANCES),
        ("firmware_timestamp", ctypes.c_uint64),
        ("voltage_soc", ctypes.c_uint16),
        ("voltage_gfx", ctypes.c_uint16),
        ("voltage_mem", ctypes.c_uint16),
        ("padding1", ctypes.c_uint16),
        ("indep_throttle_status", ctypes.c_uint64),
        ("current_socket_power", ctypes.c_uint16),
        ("vcn_activity", ctypes.c_uint16 * RSMI_MAX_NUM_VCNS),
        ("gfxclk_lock_status", ctypes.c_uint32),
        ("xgmi_link_width", ctypes.c_uint16),
        ("xgmi_link_speed", ctypes.c_uint16),
        ("pcie_bandwidth_acc", ctypes.c_uint64),
        ("pcie_bandwidth_inst", ctypes.c_uint64),
        ("reserved", ctypes.c_uint8 * 2048),
    ]


@runtime_checkable
class _RSMILibrary(Protocol):
    def rsmi_init(
        self, init_flags: Annotated[int, ctypes.c_uint64]
    ) -> _rsmi_status_t: ...
    def rsmi_shut_down(self) -> _rsmi_status_t: ...
    def rsmi_status_string(
        self, status: _rsmi_status_t, string: ctypes._Pointer[ctypes.c_char_p]
    ) -> _rsmi_status_t: ...
    def rsmi_num_monitor_devices(
        self, num_devices: ctypes._Pointer[ctypes.c_uint32]
    ) -> _rsmi_status_t: ...
    def rsmi_dev_pci_id_get(
        self, dv_ind: _rsmi_index_t, bdfid: ctypes._Pointer[ctypes.c_uint64]
    ) -> _rsmi_status_t: ...
    def rsmi_dev_market_name_get(
        self, dv_ind: _rsmi_index_t, name: ctypes.c_char_p, length: _size_t
    ) -> _rsmi_status_t: ...
    def rsmi_dev_name_get(
        self, dv_ind: _rsmi_index_t, name: ctypes.c_char_p, length: _size_t
    ) -> _rsmi_status_t: ...
    def rsmi_dev_busy_percent_get(
        self, dv_ind: _rsmi_index_t, busy_percent: ctypes._Pointer[ctypes.c_uint32]
    ) -> _rsmi_status_t: ...
    def rsmi_dev_gpu_clk_freq_get(
        self,
        dv_ind: _rsmi_index_t,
        clk_type: _rsmi_enum_t,
        frequencies: ctypes._Pointer[RSMIFrequencies],
    ) -> _rsmi_status_t: ...
    def rsmi_dev_memory_total_get(
        self,
        dv_ind: _rsmi_index_t,
        mem_type: _rsmi_enum_t,
        total: ctypes._Pointer[ctypes.c_uint64],
    ) -> _rsmi_status_t: ...
    def rsmi_dev_memory_usage_get(
        self,
        dv_ind: _rsmi_index_t,
        mem_type: _rsmi_enum_t,
        used: ctypes._Pointer[ctypes.c_uint64],
    ) -> _rsmi_status_t: ...
    def rsmi_dev_memory_busy_percent_get(
        self, dv_ind: _rsmi_index_t, busy_percent: ctypes._Pointer[ctypes.c_uint32]
    ) -> _rsmi_status_t: ...
    def rsmi_dev_temp_metric_get(
        self,
        dv_ind: _rsmi_index_t,
        sensor_type: _rsmi_enum_t,
        metric: _rsmi_enum_t,
        temperature: ctypes._Pointer[ctypes.c_int64],
    ) -> _rsmi_status_t: ...
    def rsmi_dev_fan_speed_get(
        self,
        dv_ind: _rsmi_index_t,
        sensor_ind: _rsmi_index_t,
        speed: ctypes._Pointer[ctypes.c_int64],
    ) -> _rsmi_status_t: ...
    def rsmi_dev_fan_rpms_get(
        self,
        dv_ind: _rsmi_index_t,
        sensor_ind: _rsmi_index_t,
        speed: ctypes._Pointer[ctypes.c_int64],
    ) -> _rsmi_status_t: ...
    def rsmi_dev_power_get(
        self,
        dv_ind: _rsmi_index_t,
        power: ctypes._Pointer[ctypes.c_uint64],
        power_type: ctypes._Pointer[ctypes.c_uint32],
    ) -> _rsmi_status_t: ...
    def rsmi_dev_power_ave_get(
        self,
        dv_ind: _rsmi_index_t,
        sensor_ind: _rsmi_index_t,
        power: ctypes._Pointer[ctypes.c_uint64],
    ) -> _rsmi_status_t: ...
    def rsmi_dev_power_cap_get(
        self,
        dv_ind: _rsmi_index_t,
        sensor_ind: _rsmi_index_t,
        cap: ctypes._Pointer[ctypes.c_uint64],
    ) -> _rsmi_status_t: ...
    def rsmi_dev_metrics_header_info_get(
        self,
        dv_ind: _rsmi_index_t,
        header: ctypes._Pointer[RSMIMetricsHeader],
    ) -> _rsmi_status_t: ...
    def rsmi_dev_gpu_metrics_info_get(
        self,
        dv_ind: _rsmi_index_t,
        metrics: ctypes._Pointer[RSMIGpuMetrics],
    ) -> _rsmi_status_t: ...
    def rsmi_dev_pci_throughput_get(
        self,
        dv_ind: _rsmi_index_t,
        sent: ctypes._Pointer[ctypes.c_uint64],
        received: ctypes._Pointer[ctypes.c_uint64],
        max_pkt_sz: ctypes._Pointer[ctypes.c_uint64],
    ) -> _rsmi_status_t: ...


# Entry points that older library releases do not export.
_OPTIONAL_SYMBOLS = frozenset(
    {
        "rsmi_dev_market_name_get",
        "rsmi_dev_power_get",
        "rsmi_dev_metrics_header_info_get",
        "rsmi_dev_gpu_metrics_info_get",
    }
)


class RSMIError(Exception):
    def __init__(self, code: int, message: str, /) -> None:
        super().__init__(message)
        self.code = code


def check_status(backend: TelemetryBackend, status: int) -> None:
    """Raise ``RSMIError`` with the library's description of a failed status."""
    if status != STATUS_SUCCESS:
        raise RSMIError(status, backend.describe(status))


class RsmiBackend:
    """Wraps each ROCm SMI entry point as a call returning a ``Reading``."""

    max_fan_scale = RSMI_MAX_FAN_SPEED

    def __init__(
        self, library: _RSMILibrary, missing: frozenset[str] = frozenset()
    ) -> None:
        self.library = library
        self.missing = missing
        self.logger = logging.getLogger(self.__class__.__name__)
        if missing:
            self.logger.debug("ROCm SMI library lacks: %s", ", ".join(sorted(missing)))

    def _supported(self, symbol: str) -> bool:
        return symbol not in self.missing

    def init(self) -> int:
        return self.library.rsmi_init(RSMI_INIT_FLAG_THREAD_ONLY_MUTEX)

    def shutdown(self) -> None:
        self.library.rsmi_shut_down()

    def describe(self, status: int) -> str:
        message = ctypes.c_char_p()
        if (
            self.library.rsmi_status_string(status, _bindtools.byref(message))
            != STATUS_SUCCESS
            or message.value is None
        ):
            return "(Unknown)"
        return message.value.decode(errors="replace")

    def device_count(self) -> Reading[int]:
        count = ctypes.c_uint32()
        status = self.library.rsmi_num_monitor_devices(_bindtools.byref(count))
        return _reading(status, count.value)

    def device_location(self, index: int) -> Reading[int]:
        bdfid = ctypes.c_uint64()
        status = self.library.rsmi_dev_pci_id_get(index, _bindtools.byref(bdfid))
        return _reading(status, bdfid.value)

    def device_name_primary(self, index: int, length: int) -> Reading[str]:
        if not self._supported("rsmi_dev_market_name_get"):
            return Reading.unavailable(STATUS_NOT_SUPPORTED)
        buffer = ctypes.create_string_buffer(length)
        status = self.library.rsmi_dev_market_name_get(index, buffer, length)
        return _reading(status, buffer.value.decode(errors="replace"))

    def device_name_secondary(self, index: int, length: int) -> Reading[str]:
        buffer = ctypes.create_string_buffer(length)
        status = self.library.rsmi_dev_name_get(index, buffer, length)
        return _reading(status, buffer.value.decode(errors="replace"))

    def busy_percent(self, index: int) -> Reading[int]:
        busy = ctypes.c_uint32()
        status = self.library.rsmi_dev_busy_percent_get(index, _bindtools.byref(busy))
        return _reading(status, busy.value)

    def clock_frequencies(
        self, index: int, domain: ClockDomain
    ) -> Reading[FrequencyTable]:
        freqs = RSMIFrequencies()
        status = self.library.rsmi_dev_gpu_clk_freq_get(
            index, int(domain), _bindtools.byref(freqs)
        )
        if status != STATUS_SUCCESS:
            return Reading.unavailable(status)
        count = min(freqs.num_supported, RSMI_MAX_NUM_FREQUENCIES)
        return Reading.of(
            FrequencyTable(
                supported=tuple(freqs.frequency[:count]),
                current_index=freqs.current,
            )
        )

    def memory_total(self, index: int, pool: MemoryPool) -> Reading[int]:
        total = ctypes.c_uint64()
        status = self.library.rsmi_dev_memory_total_get(
            index, int(pool), _bindtools.byref(total)
        )
        return _reading(status, total.value)

    def memory_used(self, index: int, pool: MemoryPool) -> Reading[int]:
        used = ctypes.c_uint64()
        status = self.library.rsmi_dev_memory_usage_get(
            index, int(pool), _bindtools.byref(used)
        )
        return _reading(status, used.value)

    def memory_busy_percent(self, index: int) -> Reading[int]:
        busy = ctypes.c_uint32()
        status = self.library.rsmi_dev_memory_busy_percent_get(
            index, _bindtools.byref(busy)
        )
        return _reading(status, busy.value)

    def temperature(self, index: int, sensor: TemperatureSensor) -> Reading[int]:
        millidegrees = ctypes.c_int64()
        status = self.library.rsmi_dev_temp_metric_get(
            index, int(sensor), RSMI_TEMP_CURRENT, _bindtools.byref(millidegrees)
        )
        return _reading(status, millidegrees.value)

    def fan_speed(self, index: int, sensor: int) -> Reading[int]:
        speed = ctypes.c_int64(-1)
        status = self.library.rsmi_dev_fan_speed_get(
            index, sensor, _bindtools.byref(speed)
        )
        return _reading(status, speed.value)

    def fan_rpm(self, index: int, sensor: int) -> Reading[int]:
        rpm = ctypes.c_int64(-1)
        status = self.library.rsmi_dev_fan_rpms_get(
            index, sensor, _bindtools.byref(rpm)
        )
        return _reading(status, rpm.value)

    def power_instant(self, index: int) -> Reading[PowerSample]:
        if not self._supported("rsmi_dev_power_get"):
            return Reading.unavailable(STATUS_NOT_SUPPORTED)
        power = ctypes.c_uint64()
        power_type = ctypes.c_uint32()
        status = self.library.rsmi_dev_power_get(
            index, _bindtools.byref(power), _bindtools.byref(power_type)
        )
        return _reading(status, PowerSample(power.value, power_type.value))

    def power_average(self, index: int, sensor: int) -> Reading[int]:
        power = ctypes.c_uint64()
        status = self.library.rsmi_dev_power_ave_get(
            index, sensor, _bindtools.byref(power)
        )
        return _reading(status, power.value)

    def power_cap(self, index: int, sensor: int) -> Reading[int]:
        cap = ctypes.c_uint64()
        status = self.library.rsmi_dev_power_cap_get(
            index, sensor, _bindtools.byref(cap)
        )
        return _reading(status, cap.value)

    def metrics_header(self, index: int) -> Reading[MetricsHeader]:
        if not self._supported("rsmi_dev_metrics_header_info_get"):
            return Reading.unavailable(STATUS_NOT_SUPPORTED)
        header = RSMIMetricsHeader()
        status = self.library.rsmi_dev_metrics_header_info_get(
            index, _bindtools.byref(header)
        )
        return _reading(
            status,
            MetricsHeader(
                header.structure_size, header.format_revision, header.content_revision
            ),
        )

    def metrics_block(self, index: int) -> Reading[GpuMetricsBlock]:
        if not self._supported("rsmi_dev_gpu_metrics_info_get"):
            return Reading.unavailable(STATUS_NOT_SUPPORTED)
        metrics = RSMIGpuMetrics()
        status = self.library.rsmi_dev_gpu_metrics_info_get(
            index, _bindtools.byref(metrics)
        )
        return _reading(
            status,
            GpuMetricsBlock(
                link_width=metrics.pcie_link_width,
                link_speed=metrics.pcie_link_speed,
                bandwidth_inst=metrics.pcie_bandwidth_inst,
            ),
        )

    def pci_throughput(self, index: int) -> Reading[PciThroughput]:
        sent = ctypes.c_uint64()
        received = ctypes.c_uint64()
        max_pkt_sz = ctypes.c_uint64()
        status = self.library.rsmi_dev_pci_throughput_get(
            index,
            _bindtools.byref(sent),
            _bindtools.byref(received),
            _bindtools.byref(max_pkt_sz),
        )
        return _reading(
            status, PciThroughput(sent.value, received.value, max_pkt_sz.value)
        )


def _reading(status: int, value: Any) -> Reading[Any]:
    if status != STATUS_SUCCESS:
        return Reading.unavailable(status)
    return Reading.of(value)


def load_backend(path: str = DEFAULT_LIBRARY) -> RsmiBackend:
    """Open the shared library and bind every known entry point.

    Raises ``OSError`` when the library cannot be loaded and
    ``AttributeError`` when a required symbol is missing.
    """
    cdll = ctypes.CDLL(path)
    library, missing = _bindtools.bind_protocol(
        cdll, _RSMILibrary, optional=_OPTIONAL_SYMBOLS
    )
    return RsmiBackend(library, missing)
