"""Tests for the ctypes ROCm SMI binding."""
from __future__ import annotations

import ctypes
from types import SimpleNamespace

import pytest

from rocm_tap import _bindtools
from rocm_tap.backend import (
    STATUS_NOT_SUPPORTED,
    ClockDomain,
    FrequencyTable,
    GpuMetricsBlock,
    MemoryPool,
    MetricsHeader,
    PciThroughput,
    PowerSample,
    TemperatureSensor,
)
from rocm_tap.resolver import bus_address
from rocm_tap.rsmi import (
    RSMI_INIT_FLAG_THREAD_ONLY_MUTEX,
    RSMIError,
    RsmiBackend,
    _OPTIONAL_SYMBOLS,
    _RSMILibrary,
    check_status,
    load_backend,
)
from rocm_tap.session import RocmSession

MHZ = 1_000_000


class FakeLibrary:
    """Mimics librocm_smi64 as seen through ctypes.

    With POINTER argtypes ctypes passes instances by reference, so the fake
    receives the very objects the backend allocated and fills them in.
    """

    def __init__(self) -> None:
        self.failing: set[str] = set()
        self.init_flags: int | None = None
        self.calls: list[tuple] = []

    def _status(self, name: str) -> int:
        return STATUS_NOT_SUPPORTED if name in self.failing else 0

    def rsmi_init(self, init_flags):
        self.init_flags = init_flags
        return self._status("rsmi_init")

    def rsmi_shut_down(self):
        self.calls.append(("rsmi_shut_down",))
        return 0

    def rsmi_status_string(self, status, string):
        string.value = b"RSMI_STATUS_NOT_SUPPORTED: Feature not supported"
        return self._status("rsmi_status_string")

    def rsmi_num_monitor_devices(self, num_devices):
        num_devices.value = 2
        return self._status("rsmi_num_monitor_devices")

    def rsmi_dev_pci_id_get(self, dv_ind, bdfid):
        bdfid.value = (0x1 << 32) | (0xC1 << 8) | (0x00 << 3) | 0x1
        return self._status("rsmi_dev_pci_id_get")

    def rsmi_dev_market_name_get(self, dv_ind, name, length):
        self.calls.append(("rsmi_dev_market_name_get", dv_ind, length))
        name.value = b"AMD Radeon PRO W7900"
        return self._status("rsmi_dev_market_name_get")

    def rsmi_dev_name_get(self, dv_ind, name, length):
        name.value = b"Navi 31"
        return self._status("rsmi_dev_name_get")

    def rsmi_dev_busy_percent_get(self, dv_ind, busy_percent):
        busy_percent.value = 73
        return self._status("rsmi_dev_busy_percent_get")

    def rsmi_dev_gpu_clk_freq_get(self, dv_ind, clk_type, frequencies):
        self.calls.append(("rsmi_dev_gpu_clk_freq_get", dv_ind, clk_type))
        frequencies.num_supported = 3
        frequencies.current = 2
        frequencies.frequency[0] = 500 * MHZ
        frequencies.frequency[1] = 1500 * MHZ
        frequencies.frequency[2] = 2400 * MHZ
        return self._status("rsmi_dev_gpu_clk_freq_get")

    def rsmi_dev_memory_total_get(self, dv_ind, mem_type, total):
        self.calls.append(("rsmi_dev_memory_total_get", dv_ind, mem_type))
        total.value = 48 * 1024**3
        return self._status("rsmi_dev_memory_total_get")

    def rsmi_dev_memory_usage_get(self, dv_ind, mem_type, used):
        used.value = 1024**3
        return self._status("rsmi_dev_memory_usage_get")

    def rsmi_dev_memory_busy_percent_get(self, dv_ind, busy_percent):
        busy_percent.value = 9
        return self._status("rsmi_dev_memory_busy_percent_get")

    def rsmi_dev_temp_metric_get(self, dv_ind, sensor_type, metric, temperature):
        self.calls.append(("rsmi_dev_temp_metric_get", dv_ind, sensor_type, metric))
        temperature.value = 45231
        return self._status("rsmi_dev_temp_metric_get")

    def rsmi_dev_fan_speed_get(self, dv_ind, sensor_ind, speed):
        speed.value = 102
        return self._status("rsmi_dev_fan_speed_get")

    def rsmi_dev_fan_rpms_get(self, dv_ind, sensor_ind, speed):
        speed.value = 1200
        return self._status("rsmi_dev_fan_rpms_get")

    def rsmi_dev_power_get(self, dv_ind, power, power_type):
        power.value = 95_000
        power_type.value = 1
        return self._status("rsmi_dev_power_get")

    def rsmi_dev_power_ave_get(self, dv_ind, sensor_ind, power):
        power.value = 90_000
        return self._status("rsmi_dev_power_ave_get")

    def rsmi_dev_power_cap_get(self, dv_ind, sensor_ind, cap):
        cap.value = 295_000
        return self._status("rsmi_dev_power_cap_get")

    def rsmi_dev_metrics_header_info_get(self, dv_ind, header):
        header.structure_size = ctypes.sizeof(header)
        header.format_revision = 1
        header.content_revision = 5
        return self._status("rsmi_dev_metrics_header_info_get")

    def rsmi_dev_gpu_metrics_info_get(self, dv_ind, metrics):
        metrics.pcie_link_width = 16
        metrics.pcie_link_speed = 160
        metrics.pcie_bandwidth_inst = 8 * 1024 * 64
        return self._status("rsmi_dev_gpu_metrics_info_get")

    def rsmi_dev_pci_throughput_get(self, dv_ind, sent, received, max_pkt_sz):
        sent.value = 100
        received.value = 200
        max_pkt_sz.value = 256
        return self._status("rsmi_dev_pci_throughput_get")


@pytest.fixture
def library():
    return FakeLibrary()


@pytest.fixture
def rsmi(library):
    return RsmiBackend(library)


class TestRsmiBackend:
    def test_init_uses_thread_only_mutex(self, rsmi, library):
        assert rsmi.init() == 0
        assert library.init_flags == RSMI_INIT_FLAG_THREAD_ONLY_MUTEX

    def test_describe(self, rsmi):
        assert rsmi.describe(2).startswith("RSMI_STATUS_NOT_SUPPORTED")

    def test_describe_unknown(self, rsmi, library):
        library.failing.add("rsmi_status_string")
        assert rsmi.describe(99) == "(Unknown)"

    def test_check_status_raises_with_description(self, rsmi):
        with pytest.raises(RSMIError, match="Feature not supported") as excinfo:
            check_status(rsmi, STATUS_NOT_SUPPORTED)

        assert excinfo.value.code == STATUS_NOT_SUPPORTED

    def test_check_status_success(self, rsmi):
        assert check_status(rsmi, 0) is None

    def test_device_count_and_location(self, rsmi):
        assert rsmi.device_count().value == 2
        assert bus_address(rsmi.device_location(0).value) == "0001:c1:00.1"

    def test_names(self, rsmi, library):
        assert rsmi.device_name_primary(0, 64).value == "AMD Radeon PRO W7900"
        assert rsmi.device_name_secondary(0, 64).value == "Navi 31"
        assert ("rsmi_dev_market_name_get", 0, 64) in library.calls

    def test_clock_frequencies(self, rsmi, library):
        table = rsmi.clock_frequencies(0, ClockDomain.MEM)

        assert table.value == FrequencyTable(
            supported=(500 * MHZ, 1500 * MHZ, 2400 * MHZ), current_index=2
        )
        assert ("rsmi_dev_gpu_clk_freq_get", 0, 4) in library.calls

    def test_memory_and_busy(self, rsmi, library):
        assert rsmi.memory_total(0, MemoryPool.VRAM).value == 48 * 1024**3
        assert rsmi.memory_used(0, MemoryPool.VRAM).value == 1024**3
        assert rsmi.memory_busy_percent(0).value == 9
        assert rsmi.busy_percent(0).value == 73
        assert ("rsmi_dev_memory_total_get", 0, 0) in library.calls

    def test_temperature_requests_current_metric(self, rsmi, library):
        assert rsmi.temperature(0, TemperatureSensor.JUNCTION).value == 45231
        assert ("rsmi_dev_temp_metric_get", 0, 1, 0) in library.calls

    def test_fan_and_power(self, rsmi):
        assert rsmi.fan_speed(0, 0).value == 102
        assert rsmi.fan_rpm(0, 0).value == 1200
        assert rsmi.power_instant(0).value == PowerSample(95_000, 1)
        assert rsmi.power_average(0, 0).value == 90_000
        assert rsmi.power_cap(0, 0).value == 295_000

    def test_metrics_and_throughput(self, rsmi):
        header = rsmi.metrics_header(0).value
        assert isinstance(header, MetricsHeader)
        assert header.format_revision == 1
        assert rsmi.metrics_block(0).value == GpuMetricsBlock(16, 160, 8 * 1024 * 64)
        assert rsmi.pci_throughput(0).value == PciThroughput(100, 200, 256)

    def test_failure_status_is_unavailable(self, rsmi, library):
        library.failing.add("rsmi_dev_busy_percent_get")

        reading = rsmi.busy_percent(0)

        assert not reading.available
        assert reading.status == STATUS_NOT_SUPPORTED

    def test_missing_symbols_are_unsupported(self, library):
        rsmi = RsmiBackend(library, missing=frozenset({"rsmi_dev_power_get"}))

        reading = rsmi.power_instant(0)

        assert reading.status == STATUS_NOT_SUPPORTED
        assert rsmi.power_average(0, 0).available

    def test_translated_through_session(self, rsmi):
        from rocm_tap.record import DynamicRecord, Metric
        from rocm_tap.translator import refresh_dynamic

        session = RocmSession(loader=lambda: rsmi)
        assert session.initialize()
        record = DynamicRecord()

        refresh_dynamic(session, 0, record)

        assert record[Metric.GPU_TEMP] == 45
        assert record[Metric.FAN_SPEED] == 40
        assert record[Metric.POWER_DRAW] == 95
        assert record[Metric.PCIE_LINK_GEN] == 4
        # Packet counters win over the 64 KiB firmware estimate.
        assert record[Metric.PCIE_TX] == 25
        assert record[Metric.PCIE_RX] == 50
        assert record.estimated == frozenset()


class _FakeFunction:
    argtypes: list | None = None
    restype: object = None


def _fake_dll(skip: frozenset[str] = frozenset()) -> SimpleNamespace:
    members = {
        name: _FakeFunction()
        for name in vars(_RSMILibrary)
        if name.startswith("rsmi_") and name not in skip
    }
    return SimpleNamespace(**members)


class TestBindProtocol:
    def test_signatures_are_applied(self):
        dll, missing = _bindtools.bind_protocol(_fake_dll(), _RSMILibrary)

        assert missing == frozenset()
        assert dll.rsmi_init.argtypes == [ctypes.c_uint64]
        assert dll.rsmi_init.restype is ctypes.c_uint32
        assert dll.rsmi_dev_pci_id_get.argtypes == [
            ctypes.c_uint32,
            ctypes.POINTER(ctypes.c_uint64),
        ]
        assert dll.rsmi_dev_name_get.argtypes == [
            ctypes.c_uint32,
            ctypes.c_char_p,
            ctypes.c_size_t,
        ]

    def test_optional_symbols_may_be_missing(self):
        dll, missing = _bindtools.bind_protocol(
            _fake_dll(skip=_OPTIONAL_SYMBOLS), _RSMILibrary, optional=_OPTIONAL_SYMBOLS
        )

        assert missing == _OPTIONAL_SYMBOLS

    def test_required_symbol_missing(self):
        with pytest.raises(AttributeError):
            _bindtools.bind_protocol(
                _fake_dll(skip=frozenset({"rsmi_init"})),
                _RSMILibrary,
                optional=_OPTIONAL_SYMBOLS,
            )


@pytest.mark.hardware
def test_real_library_session():
    """Smoke test against an installed ROCm SMI library."""
    try:
        load_backend()
    except (OSError, AttributeError):
        pytest.skip("librocm_smi64.so not available")

    with RocmSession() as session:
        assert session.device_count >= 0
