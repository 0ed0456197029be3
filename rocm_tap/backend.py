"""Query results and data carriers shared by telemetry backends."""

from __future__ import annotations

from dataclasses import dataclass
import enum
from typing import Generic, Protocol, TypeVar

_T = TypeVar("_T")

STATUS_SUCCESS = 0
STATUS_NOT_SUPPORTED = 2
STATUS_UNKNOWN_ERROR = 0xFFFFFFFF


class ClockDomain(enum.IntEnum):
    SYS = 0
    DF = 1
    DCEF = 2
    SOC = 3
    MEM = 4


class MemoryPool(enum.IntEnum):
    VRAM = 0
    VIS_VRAM = 1
    GTT = 2


class TemperatureSensor(enum.IntEnum):
    EDGE = 0
    JUNCTION = 1
    MEMORY = 2


class PowerType(enum.IntEnum):
    AVERAGE = 0
    CURRENT = 1
    INVALID = 0xFFFFFFFF


@dataclass(frozen=True)
class Reading(Generic[_T]):
    """Outcome of one vendor query: a value, or the status explaining its absence."""

    value: _T | None = None
    status: int = STATUS_SUCCESS

    @property
    def available(self) -> bool:
        return self.status == STATUS_SUCCESS and self.value is not None

    @classmethod
    def of(cls, value: _T) -> Reading[_T]:
        return cls(value=value)

    @classmethod
    def unavailable(cls, status: int = STATUS_UNKNOWN_ERROR) -> Reading[_T]:
        if status == STATUS_SUCCESS:
            status = STATUS_UNKNOWN_ERROR
        return cls(status=status)


@dataclass(frozen=True)
class FrequencyTable:
    """Supported clock frequencies in Hz and the index of the active one."""

    supported: tuple[int, ...]
    current_index: int


@dataclass(frozen=True)
class PowerSample:
    milliwatts: int
    power_type: int = PowerType.CURRENT


@dataclass(frozen=True)
class MetricsHeader:
    structure_size: int
    format_revision: int
    content_revision: int


@dataclass(frozen=True)
class GpuMetricsBlock:
    """Subset of the firmware metrics table used for PCIe reporting.

    ``link_speed`` is in units of 0.1 GT/s and ``bandwidth_inst`` in bits/s.
    """

    link_width: int
    link_speed: int
    bandwidth_inst: int


@dataclass(frozen=True)
class PciThroughput:
    sent: int
    received: int
    max_payload: int


class TelemetryBackend(Protocol):
    """Per-call contract of the vendor monitoring library."""

    max_fan_scale: int

    def init(self) -> int: ...
    def shutdown(self) -> None: ...
    def describe(self, status: int) -> str: ...
    def device_count(self) -> Reading[int]: ...
    def device_location(self, index: int) -> Reading[int]: ...
    def device_name_primary(self, index: int, length: int) -> Reading[str]: ...
    def device_name_secondary(self, index: int, length: int) -> Reading[str]: ...
    def busy_percent(self, index: int) -> Reading[int]: ...
    def clock_frequencies(
        self, index: int, domain: ClockDomain
    ) -> Reading[FrequencyTable]: ...
    def memory_total(self, index: int, pool: MemoryPool) -> Reading[int]: ...
    def memory_used(self, index: int, pool: MemoryPool) -> Reading[int]: ...
    def memory_busy_percent(self, index: int) -> Reading[int]: ...
    def temperature(
        self, index: int, sensor: TemperatureSensor
    ) -> Reading[int]: ...
    def fan_speed(self, index: int, sensor: int) -> Reading[int]: ...
    def fan_rpm(self, index: int, sensor: int) -> Reading[int]: ...
    def power_instant(self, index: int) -> Reading[PowerSample]: ...
    def power_average(self, index: int, sensor: int) -> Reading[int]: ...
    def power_cap(self, index: int, sensor: int) -> Reading[int]: ...
    def metrics_header(self, index: int) -> Reading[MetricsHeader]: ...
    def metrics_block(self, index: int) -> Reading[GpuMetricsBlock]: ...
    def pci_throughput(self, index: int) -> Reading[PciThroughput]: ...
