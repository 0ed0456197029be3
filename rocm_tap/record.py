from __future__ import annotations

from collections.abc import Iterator, Mapping
import enum


class Metric(str, enum.Enum):
    GPU_UTIL_RATE = "gpu_util_rate"
    GPU_CLOCK_SPEED = "gpu_clock_speed"
    GPU_CLOCK_SPEED_MAX = "gpu_clock_speed_max"
    MEM_CLOCK_SPEED = "mem_clock_speed"
    MEM_CLOCK_SPEED_MAX = "mem_clock_speed_max"
    TOTAL_MEMORY = "total_memory"
    USED_MEMORY = "used_memory"
    FREE_MEMORY = "free_memory"
    MEM_UTIL_RATE = "mem_util_rate"
    GPU_TEMP = "gpu_temp"
    GPU_TEMP_JUNCTION = "gpu_temp_junction"
    GPU_TEMP_MEM = "gpu_temp_mem"
    FAN_SPEED = "fan_speed"
    FAN_RPM = "fan_rpm"
    POWER_DRAW = "power_draw"
    POWER_DRAW_MAX = "power_draw_max"
    PCIE_LINK_WIDTH = "pcie_link_width"
    PCIE_LINK_GEN = "pcie_link_gen"
    PCIE_RX = "pcie_rx"
    PCIE_TX = "pcie_tx"


METRIC_UNITS: dict[Metric, str | None] = {
    Metric.GPU_UTIL_RATE: "%",
    Metric.GPU_CLOCK_SPEED: "MHz",
    Metric.GPU_CLOCK_SPEED_MAX: "MHz",
    Metric.MEM_CLOCK_SPEED: "MHz",
    Metric.MEM_CLOCK_SPEED_MAX: "MHz",
    Metric.TOTAL_MEMORY: "B",
    Metric.USED_MEMORY: "B",
    Metric.FREE_MEMORY: "B",
    Metric.MEM_UTIL_RATE: "%",
    Metric.GPU_TEMP: "°C",
    Metric.GPU_TEMP_JUNCTION: "°C",
    Metric.GPU_TEMP_MEM: "°C",
    Metric.FAN_SPEED: "%",
    Metric.FAN_RPM: "RPM",
    Metric.POWER_DRAW: "W",
    Metric.POWER_DRAW_MAX: "W",
    Metric.PCIE_LINK_WIDTH: None,
    Metric.PCIE_LINK_GEN: None,
    Metric.PCIE_RX: "KiB/s",
    Metric.PCIE_TX: "KiB/s",
}


class DynamicRecord(Mapping[Metric, int]):
    """Sparse per-device telemetry for one poll cycle.

    A metric is valid exactly when it is present. Values are only ever added
    or replaced, never removed. Metrics whose value is an undirected estimate
    rather than a measurement are listed in ``estimated``.
    """

    def __init__(self) -> None:
        self._values: dict[Metric, int] = {}
        self._estimated: set[Metric] = set()

    def __getitem__(self, metric: Metric) -> int:
        return self._values[metric]

    def __iter__(self) -> Iterator[Metric]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        fields = ", ".join(f"{m.value}={v}" for m, v in self._values.items())
        return f"DynamicRecord({fields})"

    def set(self, metric: Metric, value: int, *, estimated: bool = False) -> None:
        self._values[metric] = int(value)
        if estimated:
            self._estimated.add(metric)
        else:
            self._estimated.discard(metric)

    def is_valid(self, metric: Metric) -> bool:
        return metric in self._values

    @property
    def estimated(self) -> frozenset[Metric]:
        return frozenset(self._estimated)

    def to_payload(self) -> dict[str, int]:
        return {metric.value: value for metric, value in self._values.items()}
