"""Translate one poll cycle of ROCm SMI readings into a DynamicRecord.

Every metric is collected independently: a failed query, a sentinel value or
an unexpected binding error leaves only the affected metrics unset. Where
several sources can supply the same metric they are listed in priority order
next to the step that consumes them.
"""

from __future__ import annotations

from collections.abc import Callable
from functools import partial
import logging
import math

from rocm_tap.backend import (
    ClockDomain,
    MemoryPool,
    Reading,
    TelemetryBackend,
    TemperatureSensor,
)
from rocm_tap.logging_utils import TRACE_LEVEL
from rocm_tap.record import DynamicRecord, Metric
from rocm_tap.session import RocmSession

HZ_PER_MHZ = 1_000_000
MILLI = 1000
KIB = 1024

PCIE_FIELD_UNSUPPORTED = 0xFFFF
PCIE_BANDWIDTH_UNSUPPORTED = 0xFFFFFFFFFFFFFFFF

# Link speed in whole GT/s to PCIe generation. 2.5 GT/s is reported as 25
# tenths and rounds to 3.
PCIE_GEN_BY_SPEED = {2: 1, 3: 1, 5: 2, 8: 3, 16: 4, 32: 5, 64: 6}

_FAN_SENSOR = 0
_POWER_SENSOR = 0

logger = logging.getLogger(__name__)

_Step = Callable[[TelemetryBackend, int, DynamicRecord], None]
_Source = Callable[[TelemetryBackend, int, DynamicRecord], Reading[int]]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _truncating_div(value: int, divisor: int) -> int:
    quotient = abs(value) // divisor
    return quotient if value >= 0 else -quotient


def _first_available(
    sources: tuple[_Source, ...],
    backend: TelemetryBackend,
    index: int,
    record: DynamicRecord,
) -> Reading[int]:
    reading: Reading[int] = Reading.unavailable()
    for source in sources:
        try:
            reading = source(backend, index, record)
        except Exception:
            logger.debug(
                "Device %s: %s raised; trying the next source.",
                index,
                source.__name__,
                exc_info=True,
            )
            reading = Reading.unavailable()
            continue
        if reading.available:
            return reading
        logger.log(
            TRACE_LEVEL,
            "Device %s: %s unavailable (status %s)",
            index,
            source.__name__,
            reading.status,
        )
    return reading


def _gpu_utilization(
    backend: TelemetryBackend, index: int, record: DynamicRecord
) -> None:
    busy = backend.busy_percent(index)
    if busy.available:
        record.set(Metric.GPU_UTIL_RATE, busy.value)


def _clock_speeds(
    backend: TelemetryBackend,
    index: int,
    record: DynamicRecord,
    *,
    domain: ClockDomain,
    current: Metric,
    maximum: Metric,
) -> None:
    table = backend.clock_frequencies(index, domain)
    if not table.available or not table.value.supported:
        return
    supported = table.value.supported
    max_mhz = max(supported) // HZ_PER_MHZ
    if max_mhz > 0:
        record.set(maximum, max_mhz)
    if table.value.current_index < len(supported):
        current_mhz = supported[table.value.current_index] // HZ_PER_MHZ
        if current_mhz > 0:
            record.set(current, current_mhz)


def _total_memory(
    backend: TelemetryBackend, index: int, record: DynamicRecord
) -> None:
    total = backend.memory_total(index, MemoryPool.VRAM)
    if total.available:
        record.set(Metric.TOTAL_MEMORY, total.value)


def _used_memory(
    backend: TelemetryBackend, index: int, record: DynamicRecord
) -> None:
    used = backend.memory_used(index, MemoryPool.VRAM)
    if used.available:
        record.set(Metric.USED_MEMORY, used.value)


def _usable_memory(record: DynamicRecord) -> tuple[int, int] | None:
    total = record.get(Metric.TOTAL_MEMORY)
    used = record.get(Metric.USED_MEMORY)
    if total is None or used is None or total <= 0:
        return None
    return total, used


def _free_memory(
    backend: TelemetryBackend, index: int, record: DynamicRecord
) -> None:
    memory = _usable_memory(record)
    if memory is not None:
        total, used = memory
        record.set(Metric.FREE_MEMORY, total - used)


def _derived_memory_utilization(
    backend: TelemetryBackend, index: int, record: DynamicRecord
) -> Reading[int]:
    memory = _usable_memory(record)
    if memory is None:
        return Reading.unavailable()
    total, used = memory
    return Reading.of(used * 100 // total)


def _busy_memory_utilization(
    backend: TelemetryBackend, index: int, record: DynamicRecord
) -> Reading[int]:
    return backend.memory_busy_percent(index)


MEMORY_UTILIZATION_SOURCES: tuple[_Source, ...] = (
    _derived_memory_utilization,
    _busy_memory_utilization,
)


def _memory_utilization(
    backend: TelemetryBackend, index: int, record: DynamicRecord
) -> None:
    utilization = _first_available(MEMORY_UTILIZATION_SOURCES, backend, index, record)
    if utilization.available:
        record.set(Metric.MEM_UTIL_RATE, utilization.value)


def _temperature(
    backend: TelemetryBackend,
    index: int,
    record: DynamicRecord,
    *,
    sensor: TemperatureSensor,
    metric: Metric,
) -> None:
    millidegrees = backend.temperature(index, sensor)
    if millidegrees.available:
        record.set(metric, _truncating_div(millidegrees.value, MILLI))


def _fan_speed(
    backend: TelemetryBackend, index: int, record: DynamicRecord
) -> None:
    speed = backend.fan_speed(index, _FAN_SENSOR)
    if speed.available and speed.value >= 0:
        record.set(Metric.FAN_SPEED, speed.value * 100 // backend.max_fan_scale)


def _fan_rpm(backend: TelemetryBackend, index: int, record: DynamicRecord) -> None:
    rpm = backend.fan_rpm(index, _FAN_SENSOR)
    if rpm.available and rpm.value >= 0:
        record.set(Metric.FAN_RPM, rpm.value)


def _instant_power(
    backend: TelemetryBackend, index: int, record: DynamicRecord
) -> Reading[int]:
    sample = backend.power_instant(index)
    if not sample.available:
        return Reading.unavailable(sample.status)
    return Reading.of(sample.value.milliwatts)


def _average_power(
    backend: TelemetryBackend, index: int, record: DynamicRecord
) -> Reading[int]:
    return backend.power_average(index, _POWER_SENSOR)


POWER_DRAW_SOURCES: tuple[_Source, ...] = (_instant_power, _average_power)


def _power_draw(
    backend: TelemetryBackend, index: int, record: DynamicRecord
) -> None:
    draw = _first_available(POWER_DRAW_SOURCES, backend, index, record)
    if draw.available:
        record.set(Metric.POWER_DRAW, draw.value // MILLI)


def _power_cap(backend: TelemetryBackend, index: int, record: DynamicRecord) -> None:
    cap = backend.power_cap(index, _POWER_SENSOR)
    if cap.available:
        record.set(Metric.POWER_DRAW_MAX, cap.value // MILLI)


def pcie_generation(link_speed: int) -> int | None:
    """Map a link speed in tenths of GT/s to a PCIe generation."""
    if link_speed <= 0 or link_speed == PCIE_FIELD_UNSUPPORTED:
        return None
    return PCIE_GEN_BY_SPEED.get((link_speed + 5) // 10)


def split_bandwidth(total_kib: float) -> tuple[int, int]:
    """Split an undirected KiB total into two halves summing to its rounding."""
    half = _round_half_up(total_kib / 2)
    return half, _round_half_up(total_kib) - half


def _pcie_metrics(
    backend: TelemetryBackend, index: int, record: DynamicRecord
) -> None:
    header = backend.metrics_header(index)
    if not header.available:
        return
    block = backend.metrics_block(index)
    if not block.available:
        return
    metrics = block.value

    if 0 < metrics.link_width != PCIE_FIELD_UNSUPPORTED:
        record.set(Metric.PCIE_LINK_WIDTH, metrics.link_width)
    generation = pcie_generation(metrics.link_speed)
    if generation is not None:
        record.set(Metric.PCIE_LINK_GEN, generation)

    # The firmware only reports aggregate bandwidth, so the split is labelled
    # as an estimate with no directionality.
    if record.is_valid(Metric.PCIE_RX) or record.is_valid(Metric.PCIE_TX):
        return
    if metrics.bandwidth_inst == PCIE_BANDWIDTH_UNSUPPORTED:
        return
    rx, tx = split_bandwidth(metrics.bandwidth_inst / 8 / KIB)
    record.set(Metric.PCIE_RX, rx, estimated=True)
    record.set(Metric.PCIE_TX, tx, estimated=True)


def _pcie_counters(
    backend: TelemetryBackend, index: int, record: DynamicRecord
) -> None:
    """Override any bandwidth estimate with packet-counter throughput."""
    counters = backend.pci_throughput(index)
    if not counters.available:
        return
    throughput = counters.value
    sent = throughput.sent
    received = throughput.received
    if throughput.max_payload > 0:
        sent *= throughput.max_payload
        received *= throughput.max_payload
    record.set(Metric.PCIE_TX, sent // KIB)
    record.set(Metric.PCIE_RX, received // KIB)


# Order matters only where a later step reads or overrides an earlier one:
# memory usage before the derived memory metrics, and the PCIe counters after
# the metrics-block estimate.
STEPS: tuple[tuple[str, _Step], ...] = (
    ("gpu_utilization", _gpu_utilization),
    (
        "gpu_clock",
        partial(
            _clock_speeds,
            domain=ClockDomain.SYS,
            current=Metric.GPU_CLOCK_SPEED,
            maximum=Metric.GPU_CLOCK_SPEED_MAX,
        ),
    ),
    (
        "mem_clock",
        partial(
            _clock_speeds,
            domain=ClockDomain.MEM,
            current=Metric.MEM_CLOCK_SPEED,
            maximum=Metric.MEM_CLOCK_SPEED_MAX,
        ),
    ),
    ("total_memory", _total_memory),
    ("used_memory", _used_memory),
    ("free_memory", _free_memory),
    ("memory_utilization", _memory_utilization),
    (
        "edge_temperature",
        partial(_temperature, sensor=TemperatureSensor.EDGE, metric=Metric.GPU_TEMP),
    ),
    (
        "junction_temperature",
        partial(
            _temperature,
            sensor=TemperatureSensor.JUNCTION,
            metric=Metric.GPU_TEMP_JUNCTION,
        ),
    ),
    (
        "memory_temperature",
        partial(
            _temperature, sensor=TemperatureSensor.MEMORY, metric=Metric.GPU_TEMP_MEM
        ),
    ),
    ("fan_speed", _fan_speed),
    ("fan_rpm", _fan_rpm),
    ("power_draw", _power_draw),
    ("power_cap", _power_cap),
    ("pcie_metrics", _pcie_metrics),
    ("pcie_counters", _pcie_counters),
)


def refresh_dynamic(session: RocmSession, index: int, record: DynamicRecord) -> None:
    """Populate every metric of ``record`` that device ``index`` can report.

    Never raises for missing data; absence is expressed only by the metric
    being left out of the record.
    """
    if not session.is_available():
        return
    backend = session.backend
    for name, step in STEPS:
        try:
            step(backend, index, record)
        except Exception:
            logger.debug("Device %s: %s collection failed.", index, name, exc_info=True)
    logger.log(TRACE_LEVEL, "Device %s: %r", index, record)
