"""Pytest configuration and shared fixtures."""
from __future__ import annotations

from typing import Any

import pytest

from rocm_tap.backend import STATUS_NOT_SUPPORTED, STATUS_SUCCESS, Reading
from rocm_tap.record import DynamicRecord
from rocm_tap.session import RocmSession


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "hardware: mark test as requiring librocm_smi64 and an AMD GPU"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as integration test"
    )


def location_id(domain: int, bus: int, device: int, function: int) -> int:
    return (domain << 32) | (bus << 8) | (device << 3) | function


class FakeBackend:
    """In-memory stand-in for the ROCm SMI library.

    Every query answers with the reading registered through ``set`` for the
    same method and arguments, or NOT_SUPPORTED. All calls are recorded.
    """

    max_fan_scale = 255

    def __init__(
        self,
        locations: list[int | None] | None = None,
        init_status: int = STATUS_SUCCESS,
        count_status: int = STATUS_SUCCESS,
    ) -> None:
        self.locations = list(locations) if locations is not None else []
        self.init_status = init_status
        self.count_status = count_status
        self.readings: dict[tuple[Any, ...], Reading[Any]] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.shutdown_calls = 0
        self.name_lengths: list[int] = []

    def set(self, name: str, *args: Any, value: Any = None, status: int = STATUS_SUCCESS) -> None:
        if status == STATUS_SUCCESS:
            self.readings[(name, *args)] = Reading.of(value)
        else:
            self.readings[(name, *args)] = Reading.unavailable(status)

    def fail(self, name: str, error: Exception) -> None:
        self.errors[name] = error

    def called(self, name: str) -> bool:
        return any(call[0] == name for call in self.calls)

    def _get(self, name: str, *args: Any) -> Reading[Any]:
        self.calls.append((name, *args))
        if name in self.errors:
            raise self.errors[name]
        return self.readings.get((name, *args), Reading.unavailable(STATUS_NOT_SUPPORTED))

    def init(self) -> int:
        self.calls.append(("init",))
        return self.init_status

    def shutdown(self) -> None:
        self.shutdown_calls += 1

    def describe(self, status: int) -> str:
        return f"status {status}"

    def device_count(self) -> Reading[int]:
        self.calls.append(("device_count",))
        if self.count_status != STATUS_SUCCESS:
            return Reading.unavailable(self.count_status)
        return Reading.of(len(self.locations))

    def device_location(self, index: int) -> Reading[int]:
        self.calls.append(("device_location", index))
        location = self.locations[index]
        if location is None:
            return Reading.unavailable(STATUS_NOT_SUPPORTED)
        return Reading.of(location)

    def device_name_primary(self, index, length):
        self.name_lengths.append(length)
        return self._get("device_name_primary", index)

    def device_name_secondary(self, index, length):
        return self._get("device_name_secondary", index)

    def busy_percent(self, index):
        return self._get("busy_percent", index)

    def clock_frequencies(self, index, domain):
        return self._get("clock_frequencies", index, domain)

    def memory_total(self, index, pool):
        return self._get("memory_total", index, pool)

    def memory_used(self, index, pool):
        return self._get("memory_used", index, pool)

    def memory_busy_percent(self, index):
        return self._get("memory_busy_percent", index)

    def temperature(self, index, sensor):
        return self._get("temperature", index, sensor)

    def fan_speed(self, index, sensor):
        return self._get("fan_speed", index, sensor)

    def fan_rpm(self, index, sensor):
        return self._get("fan_rpm", index, sensor)

    def power_instant(self, index):
        return self._get("power_instant", index)

    def power_average(self, index, sensor):
        return self._get("power_average", index, sensor)

    def power_cap(self, index, sensor):
        return self._get("power_cap", index, sensor)

    def metrics_header(self, index):
        return self._get("metrics_header", index)

    def metrics_block(self, index):
        return self._get("metrics_block", index)

    def pci_throughput(self, index):
        return self._get("pci_throughput", index)


@pytest.fixture
def backend():
    """Fake backend exposing two GPUs."""
    return FakeBackend(
        locations=[location_id(0, 0x03, 0, 0), location_id(0, 0x0C, 0, 0)]
    )


@pytest.fixture
def session(backend):
    """An initialized session bound to the fake backend."""
    rocm_session = RocmSession(loader=lambda: backend)
    assert rocm_session.initialize()
    yield rocm_session
    rocm_session.shutdown()


@pytest.fixture
def record():
    return DynamicRecord()
