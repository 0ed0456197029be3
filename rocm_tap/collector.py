from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import socket
from typing import Any

from rocm_tap.config import RocmConfig
from rocm_tap.record import DynamicRecord
from rocm_tap.resolver import device_name, find_device, list_bus_addresses
from rocm_tap.session import RocmSession
from rocm_tap.translator import refresh_dynamic

SCHEMA_NAME = "rocm-tap"
SCHEMA_VERSION = 1


@dataclass(frozen=True)
class GpuDevice:
    index: int
    bus_address: str
    name: str | None


class GpuCollector:
    """Polls every resolved GPU once per ``collect`` call."""

    def __init__(self, config: RocmConfig, session: RocmSession) -> None:
        self.config = config
        self.session = session
        self.devices: list[GpuDevice] = []
        self.logger = logging.getLogger(self.__class__.__name__)

    def resolve_devices(self) -> list[GpuDevice]:
        if not self.session.is_available():
            self.logger.warning("ROCm SMI is not initialized; no devices resolved.")
            self.devices = []
            return self.devices

        if self.config.devices:
            addresses: dict[int, str] = {}
            for address in self.config.devices:
                index = find_device(self.session, address)
                if index is None:
                    self.logger.warning("No ROCm SMI device found at %s.", address)
                    continue
                addresses[index] = address
        else:
            addresses = list_bus_addresses(self.session)

        self.devices = [
            GpuDevice(
                index=index,
                bus_address=address,
                name=device_name(self.session, index, self.config.name_length),
            )
            for index, address in sorted(addresses.items())
        ]
        for device in self.devices:
            self.logger.info(
                "Monitoring GPU %s at %s (%s).",
                device.index,
                device.bus_address,
                device.name or "unnamed",
            )
        return self.devices

    def collect(self) -> dict[str, Any]:
        self.logger.debug("Collecting GPU telemetry for %s devices.", len(self.devices))
        payload: dict[str, Any] = {
            "schema": {"name": SCHEMA_NAME, "version": SCHEMA_VERSION},
            "ts": datetime.now(timezone.utc).isoformat(),
            "host": {"name": socket.gethostname()},
            "gpus": [self._collect_device(device) for device in self.devices],
        }
        return payload

    def _collect_device(self, device: GpuDevice) -> dict[str, Any]:
        # A fresh record per poll; nothing is carried across cycles.
        record = DynamicRecord()
        refresh_dynamic(self.session, device.index, record)
        entry: dict[str, Any] = {
            "index": device.index,
            "bus_address": device.bus_address,
            "metrics": record.to_payload(),
            "estimated": sorted(metric.value for metric in record.estimated),
        }
        if device.name:
            entry["name"] = device.name
        return entry
