"""Map PCI bus addresses to ROCm SMI device indices and names."""

from __future__ import annotations

import logging

from rocm_tap.session import RocmSession

DEFAULT_NAME_LENGTH = 256

logger = logging.getLogger(__name__)


def bus_address(location_id: int) -> str:
    """Format a 64-bit ROCm SMI BDF id as ``dddd:bb:dd.f``."""
    domain = (location_id >> 32) & 0xFFFFFFFF
    bus = (location_id >> 8) & 0xFF
    device = (location_id >> 3) & 0x1F
    function = location_id & 0x7
    return f"{domain:04x}:{bus:02x}:{device:02x}.{function:x}"


def find_device(session: RocmSession, address: str | None) -> int | None:
    if not session.is_available() or not address:
        return None
    backend = session.backend
    for index in range(session.device_count):
        location = backend.device_location(index)
        if not location.available:
            logger.debug("Skipping device %s: location query failed.", index)
            continue
        if bus_address(location.value) == address:
            return index
    logger.debug("No monitored device at %s.", address)
    return None


def list_bus_addresses(session: RocmSession) -> dict[int, str]:
    if not session.is_available():
        return {}
    backend = session.backend
    addresses: dict[int, str] = {}
    for index in range(session.device_count):
        location = backend.device_location(index)
        if location.available:
            addresses[index] = bus_address(location.value)
    return addresses


def device_name(
    session: RocmSession, index: int, max_length: int = DEFAULT_NAME_LENGTH
) -> str | None:
    """Return the marketing name of a device, or its generic name.

    The marketing name is not implemented on every GPU generation, so an
    empty or failed lookup falls back to the generic device name.
    """
    if not session.is_available() or max_length <= 0:
        return None
    backend = session.backend
    name = backend.device_name_primary(index, max_length)
    if not name.available or not name.value:
        name = backend.device_name_secondary(index, max_length)
    if name.available and name.value:
        return name.value
    return None
