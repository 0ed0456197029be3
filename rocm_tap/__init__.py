"""rocm-tap: AMD GPU telemetry through the ROCm SMI library."""

from rocm_tap.config import AppConfig, load_config
from rocm_tap.record import DynamicRecord, Metric
from rocm_tap.resolver import bus_address, device_name, find_device, list_bus_addresses
from rocm_tap.rsmi import RSMIError
from rocm_tap.session import RocmSession, SessionError, SessionState
from rocm_tap.translator import refresh_dynamic

__all__ = [
    "AppConfig",
    "DynamicRecord",
    "Metric",
    "RSMIError",
    "RocmSession",
    "SessionError",
    "SessionState",
    "bus_address",
    "device_name",
    "find_device",
    "list_bus_addresses",
    "load_config",
    "refresh_dynamic",
]
