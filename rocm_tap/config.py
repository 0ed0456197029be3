from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import configparser

from rocm_tap.resolver import DEFAULT_NAME_LENGTH
from rocm_tap.rsmi import DEFAULT_LIBRARY


@dataclass(frozen=True)
class MqttConfig:
    host: str
    port: int
    base_topic: str
    discovery_topic: str
    client_id: str
    username: str | None
    password: str | None
    qos: int
    retain: bool
    keepalive: int
    tls_enabled: bool
    ca_cert: str | None


@dataclass(frozen=True)
class PublishConfig:
    interval_s: int


@dataclass(frozen=True)
class RocmConfig:
    library_path: str
    # Bus addresses to monitor; empty means every monitored device.
    devices: list[str]
    name_length: int


@dataclass(frozen=True)
class AppConfig:
    mqtt: MqttConfig
    publish: PublishConfig
    rocm: RocmConfig


def _get_optional(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value if value else None


def _get_list(value: str | None) -> list[str]:
    if value is None:
        return []
    return [item.strip().lower() for item in value.split(",") if item.strip()]


def load_config(path: str | Path) -> AppConfig:
    parser = configparser.ConfigParser()
    read_files = parser.read(path)
    if not read_files:
        raise FileNotFoundError(f"Config file not found: {path}")

    mqtt = MqttConfig(
        host=parser.get("mqtt", "host", fallback="localhost"),
        port=parser.getint("mqtt", "port", fallback=1883),
        base_topic=parser.get("mqtt", "base_topic", fallback="telemetry/rocm"),
        discovery_topic=parser.get("mqtt", "discovery_topic", fallback="homeassistant"),
        client_id=parser.get("mqtt", "client_id", fallback="rocm-tap"),
        username=_get_optional(parser.get("mqtt", "username", fallback=None)),
        password=_get_optional(parser.get("mqtt", "password", fallback=None)),
        qos=parser.getint("mqtt", "qos", fallback=0),
        retain=parser.getboolean("mqtt", "retain", fallback=False),
        keepalive=parser.getint("mqtt", "keepalive", fallback=60),
        tls_enabled=parser.getboolean("mqtt", "tls", fallback=False),
        ca_cert=_get_optional(parser.get("mqtt", "ca_cert", fallback=None)),
    )

    publish = PublishConfig(
        interval_s=parser.getint("publish", "interval_s", fallback=5),
    )

    rocm = RocmConfig(
        library_path=parser.get("rocm", "library_path", fallback=DEFAULT_LIBRARY),
        devices=_get_list(parser.get("rocm", "devices", fallback=None)),
        name_length=parser.getint("rocm", "name_length", fallback=DEFAULT_NAME_LENGTH),
    )

    return AppConfig(mqtt=mqtt, publish=publish, rocm=rocm)
