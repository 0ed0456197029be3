from __future__ import annotations

import argparse
import json
import logging
import time
from typing import Any

from rocm_tap.collector import GpuCollector
from rocm_tap.config import load_config
from rocm_tap.logging_utils import configure_logging, resolve_log_level
from rocm_tap.mqtt_client import MqttPublisher
from rocm_tap.resolver import device_name, list_bus_addresses
from rocm_tap.schema import validate_payload
from rocm_tap.session import RocmSession

logger = logging.getLogger("rocm_tap")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="rocm-tap AMD GPU telemetry exporter")
    parser.add_argument(
        "--config",
        default="config/example.cfg",
        help="Path to CFG configuration file",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable debug logging (-v) or trace logging (-vv)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log payloads without publishing to MQTT",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Collect and publish a single payload, then exit",
    )
    parser.add_argument(
        "--dump-json",
        help="Write the JSON payload to a file (overwrites on each loop)",
    )
    parser.add_argument(
        "--publish-status",
        metavar="STATUS",
        help="Publish a status (e.g., 'sleeping', 'online') to the availability topic and exit.",
    )
    parser.add_argument(
        "--list-devices",
        action="store_true",
        help="Print the bus address and name of every monitored GPU and exit",
    )
    return parser


def _render(payload: dict[str, Any], pretty: bool) -> str:
    return json.dumps(payload, indent=2) if pretty else json.dumps(payload)


def _check_payload(payload: dict[str, Any], first: bool) -> None:
    schema_errors = validate_payload(payload)
    if schema_errors:
        logger.warning("Schema validation failed with %s errors.", len(schema_errors))
        logger.debug("Schema errors: %s", schema_errors)
    elif first:
        logger.info("Schema validation passed.")
    else:
        logger.debug("Schema validation passed.")


def _list_devices(session: RocmSession, name_length: int) -> int:
    for index, address in list_bus_addresses(session).items():
        print(f"{index}\t{address}\t{device_name(session, index, name_length) or '-'}")
    return 0


def _publish_status(publisher: MqttPublisher, status: str) -> None:
    publisher.connect()
    time.sleep(0.5)
    if publisher.connected:
        publisher.publish_status(status)
        time.sleep(0.5)
    else:
        logger.error("Failed to connect to MQTT broker")
    publisher.disconnect()


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()

    level = resolve_log_level(args.verbose, args.log_level)
    configure_logging(level)
    config = load_config(args.config)
    pretty_print = level <= logging.DEBUG

    if args.publish_status:
        _publish_status(MqttPublisher(config.mqtt), args.publish_status)
        return 0

    session = RocmSession(library_path=config.rocm.library_path)
    if not session.initialize():
        logger.error("ROCm SMI unavailable: %s", session.last_error)
        return 1

    publisher: MqttPublisher | None = None
    try:
        if args.list_devices:
            return _list_devices(session, config.rocm.name_length)

        collector = GpuCollector(config.rocm, session)
        if not collector.resolve_devices():
            logger.error("No GPUs to monitor.")
            return 1

        publisher = None if args.dry_run else MqttPublisher(config.mqtt)
        if publisher is not None:
            publisher.connect()

        first = True
        interval = max(1, config.publish.interval_s)
        while True:
            payload = collector.collect()
            _check_payload(payload, first)
            payload_json = _render(payload, pretty_print)
            if args.dump_json:
                with open(args.dump_json, "w", encoding="utf-8") as handle:
                    handle.write(payload_json)
            if args.dry_run:
                logger.debug("Payload: %s", payload_json)
            elif publisher is not None:
                if first:
                    publisher.publish_discovery(payload)
                publisher.publish(payload_json)

            if args.once:
                logger.info("Single-run mode enabled; exiting after initial payload.")
                return 0
            if first:
                logger.info("rocm-tap started. Publishing every %s seconds.", interval)
                first = False
            time.sleep(interval)
    except KeyboardInterrupt:
        logger.info("rocm-tap stopped.")
        return 0
    finally:
        if publisher is not None:
            publisher.disconnect()
        session.shutdown()


if __name__ == "__main__":
    raise SystemExit(main())
