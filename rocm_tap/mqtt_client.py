from __future__ import annotations

import json
import logging
import ssl
from typing import Any

import paho.mqtt.client as mqtt

from rocm_tap.config import MqttConfig
from rocm_tap.record import METRIC_UNITS, Metric

_DEVICE_CLASSES: dict[Metric, str] = {
    Metric.GPU_TEMP: "temperature",
    Metric.GPU_TEMP_JUNCTION: "temperature",
    Metric.GPU_TEMP_MEM: "temperature",
    Metric.POWER_DRAW: "power",
    Metric.POWER_DRAW_MAX: "power",
    Metric.GPU_CLOCK_SPEED: "frequency",
    Metric.GPU_CLOCK_SPEED_MAX: "frequency",
    Metric.MEM_CLOCK_SPEED: "frequency",
    Metric.MEM_CLOCK_SPEED_MAX: "frequency",
    Metric.TOTAL_MEMORY: "data_size",
    Metric.USED_MEMORY: "data_size",
    Metric.FREE_MEMORY: "data_size",
    Metric.PCIE_RX: "data_rate",
    Metric.PCIE_TX: "data_rate",
}


class MqttPublisher:
    def __init__(self, config: MqttConfig) -> None:
        self.config = config
        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=config.client_id,
            protocol=mqtt.MQTTv311,
        )
        self.logger = logging.getLogger(self.__class__.__name__)
        self._connected = False

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect

        if config.username:
            self.client.username_pw_set(config.username, config.password)
        if config.tls_enabled:
            self.client.tls_set(
                ca_certs=config.ca_cert,
                cert_reqs=ssl.CERT_REQUIRED,
            )

        self.client.will_set(
            self._availability_topic,
            payload="offline",
            qos=1,
            retain=True,
        )
        self.client.reconnect_delay_set(min_delay=1, max_delay=120)

    @property
    def _availability_topic(self) -> str:
        return f"{self.config.base_topic}/status"

    @property
    def connected(self) -> bool:
        return self._connected

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any,
    ) -> None:
        if not reason_code.is_failure:
            self._connected = True
            self.logger.info(
                "Connected to MQTT broker %s:%s", self.config.host, self.config.port
            )
            self.client.publish(
                self._availability_topic,
                payload="online",
                qos=1,
                retain=True,
            )
        else:
            self._connected = False
            self.logger.error("Failed to connect to MQTT broker: %s", reason_code)

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any,
    ) -> None:
        self._connected = False
        if not reason_code.is_failure:
            self.logger.info("Disconnected from MQTT broker (clean)")
        else:
            self.logger.warning(
                "Unexpectedly disconnected from MQTT broker: %s. "
                "Will attempt to reconnect.",
                reason_code,
            )

    def connect(self) -> None:
        self.logger.info(
            "Connecting to MQTT broker %s:%s", self.config.host, self.config.port
        )
        self.client.connect(
            self.config.host,
            self.config.port,
            keepalive=self.config.keepalive,
        )
        # The background loop handles reconnects.
        self.client.loop_start()

    def disconnect(self) -> None:
        if self._connected:
            self.client.publish(
                self._availability_topic,
                payload="offline",
                qos=1,
                retain=True,
            )
        self.client.loop_stop()
        self.client.disconnect()
        self.logger.info("Disconnected from MQTT broker")

    def publish_status(self, status: str) -> bool:
        """Publish a custom status (e.g. "sleeping") to the availability topic."""
        self.logger.info("Publishing status '%s' to %s", status, self._availability_topic)
        result = self.client.publish(
            self._availability_topic,
            payload=status,
            qos=1,
            retain=True,
        )
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            self.logger.error("Failed to publish status, error code: %s", result.rc)
            return False
        return True

    def publish(self, payload: str) -> bool:
        if not self._connected:
            self.logger.warning("Not connected to MQTT broker, message may be queued")
        self.logger.debug("Publishing GPU telemetry to %s", self.config.base_topic)
        result = self.client.publish(
            self.config.base_topic,
            payload=payload,
            qos=self.config.qos,
            retain=self.config.retain,
        )
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            self.logger.error("Failed to publish message, error code: %s", result.rc)
            return False
        return True

    def discovery_messages(self, payload: dict[str, Any]) -> list[tuple[str, dict[str, Any]]]:
        """Build one Home Assistant sensor config per reported GPU metric."""
        host_name = payload.get("host", {}).get("name", self.config.client_id)
        messages: list[tuple[str, dict[str, Any]]] = []
        for position, gpu in enumerate(payload.get("gpus", [])):
            slug = gpu["bus_address"].replace(":", "_").replace(".", "_")
            device_id = f"{self.config.client_id}_{slug}"
            device = {
                "identifiers": [device_id],
                "name": f"{host_name} {gpu.get('name', 'AMD GPU')} ({gpu['bus_address']})",
                "manufacturer": "AMD",
                "model": gpu.get("name"),
            }
            for metric_name in gpu.get("metrics", {}):
                metric = Metric(metric_name)
                config: dict[str, Any] = {
                    "name": metric_name.replace("_", " ").capitalize(),
                    "unique_id": f"{device_id}_{metric_name}",
                    "state_topic": self.config.base_topic,
                    "value_template": (
                        f"{{{{ value_json.gpus[{position}].metrics.{metric_name} }}}}"
                    ),
                    "availability_topic": self._availability_topic,
                    "payload_available": "online",
                    "payload_not_available": "offline",
                    "state_class": "measurement",
                    "device": device,
                }
                if unit := METRIC_UNITS.get(metric):
                    config["unit_of_measurement"] = unit
                if device_class := _DEVICE_CLASSES.get(metric):
                    config["device_class"] = device_class
                topic = (
                    f"{self.config.discovery_topic}/sensor/{device_id}/{metric_name}/config"
                )
                messages.append((topic, config))
        return messages

    def publish_discovery(self, payload: dict[str, Any]) -> None:
        for topic, config in self.discovery_messages(payload):
            self.logger.debug("Publishing Home Assistant discovery to %s", topic)
            self.client.publish(
                topic,
                payload=json.dumps(config),
                qos=self.config.qos,
                retain=True,
            )
