"""MQTT publishing of query results."""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

import paho.mqtt.client as mqtt

from .snips import Measurement, QuerySnip

log = logging.getLogger(__name__)

PUBLISH_TIMEOUT = 2.0
"""Seconds to wait for a publication to complete."""

_TOPIC_RE = re.compile(r"(\w+)([LTS]\d)", re.ASCII)


def mqtt_device_topic(device_id: str) -> str:
    """Convert a device id into a topic element."""
    return device_id.lower().replace("#", "").replace(".", "-")


def topic_from_measurement(name: Measurement | str) -> str:
    """Split names like ``VoltageL1`` into hierarchical topics like ``Voltage/L1``."""
    text = str(name)
    match = _TOPIC_RE.search(text)
    if match is None:
        return text
    return f"{match.group(1)}/{match.group(2)}"


@dataclass
class MqttOptions:
    """Connection settings of an MQTT client."""

    brokers: list[str] = field(default_factory=list)
    username: str = ""
    password: str | None = None
    client_id: str = ""
    clean_session: bool = True
    auto_reconnect: bool = True
    will: tuple[str, str, int, bool] | None = None

    def clone(self) -> MqttOptions:
        """Copy of the connection settings without the last will."""
        return MqttOptions(
            brokers=list(self.brokers),
            username=self.username,
            password=self.password,
            client_id=self.client_id,
            clean_session=self.clean_session,
            auto_reconnect=self.auto_reconnect,
        )


def _parse_broker(broker: str) -> tuple[str, int, bool]:
    parts = urlsplit(broker if "://" in broker else f"tcp://{broker}")
    tls = parts.scheme.lower() in ("ssl", "tls", "mqtts")
    host = parts.hostname
    if not host:
        raise ValueError(f"mqtt: invalid broker {broker!r}")
    return host, parts.port or (8883 if tls else 1883), tls


def _new_paho_client(options: MqttOptions) -> Any:
    kwargs = {"client_id": options.client_id, "clean_session": options.clean_session}
    if hasattr(mqtt, "CallbackAPIVersion"):
        return mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, **kwargs)
    return mqtt.Client(**kwargs)


class MqttClient:
    """Connected MQTT publisher."""

    def __init__(
        self,
        options: MqttOptions,
        qos: int = 0,
        verbose: bool = False,
        client: Any = None,
    ) -> None:
        if not options.brokers:
            raise ValueError("mqtt: no broker configured")
        host, port, tls = _parse_broker(options.brokers[0])
        log.info("mqtt: connecting %s at %s", options.client_id, options.brokers)

        self.client = client if client is not None else _new_paho_client(options)
        self.qos = qos
        self.verbose = verbose

        if options.username:
            self.client.username_pw_set(options.username, options.password)
        if options.will is not None:
            self.client.will_set(*options.will)
        if tls:
            self.client.tls_set()
        if not options.auto_reconnect:
            self.client.on_disconnect = lambda *args: self.client.loop_stop()

        try:
            rc = self.client.connect(host, port)
        except OSError as err:
            raise ConnectionError(f"mqtt: error connecting: {err}") from err
        if rc:
            raise ConnectionError(f"mqtt: error connecting: {mqtt.error_string(rc)}")
        self.client.loop_start()
        if verbose:
            log.info("mqtt: connected")

    def publish(self, topic: str, retained: bool, message: str) -> None:
        """Publish a message and watch its completion in the background."""
        info = self.client.publish(topic, message, qos=self.qos, retain=retained)
        if self.verbose:
            log.info("mqtt: publish %s, message: %s", topic, message)
        threading.Thread(target=self.wait_for_publish, args=(info,), daemon=True).start()

    def wait_for_publish(self, info: Any) -> bool:
        """Wait until a publication completed; log errors and return success."""
        try:
            info.wait_for_publish(PUBLISH_TIMEOUT)
        except (RuntimeError, ValueError) as err:
            log.error("mqtt: error: %s", err)
            return False
        if not info.is_published():
            if self.verbose:
                log.info("mqtt: timeout")
            return False
        if info.rc:
            log.error("mqtt: error: %s", mqtt.error_string(info.rc))
            return False
        return True


class MqttRunner(MqttClient):
    """Publishes query results as plain MQTT topics below a root topic."""

    def __init__(
        self,
        options: MqttOptions,
        qos: int,
        topic: str,
        verbose: bool = False,
        client: Any = None,
    ) -> None:
        options.will = (f"{topic}/status", "disconnected", qos, True)
        super().__init__(options, qos, verbose, client)
        self.topic = topic

    def run(self, snips: Iterable[QuerySnip]) -> None:
        """Announce the connection, then publish every snip."""
        self.publish(f"{self.topic}/status", True, "connected")
        for snip in snips:
            subtopic = topic_from_measurement(snip.measurement)
            topic = f"{self.topic}/{mqtt_device_topic(snip.device)}/{subtopic}"
            self.publish(topic, False, f"{snip.value:.3f}")