"""Publishing of query results following the Homie IoT convention."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any

from .mqtt import MqttClient, MqttOptions, mqtt_device_topic
from .snips import ControlSnip, Measurement, QuerySnip
from .status import DeviceInfo

log = logging.getLogger(__name__)

SPEC_VERSION = "4.0"
NODE_TOPIC = "meter"
TIMEOUT = 0.5
"""Seconds to collect retained messages before they are cleared."""

ClientFactory = Callable[[MqttOptions, int, bool], MqttClient]


class HomieMeter:
    """A single device published as a Homie device on its own MQTT client."""

    def __init__(
        self,
        mqtt: MqttClient,
        root_topic: str,
        meter: str,
        timeout: float = TIMEOUT,
    ) -> None:
        self.mqtt = mqtt
        self.root_topic = root_topic
        self.meter = meter
        self.online = False
        self.observed: set[Measurement] = set()
        self._timeout = timeout

    @property
    def _device_topic(self) -> str:
        return mqtt_device_topic(self.meter)

    def _publish(self, subtopic: str, message: str) -> None:
        self.mqtt.publish(f"{self.root_topic}/{subtopic}", True, message)

    def _unpublish(self, subtopic: str, *exceptions: str) -> None:
        """Clear retained messages below ``subtopic`` except the listed children."""
        topic = f"{self.root_topic}/{subtopic}/#"
        if self.mqtt.verbose:
            log.info("mqtt: unpublish %s", topic)

        kept = [f"{self.root_topic}/{subtopic}/{exception}" for exception in exceptions]
        client = self.mqtt.client
        lock = threading.Lock()
        pending: list[Any] = []

        def on_message(_client: Any, _userdata: Any, message: Any) -> None:
            if not message.payload:
                return  # our own unpublish messages
            received = message.topic
            if any(received == k or received.startswith(k + "/") for k in kept):
                return
            info = client.publish(received, b"", qos=self.mqtt.qos, retain=True)
            with lock:
                pending.append(info)

        client.message_callback_add(topic, on_message)
        client.subscribe(topic, self.mqtt.qos)
        time.sleep(self._timeout)
        client.unsubscribe(topic)
        client.message_callback_remove(topic)

        with lock:
            infos = list(pending)
        for info in infos:
            self.mqtt.wait_for_publish(info)

    def publish_meter(self, descriptor: Any) -> None:
        """Publish device and node attributes and clear stale ones."""
        subtopic = self._device_topic
        self._publish(f"{subtopic}/$homie", SPEC_VERSION)
        self._publish(f"{subtopic}/$name", self.meter)
        self._publish(f"{subtopic}/$state", "init")
        self._publish(f"{subtopic}/$implementation", "MBMD")

        self._publish(f"{subtopic}/$nodes", NODE_TOPIC)
        self._unpublish(subtopic, NODE_TOPIC, "$homie", "$name", "$state", "$nodes")

        node = f"{subtopic}/{NODE_TOPIC}"
        self._publish(f"{node}/$name", getattr(descriptor, "manufacturer", "") or "")
        self._publish(f"{node}/$type", getattr(descriptor, "model", "") or "")

    def status(self, online: bool) -> None:
        """Update the device's $state when its online status changes."""
        if self.online == online:
            return
        self._publish(f"{self._device_topic}/$state", "ready" if online else "alert")
        self.online = online

    def publish_message(self, snip: QuerySnip) -> None:
        """Publish a value, announcing its property first if it is new."""
        if snip.measurement not in self.observed:
            self.observed.add(snip.measurement)
            self._publish_properties()

        topic = "/".join(
            (
                self.root_topic,
                mqtt_device_topic(snip.device),
                NODE_TOPIC,
                str(snip.measurement).lower(),
            )
        )
        self.mqtt.publish(topic, False, f"{snip.value:.3f}")

    def _publish_properties(self) -> None:
        subtopic = f"{self._device_topic}/{NODE_TOPIC}"
        measurements = sorted(self.observed, key=str)
        properties = [str(m).lower() for m in measurements]

        for measurement, prop in zip(measurements, properties):
            prop_topic = f"{subtopic}/{prop}"
            self._publish(f"{prop_topic}/$name", measurement.description)
            self._publish(f"{prop_topic}/$unit", measurement.unit)
            self._publish(f"{prop_topic}/$datatype", "float")

        self._publish(f"{subtopic}/$properties", ",".join(properties))
        self._unpublish(
            subtopic, "$name", "$unit", "$datatype", "$properties", *properties
        )

    def unregister(self) -> None:
        """Mark the device disconnected and close its client."""
        self._publish(f"{self._device_topic}/$state", "disconnected")
        self.mqtt.client.disconnect()
        self.mqtt.client.loop_stop()


class HomieRunner:
    """Publishes query results of all devices as Homie devices."""

    def __init__(
        self,
        device_info: DeviceInfo,
        control: Iterable[ControlSnip] | None,
        options: MqttOptions,
        qos: int,
        root_topic: str,
        verbose: bool = False,
        client_factory: ClientFactory | None = None,
        timeout: float = TIMEOUT,
    ) -> None:
        self.device_info = device_info
        self.control = control
        self.options = options
        self.qos = qos
        self.root_topic = root_topic
        self.verbose = verbose
        self.meters: dict[str, HomieMeter] = {}
        self._client_factory: ClientFactory = client_factory or MqttClient
        self._timeout = timeout
        self._lock = threading.Lock()

    def _create_meter(self, snip: QuerySnip) -> HomieMeter:
        options = self.options.clone()
        device_topic = mqtt_device_topic(snip.device)
        options.client_id = f"{options.client_id}-{device_topic}"
        options.will = (f"{self.root_topic}/{device_topic}/$state", "lost", self.qos, True)

        client = self._client_factory(options, self.qos, self.verbose)
        meter = HomieMeter(client, self.root_topic, snip.device, self._timeout)
        self.meters[snip.device] = meter
        meter.publish_meter(self.device_info.device_descriptor_by_id(snip.device))
        return meter

    def _consume_control(self, control: Iterable[ControlSnip]) -> None:
        for snip in control:
            with self._lock:
                meter = self.meters.get(snip.device)
            if meter is not None:
                meter.status(snip.status.online)

    def run(self, snips: Iterable[QuerySnip]) -> None:
        """Publish every snip; clear device state when the snips end."""
        if self.control is not None:
            threading.Thread(
                target=self._consume_control, args=(self.control,), daemon=True
            ).start()
        try:
            for snip in snips:
                with self._lock:
                    meter = self.meters.get(snip.device) or self._create_meter(snip)
                meter.publish_message(snip)
        finally:
            with self._lock:
                meters = list(self.meters.values())
            for meter in meters:
                meter.unregister()