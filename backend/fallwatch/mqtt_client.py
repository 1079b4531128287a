"""MQTT bridge for nurse-station notifications, vibration and analytics.

Every publish is fire-and-forget: a broker outage is logged and never
reaches the alarm or the staff action that triggered it.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, Optional

import paho.mqtt.client as mqtt

from .config import MQTTConfig, mqtt_config
from .schemas import Notification, VibrationCommand

logger = logging.getLogger(__name__)


class MQTTBridge:
    def __init__(self, config: MQTTConfig = mqtt_config, client: Optional[mqtt.Client] = None) -> None:
        self._config = config
        self._client = client or mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2, client_id=config.client_id
        )
        if client is None:
            if config.username and config.password:
                self._client.username_pw_set(config.username, config.password)
            if config.ca_cert_path:
                self._client.tls_set(ca_certs=config.ca_cert_path)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._started = False
        self._permission_requested = False
        self.connected = False

    def start(self) -> None:
        """Connect in the background; paho keeps reconnecting on its own thread."""
        if self._started:
            return
        try:
            self._client.connect_async(self._config.host, self._config.port, keepalive=60)
            self._client.loop_start()
        except (OSError, ValueError) as exc:
            logger.warning("MQTT broker unavailable, notifications disabled: %s", exc)
            return
        self._started = True

    def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        try:
            self._client.disconnect()
        finally:
            self._client.loop_stop()

    # MQTT callbacks
    def _on_connect(self, client: mqtt.Client, userdata, flags, reason_code, properties=None):
        self.connected = not getattr(reason_code, "is_failure", False)
        logger.info("MQTT connected to %s:%s (%s)", self._config.host, self._config.port, reason_code)

    def _on_disconnect(self, client: mqtt.Client, userdata, flags, reason_code, properties=None):
        self.connected = False
        logger.info("MQTT disconnected (%s)", reason_code)

    def _publish(self, topic: str, payload: str, retain: bool = False) -> bool:
        try:
            info = self._client.publish(topic, payload, qos=1, retain=retain)
        except (OSError, ValueError, RuntimeError) as exc:
            logger.warning("Publish to %s failed: %s", topic, exc)
            return False
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning("Publish to %s not queued: %s", topic, mqtt.error_string(info.rc))
            return False
        return True

    def notify(self, notification: Notification) -> bool:
        # Retained per tag, so a newer alert replaces an unactioned one.
        topic = f"{self._config.notify_topic}/{notification.tag}"
        return self._publish(topic, notification.model_dump_json(), retain=True)

    def vibrate(self, pattern: Iterable[int]) -> bool:
        command = VibrationCommand(pattern=list(pattern))
        return self._publish(self._config.vibrate_topic, command.model_dump_json())

    def request_permission(self) -> bool:
        """Ask displays to request notification permission, once per session."""
        if self._permission_requested:
            return False
        self._permission_requested = True
        return self._publish(self._config.permission_topic, json.dumps({"request": True}))

    def count_event(self, event_type: str, meta: Optional[Dict[str, Any]] = None) -> bool:
        payload = {"event": event_type, "count": 1}
        if meta and meta.get("room"):
            payload["room"] = meta["room"]
        return self._publish(self._config.analytics_topic, json.dumps(payload))
