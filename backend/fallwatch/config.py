"""Configuration management for the fall alarm service.

Environment variables allow swapping the database, broker and alarm tuning
without code changes.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple


def _int_tuple(raw: str) -> Tuple[int, ...]:
    return tuple(int(part) for part in raw.split(",") if part.strip())


@dataclass
class FirebaseConfig:
    database_url: str = os.environ.get(
        "FIREBASE_DATABASE_URL", "https://preserving-fall-detector-default-rtdb.firebaseio.com"
    ).rstrip("/")
    database_secret: Optional[str] = os.environ.get("FIREBASE_DATABASE_SECRET") or None
    api_key: Optional[str] = os.environ.get("FIREBASE_API_KEY") or None
    root: str = os.environ.get("HOSPITAL_ROOT", "hospital_system")
    log_limit: int = int(os.environ.get("LOG_LIMIT", 50))
    request_timeout: float = float(os.environ.get("FIREBASE_TIMEOUT", 10.0))


@dataclass
class MQTTConfig:
    host: str = os.environ.get("MQTT_HOST", "localhost")
    port: int = int(os.environ.get("MQTT_PORT", 8883))
    username: Optional[str] = os.environ.get("MQTT_USER")
    password: Optional[str] = os.environ.get("MQTT_PASS")
    ca_cert_path: Optional[str] = os.environ.get("MQTT_CA_CERT")
    client_id: str = os.environ.get("MQTT_CLIENT_ID", "fallwatch_dashboard")
    notify_topic: str = os.environ.get("MQTT_NOTIFY_TOPIC", "nurse_station/notify")
    vibrate_topic: str = os.environ.get("MQTT_VIBRATE_TOPIC", "nurse_station/vibrate")
    permission_topic: str = os.environ.get(
        "MQTT_PERMISSION_TOPIC", "nurse_station/notify/permission"
    )
    analytics_topic: str = os.environ.get("MQTT_ANALYTICS_TOPIC", "nurse_station/analytics")


@dataclass
class AlarmConfig:
    """Siren shape and escalation settings."""

    high_hz: float = float(os.environ.get("ALARM_HIGH_HZ", 880))
    low_hz: float = float(os.environ.get("ALARM_LOW_HZ", 660))
    half_cycle_s: float = float(os.environ.get("ALARM_HALF_CYCLE", 0.25))
    attack_s: float = 0.005
    release_s: float = 0.010
    amplitude: float = 0.7
    clip_amplitude: float = 0.6
    buffer_s: float = 1.8
    taper_s: float = 0.2
    sample_rate: int = int(os.environ.get("ALARM_SAMPLE_RATE", 44100))
    clip_sample_rate: int = 22050
    retrigger_interval_s: float = float(os.environ.get("ALARM_RETRIGGER", 2.0))
    notification_tag: str = "fall-alert"
    vibration_pattern: Tuple[int, ...] = field(
        default_factory=lambda: _int_tuple(
            os.environ.get("ALARM_VIBRATION_PATTERN", "500,200,500,200,500")
        )
    )


@dataclass
class MonitorConfig:
    auxiliary_device: str = os.environ.get("AUXILIARY_DEVICE", "motion_sensor")
    device_online_window_ms: int = int(os.environ.get("DEVICE_ONLINE_WINDOW_MS", 60_000))
    polling_interval_s: float = float(os.environ.get("POLLING_INTERVAL", 2.0))
    reconnect_delay_s: float = float(os.environ.get("RECONNECT_DELAY", 10.0))


firebase_config = FirebaseConfig()
mqtt_config = MQTTConfig()
alarm_config = AlarmConfig()
monitor_config = MonitorConfig()
