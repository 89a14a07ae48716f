"""Constants used across the thinq-mqtt package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "thinq-mqtt"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME

DEFAULT_LOG_PATH = Path.home() / ".local" / "state" / APP_NAME / f"{APP_NAME}.log"
LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 3

DEFAULT_MQTT_SERVER = "ssl://common.iot.aws.lgthinq.com:8883"
DEFAULT_BROKER_PORT = 8883
DEFAULT_THINQ2_URI = "https://aic-service.lgthinq.com:46030/v1"
DEFAULT_COUNTRY_CODE = "US"
DEFAULT_LANGUAGE_CODE = "en-US"

MONITORING_MESSAGE_TYPE = "monitoring"
