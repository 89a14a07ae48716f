from pathlib import Path

from thinq_mqtt import constants
from thinq_mqtt.config import load_config, save_config


def test_load_config_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "thinq-mqtt.cfg"
    config = load_config(config_path)

    assert config.path == config_path
    assert config.thinq.client_id == ""
    assert config.thinq.country_code == "US"
    assert config.route.mqtt_server == constants.DEFAULT_MQTT_SERVER
    assert config.gateway.thinq2_uri == constants.DEFAULT_THINQ2_URI
    assert config.account.access_token is None
    assert config.tls.verify_server_certificate is False
    assert config.tls.enforce_min_tls_version is False
    assert config.tls.ca_path is None
    assert config.resilience.reconnect_initial_seconds == 1.0
    assert config.resilience.reconnect_max_seconds == 16.0
    assert config.resilience.keepalive_seconds == 60
    assert config.device_ids == []
    assert config.logging.level == "INFO"


def test_load_config_overrides_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "thinq-mqtt.cfg"
    config_path.write_text(
        """
[thinq]
client_id = abc123
country_code = DE
language_code = de-DE
api_key = key-1

[account]
access_token = token
user_number = user-1

[gateway]
thinq2_uri = https://eic-service.lgthinq.com:46030/v1

[route]
mqtt_server = ssl://a1.iot.eu-west-1.amazonaws.com:8883

[tls]
verify_server_certificate = true
enforce_min_tls_version = yes
ca_path = ~/certs/root.pem

[resilience]
reconnect_initial_seconds = 2
reconnect_max_seconds = 32
keepalive_seconds = 120

[monitor]
device_ids = D1, D2 ,,D3
""".strip()
        + "\n",
        encoding="utf-8",
    )

    config = load_config(config_path)

    assert config.thinq.client_id == "abc123"
    assert config.thinq.api_key == "key-1"
    assert config.account.access_token == "token"
    assert config.account.user_number == "user-1"
    assert config.gateway.thinq2_uri.startswith("https://eic-service")
    assert config.route.mqtt_server == "ssl://a1.iot.eu-west-1.amazonaws.com:8883"
    assert config.tls.verify_server_certificate is True
    assert config.tls.enforce_min_tls_version is True
    assert config.tls.ca_path == Path("~/certs/root.pem").expanduser()
    assert config.resilience.reconnect_initial_seconds == 2.0
    assert config.resilience.reconnect_max_seconds == 32.0
    assert config.resilience.keepalive_seconds == 120
    assert config.device_ids == ["D1", "D2", "D3"]


def test_load_config_normalises_bare_mqtt_server(tmp_path: Path) -> None:
    config_path = tmp_path / "thinq-mqtt.cfg"
    config_path.write_text("[route]\nmqtt_server = broker.local:8883\n", encoding="utf-8")

    config = load_config(config_path)

    assert config.route.mqtt_server == "ssl://broker.local:8883"
    assert config.raw.get("route", "mqtt_server") == "ssl://broker.local:8883"


def test_load_config_recovers_from_bad_numbers(tmp_path: Path) -> None:
    config_path = tmp_path / "thinq-mqtt.cfg"
    config_path.write_text(
        """
[resilience]
reconnect_initial_seconds = soon
reconnect_max_seconds = 0.5
keepalive_seconds = 1
""".strip()
        + "\n",
        encoding="utf-8",
    )

    config = load_config(config_path)

    assert config.resilience.reconnect_initial_seconds == 1.0
    # The ceiling is never below the starting delay.
    assert config.resilience.reconnect_max_seconds == 1.0
    assert config.resilience.keepalive_seconds == 5


def test_save_config_round_trips_client_id(tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "thinq-mqtt.cfg"
    config = load_config(config_path)
    config.raw.set("thinq", "client_id", "persisted-id")

    save_config(config)

    assert load_config(config_path).thinq.client_id == "persisted-id"
