"""Configuration loader for thinq-mqtt."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

from . import constants


@dataclass(slots=True)
class ThinqConfig:
    client_id: str = ""
    country_code: str = constants.DEFAULT_COUNTRY_CODE
    language_code: str = constants.DEFAULT_LANGUAGE_CODE
    api_key: Optional[str] = None


@dataclass(slots=True)
class AccountConfig:
    access_token: Optional[str] = None
    user_number: Optional[str] = None


@dataclass(slots=True)
class GatewayConfig:
    thinq2_uri: str = constants.DEFAULT_THINQ2_URI


@dataclass(slots=True)
class RouteConfig:
    mqtt_server: str = constants.DEFAULT_MQTT_SERVER


@dataclass(slots=True)
class TlsConfig:
    # Defaults mirror the broker's historical client policy: trust any server
    # certificate and impose no TLS version floor.
    verify_server_certificate: bool = False
    enforce_min_tls_version: bool = False
    ca_path: Optional[Path] = None


@dataclass(slots=True)
class ResilienceConfig:
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 16.0
    keepalive_seconds: int = 60
    provisioning_timeout_seconds: float = 10.0


@dataclass(slots=True)
class MonitorConfig:
    device_ids: List[str] = field(default_factory=list)


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False


@dataclass(slots=True)
class AppConfig:
    thinq: ThinqConfig
    account: AccountConfig
    gateway: GatewayConfig
    route: RouteConfig
    tls: TlsConfig
    resilience: ResilienceConfig
    monitor: MonitorConfig
    logging: LoggingConfig
    raw: ConfigParser
    path: Path

    @property
    def device_ids(self) -> List[str]:
        return list(self.monitor.device_ids)


def _parse_list(value: str, *, default: Iterable[str]) -> List[str]:
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


def _normalise_mqtt_server(value: str) -> str:
    value = value.strip()
    if not value:
        return constants.DEFAULT_MQTT_SERVER
    if "://" not in value:
        return f"ssl://{value}"
    return value


def _safe_float(parser: ConfigParser, section: str, option: str, default: float) -> float:
    try:
        return parser.getfloat(section, option, fallback=default)
    except ValueError:
        return default


def _safe_int(parser: ConfigParser, section: str, option: str, default: int) -> int:
    try:
        return parser.getint(section, option, fallback=default)
    except ValueError:
        return default


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "thinq": {
                "client_id": "",
                "country_code": constants.DEFAULT_COUNTRY_CODE,
                "language_code": constants.DEFAULT_LANGUAGE_CODE,
            },
            "account": {},
            "gateway": {
                "thinq2_uri": constants.DEFAULT_THINQ2_URI,
            },
            "route": {
                "mqtt_server": constants.DEFAULT_MQTT_SERVER,
            },
            "tls": {
                "verify_server_certificate": "false",
                "enforce_min_tls_version": "false",
            },
            "resilience": {
                "reconnect_initial_seconds": "1.0",
                "reconnect_max_seconds": "16.0",
                "keepalive_seconds": "60",
                "provisioning_timeout_seconds": "10.0",
            },
            "monitor": {
                "device_ids": "",
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_network": "false",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    mqtt_server = _normalise_mqtt_server(parser.get("route", "mqtt_server"))
    parser.set("route", "mqtt_server", mqtt_server)

    thinq = ThinqConfig(
        client_id=parser.get("thinq", "client_id", fallback="").strip(),
        country_code=parser.get(
            "thinq", "country_code", fallback=constants.DEFAULT_COUNTRY_CODE
        ),
        language_code=parser.get(
            "thinq", "language_code", fallback=constants.DEFAULT_LANGUAGE_CODE
        ),
        api_key=parser.get("thinq", "api_key", fallback=None),
    )

    account = AccountConfig(
        access_token=parser.get("account", "access_token", fallback=None),
        user_number=parser.get("account", "user_number", fallback=None),
    )

    gateway = GatewayConfig(thinq2_uri=parser.get("gateway", "thinq2_uri"))

    route = RouteConfig(mqtt_server=mqtt_server)

    ca_path_value = parser.get("tls", "ca_path", fallback="").strip()
    tls = TlsConfig(
        verify_server_certificate=parser.getboolean(
            "tls", "verify_server_certificate", fallback=False
        ),
        enforce_min_tls_version=parser.getboolean(
            "tls", "enforce_min_tls_version", fallback=False
        ),
        ca_path=Path(ca_path_value).expanduser() if ca_path_value else None,
    )

    resilience_defaults = ResilienceConfig()
    reconnect_initial = max(
        0.1,
        _safe_float(
            parser,
            "resilience",
            "reconnect_initial_seconds",
            resilience_defaults.reconnect_initial_seconds,
        ),
    )
    resilience = ResilienceConfig(
        reconnect_initial_seconds=reconnect_initial,
        reconnect_max_seconds=max(
            reconnect_initial,
            _safe_float(
                parser,
                "resilience",
                "reconnect_max_seconds",
                resilience_defaults.reconnect_max_seconds,
            ),
        ),
        keepalive_seconds=max(
            5,
            _safe_int(
                parser,
                "resilience",
                "keepalive_seconds",
                resilience_defaults.keepalive_seconds,
            ),
        ),
        provisioning_timeout_seconds=max(
            1.0,
            _safe_float(
                parser,
                "resilience",
                "provisioning_timeout_seconds",
                resilience_defaults.provisioning_timeout_seconds,
            ),
        ),
    )

    monitor = MonitorConfig(
        device_ids=_parse_list(parser.get("monitor", "device_ids", fallback=""), default=[])
    )

    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(
            parser.get("logging", "path", fallback=str(constants.DEFAULT_LOG_PATH))
        ).expanduser(),
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    return AppConfig(
        thinq=thinq,
        account=account,
        gateway=gateway,
        route=route,
        tls=tls,
        resilience=resilience,
        monitor=monitor,
        logging=logging_config,
        raw=parser,
        path=config_path,
    )


def save_config(config: AppConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
