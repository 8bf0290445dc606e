"""Runtime configuration for the telemetry dashboard."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Dict, Literal, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_INTERVAL_SECONDS = 0.1
MAX_INTERVAL_SECONDS = 86400.0
RANGE_MARKER = "?"

# camelCase keys from the older settings.json layout.
_LEGACY_POINT_KEYS = {
    "variableData": "variables",
    "updateAfter": "update_after",
    "allowOverlap": "allow_overlap",
}
_LEGACY_VARIABLE_KEYS = {
    "findRange": "find_range",
    "pathRangeMin": "path_range_min",
    "pathRangeMax": "path_range_max",
    "calculateRangePercent": "calculate_range_percent",
}
_LEGACY_NOTIFICATION_KEYS = {
    "lowThreshold": "low_threshold",
    "highThreshold": "high_threshold",
}
_LEGACY_SOURCE_KEYS = {
    "socket": {"url": "host", "netCmnd": "command"},
    "web": {},
    "mqtt": {
        "subscriptionTopic": "subscription_topic",
        "forceUpdateTopic": "force_update_topic",
        "forceUpdateMessage": "force_update_message",
    },
}
_LEGACY_MQTT_OPTION_KEYS = {"clientId": "client_id"}


def _clamp_interval_seconds(value: float, *, field: str) -> float:
    try:
        parsed = float(value)
    except Exception as exc:
        raise ValueError(f"{field} must be a number") from exc
    if parsed != parsed:  # NaN
        raise ValueError(f"{field} must be a real number")
    return max(MIN_INTERVAL_SECONDS, min(parsed, MAX_INTERVAL_SECONDS))


def _rename_keys(payload: Dict[str, Any], mapping: Dict[str, str]) -> Dict[str, Any]:
    renamed = dict(payload)
    for legacy, current in mapping.items():
        if legacy in renamed and current not in renamed:
            renamed[current] = renamed.pop(legacy)
    return renamed


def _millis_to_seconds(payload: Dict[str, Any], legacy: str, current: str) -> None:
    if legacy in payload and current not in payload:
        value = payload.pop(legacy)
        payload[current] = float(value) / 1000.0 if value else None


class NotificationConfig(BaseModel):
    """Threshold alert attached to a single variable."""

    type: str = Field(default="log", description="Dispatcher name, e.g. log or sendgrid")
    message: str = Field(default="{point}: {key} is {value}", description="Body template")
    subject: str = Field(default="Telemetry alert: {point}", description="Subject template")
    cooldown_seconds: float = Field(default=3600.0, ge=0, description="Minimum gap between dispatches")
    low_threshold: Optional[float] = None
    high_threshold: Optional[float] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        payload = _rename_keys(data, _LEGACY_NOTIFICATION_KEYS)
        _millis_to_seconds(payload, "frequencyMS", "cooldown_seconds")
        return payload


class VariableConfig(BaseModel):
    path: str = Field(description="Dot/bracket path into the raw payload; '?' marks the range index")
    multiplier: float = 1
    offset: float = 0
    find_range: Optional[Literal["min", "max"]] = None
    path_range_min: int = 0
    path_range_max: int = 0
    calculate_range_percent: bool = Field(
        default=False,
        description="Track the widest observed bounds for percent-of-range display",
    )
    notification: Optional[NotificationConfig] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        return _rename_keys(data, _LEGACY_VARIABLE_KEYS)

    @model_validator(mode="after")
    def _check_range_template(self):
        if self.find_range and RANGE_MARKER not in self.path:
            raise ValueError(f"range-scan path {self.path!r} has no {RANGE_MARKER!r} marker")
        return self


class SocketSourceConfig(BaseModel):
    kind: Literal["socket"] = "socket"
    host: str = "127.0.0.1"
    port: int = Field(default=4028, ge=1, le=65535)
    command: str = ""


class WebSourceConfig(BaseModel):
    kind: Literal["web"] = "web"
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)


class MqttOptions(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: Optional[str] = None
    keepalive: int = Field(default=60, ge=1)

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        return _rename_keys(data, _LEGACY_MQTT_OPTION_KEYS)


class MqttSourceConfig(BaseModel):
    kind: Literal["mqtt"] = "mqtt"
    url: str = Field(default="mqtt://127.0.0.1:1883", description="MQTT broker URL")
    options: MqttOptions = Field(default_factory=MqttOptions)
    subscription_topic: str = Field(description="Topic prefix; '#' is appended when subscribing")
    force_update_topic: Optional[str] = None
    force_update_message: str = ""

    @property
    def host(self) -> str:
        return urlparse(self.url).hostname or "127.0.0.1"

    @property
    def port(self) -> int:
        return urlparse(self.url).port or 1883


SourceConfig = Annotated[
    Union[SocketSourceConfig, WebSourceConfig, MqttSourceConfig],
    Field(discriminator="kind"),
]


class PointConfig(BaseModel):
    """A monitored endpoint: one source plus the variables derived from it."""

    name: str
    source: SourceConfig
    refresh_seconds: float = 30.0
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    variables: Dict[str, VariableConfig] = Field(default_factory=dict)
    update_after: Optional[str] = Field(
        default=None,
        description="Point to tick immediately after every tick of this one",
    )
    allow_overlap: bool = Field(
        default=True,
        description="Start a fired tick even while the previous one is still running",
    )

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_layout(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        payload = _rename_keys(data, _LEGACY_POINT_KEYS)
        _millis_to_seconds(payload, "refreshMS", "refresh_seconds")
        _millis_to_seconds(payload, "dataTimeoutMS", "timeout_seconds")
        if "source" not in payload:
            for kind, key_map in _LEGACY_SOURCE_KEYS.items():
                descriptor = payload.pop(kind, None)
                if isinstance(descriptor, dict):
                    payload["source"] = {**_rename_keys(descriptor, key_map), "kind": kind}
                    break
        return payload

    @field_validator("refresh_seconds")
    @classmethod
    def _clamp_refresh(cls, value: float) -> float:
        return _clamp_interval_seconds(value, field="refresh_seconds")


class PointsFile(BaseModel):
    """Top-level layout of the points configuration file."""

    points: Dict[str, PointConfig] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _name_points(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        payload = _rename_keys(data, {"endPoints": "points"})
        points = payload.get("points")
        if isinstance(points, dict):
            payload["points"] = {
                name: {**entry, "name": name} if isinstance(entry, dict) else entry
                for name, entry in points.items()
            }
        return payload


class Settings(BaseSettings):
    """Environment driven settings for the dashboard process."""

    service_name: str = "telemetry-dashboard"
    service_version: str = "0.1.0"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 45474
    points_path: str = "storage/points.json"
    keep_history: int = Field(default=30, ge=1, description="Samples retained per variable")
    sendgrid_api_key: SecretStr | None = None
    sendgrid_url: str = "https://api.sendgrid.com/v3/mail/send"
    notify_email_to: Optional[str] = None
    notify_email_from: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="DASHBOARD_",
        env_file=".env",
        extra="ignore",
    )

    @property
    def points_file(self) -> Path:
        return Path(self.points_path)

    @property
    def sendgrid_enabled(self) -> bool:
        return bool(self.sendgrid_api_key and self.notify_email_to and self.notify_email_from)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
