from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    ValidationError,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import TomlConfigSettingsSource

from .config import ConfigError, ensure_config_file, resolve_config_path
from .logging import get_logger

logger = get_logger(__name__)

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

DEFAULT_INTERVAL_MS = 300
DEFAULT_LONG_POLL_TIMEOUT_S = 10


class PollingParams(BaseModel):
    """getUpdates parameters; unknown keys are passed through to the transport."""

    model_config = ConfigDict(extra="allow")

    offset: int = Field(default=0, ge=0)
    timeout: int = Field(default=DEFAULT_LONG_POLL_TIMEOUT_S, ge=0)


class PollingSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    interval: int = Field(default=DEFAULT_INTERVAL_MS, ge=0)
    params: PollingParams = Field(default_factory=PollingParams)
    bad_rejection_recovery: bool = False

    @model_validator(mode="before")
    @classmethod
    def _migrate_legacy_keys(cls, data: Any) -> Any:
        if data is True:
            return {}
        if not isinstance(data, dict) or "timeout" not in data:
            return data
        data = dict(data)
        timeout = data.pop("timeout")
        logger.warning(
            "settings.deprecated_key",
            key="polling.timeout",
            replacement="polling.params.timeout",
        )
        params = data.get("params")
        if isinstance(params, PollingParams):
            params = params.model_dump()
        params = dict(params or {})
        params["timeout"] = timeout
        data["params"] = params
        return data

    @property
    def interval_s(self) -> float:
        return self.interval / 1000

    def initial_params(self) -> dict[str, Any]:
        return self.params.model_dump()


class BotpollSettings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="forbid",
        env_prefix="BOTPOLL__",
        env_nested_delimiter="__",
        str_strip_whitespace=True,
    )

    bot_token: NonEmptyStr
    api_base: NonEmptyStr = "https://api.telegram.org"
    request_timeout_s: float = Field(default=120, gt=0)
    polling: PollingSettings = Field(default_factory=PollingSettings)

    @model_validator(mode="after")
    def _check_request_timeout(self) -> BotpollSettings:
        if self.request_timeout_s <= self.polling.params.timeout:
            raise ValueError(
                "request_timeout_s must be greater than polling.params.timeout"
            )
        return self

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


def load_settings(path: str | Path | None = None) -> tuple[BotpollSettings, Path]:
    cfg_path = resolve_config_path(path)
    ensure_config_file(cfg_path)
    return _load_settings_from_path(cfg_path), cfg_path


def _load_settings_from_path(cfg_path: Path) -> BotpollSettings:
    cfg = dict(BotpollSettings.model_config)
    cfg["toml_file"] = cfg_path
    Bound = type(
        "BotpollSettingsBound",
        (BotpollSettings,),
        {"model_config": SettingsConfigDict(**cfg)},
    )
    try:
        return Bound()
    except ValidationError as exc:
        raise ConfigError(f"Invalid config in {cfg_path}: {exc}") from exc
    except Exception as exc:  # pragma: no cover - safety net
        raise ConfigError(f"Failed to load config {cfg_path}: {exc}") from exc
