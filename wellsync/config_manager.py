from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from wellsync.models import PERMISSION_PLATFORMS, AppConfig, default_app_config


SECRET_FIELDS = (("caldav", "password"), ("remote", "client_secret"))

# (section, key, minimum, maximum); None means unbounded.
INTEGER_FIELDS = (
    ("sync", "past_days", 0, None),
    ("sync", "future_days", 0, None),
    ("sync", "timeout_seconds", 1, None),
    ("remote", "page_size", 1, 2500),
    ("remote", "timeout_seconds", 1, None),
)


class ConfigError(ValueError):
    pass


def validate_payload(payload: dict[str, Any]) -> None:
    """Reject values that `AppConfig.from_dict` would otherwise clamp silently."""
    for section_name, section in payload.items():
        if section is not None and not isinstance(section, dict):
            raise ConfigError(f"{section_name} must be a mapping")
    platform = (payload.get("permission") or {}).get("platform")
    if platform is not None and str(platform).strip().lower() not in PERMISSION_PLATFORMS:
        raise ConfigError(f"permission.platform must be one of: {', '.join(PERMISSION_PLATFORMS)}")
    for section_name, key, minimum, maximum in INTEGER_FIELDS:
        value = (payload.get(section_name) or {}).get(key)
        if value is None:
            continue
        if isinstance(value, bool):
            raise ConfigError(f"{section_name}.{key} must be an integer")
        try:
            number = int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{section_name}.{key} must be an integer") from exc
        if number < minimum or (maximum is not None and number > maximum):
            bounds = f">= {minimum}" if maximum is None else f"between {minimum} and {maximum}"
            raise ConfigError(f"{section_name}.{key} must be {bounds}")
    name = (payload.get("app") or {}).get("name")
    if name is not None and not str(name).strip():
        raise ConfigError("app.name must not be empty")


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            if not isinstance(data, dict):
                raise ConfigError(f"{self.config_path} must contain a YAML mapping")
            return AppConfig.from_dict(data)

    def _dump(self, config_dict: dict[str, Any], path: Path) -> None:
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(
                config_dict,
                handle,
                sort_keys=False,
                allow_unicode=True,
                default_flow_style=False,
            )

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            self._dump(config_dict, tmp_path)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                self._dump(config_dict, self.config_path)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        validate_payload(payload)
        with self._lock:
            current = self.load().to_dict()
            merged = _deep_merge(current, payload)
            config = AppConfig.from_dict(merged)
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, key in SECRET_FIELDS:
            if config.get(section, {}).get(key):
                config[section][key] = "***"
        return config
