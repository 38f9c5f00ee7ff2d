from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any, Mapping

import yaml

from agenda.models import AppConfig, default_app_config

logger = logging.getLogger(__name__)

ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "AGENDA_AI_API_KEY": ("ai", "api_key"),
    "AGENDA_AI_BASE_URL": ("ai", "base_url"),
    "AGENDA_AI_MODEL": ("ai", "model"),
    "AGENDA_CALDAV_PASSWORD": ("caldav", "password"),
    "AGENDA_DATA_DIR": ("storage", "data_dir"),
}
SECRET_FIELDS = (("caldav", "password"), ("ai", "api_key"))
MASK = "***"


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def sanitize_secret_updates(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Drop masked or blank secrets from an update so stored secrets survive."""
    sanitized = copy.deepcopy(payload)
    for section, name in SECRET_FIELDS:
        block = sanitized.get(section)
        if not isinstance(block, dict) or name not in block:
            continue
        value = str(block.get(name) or "").strip()
        if value in {"", MASK}:
            if str(current.get(section, {}).get(name, "")):
                block.pop(name, None)
            else:
                block[name] = ""
        if not block:
            sanitized.pop(section, None)
    return sanitized


class ConfigManager:
    def __init__(
        self,
        config_path: str | os.PathLike[str],
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.config_path = Path(config_path)
        self.environ = os.environ if environ is None else environ
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())

    def _read(self) -> dict[str, Any]:
        with self.config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {self.config_path} root must be a mapping.")
        return data

    def _env_overrides(self) -> dict[str, Any]:
        overrides: dict[str, Any] = {}
        for variable, (section, name) in ENV_OVERRIDES.items():
            value = self.environ.get(variable)
            if value:
                overrides.setdefault(section, {})[name] = value
        return overrides

    def load(self, apply_env: bool = True) -> AppConfig:
        with self._lock:
            data = self._read()
        if apply_env:
            overrides = self._env_overrides()
            if overrides:
                logger.debug("Applying environment overrides for %s", ", ".join(sorted(overrides)))
                data = _deep_merge(data, overrides)
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
                # Some bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                self._dump(config_dict, self.config_path)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            current = self.load(apply_env=False).to_dict()
            merged = _deep_merge(current, sanitize_secret_updates(payload, current))
            config = AppConfig.from_dict(merged)
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, name in SECRET_FIELDS:
            if config.get(section, {}).get(name):
                config[section][name] = MASK
        return config
