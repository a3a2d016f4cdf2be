from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any, Mapping

import yaml

from kuna_sync.models import AppConfig, default_app_config


logger = logging.getLogger(__name__)

MASK = "***"

# (section, key) -> environment variable that overrides it at load time.
SECRET_FIELDS: dict[tuple[str, str], str] = {
    ("caldav", "password"): "KUNA_SYNC_CALDAV_PASSWORD",
    ("task_api", "token"): "KUNA_SYNC_TASK_API_TOKEN",
}


def _deep_merge(base: dict[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _render(config: AppConfig) -> str:
    return yaml.safe_dump(config.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False)


class ConfigManager:
    """YAML-backed application config.

    Secrets listed in ``SECRET_FIELDS`` may come from the environment; such
    values are visible through ``load`` but never written back to the file.
    """

    def __init__(self, config_path: str | os.PathLike[str], environ: Mapping[str, str] | None = None) -> None:
        self.config_path = Path(config_path)
        self.environ = os.environ if environ is None else environ
        self._lock = threading.RLock()
        if not self.config_path.exists():
            logger.info("Writing default config to %s", self.config_path)
            self._write(_render(default_app_config()))

    def _read_raw(self) -> dict[str, Any]:
        with self.config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
        return data if isinstance(data, dict) else {}

    def _env_overrides(self) -> dict[str, dict[str, str]]:
        overrides: dict[str, dict[str, str]] = {}
        for (section, key), variable in SECRET_FIELDS.items():
            value = self.environ.get(variable)
            if value:
                overrides.setdefault(section, {})[key] = value
        return overrides

    def load(self) -> AppConfig:
        with self._lock:
            return AppConfig.from_dict(_deep_merge(self._read_raw(), self._env_overrides()))

    def _write(self, text: str) -> None:
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.config_path.with_name(self.config_path.name + ".tmp")
        tmp_path.write_text(text, encoding="utf-8")
        try:
            tmp_path.replace(self.config_path)
        except OSError as exc:
            # Bind-mounted single files in containers cannot be atomically replaced.
            if exc.errno != errno.EBUSY:
                raise
            self.config_path.write_text(text, encoding="utf-8")
            tmp_path.unlink(missing_ok=True)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self._write(_render(config))

    def update(self, payload: Mapping[str, Any]) -> AppConfig:
        with self._lock:
            stored = AppConfig.from_dict(_deep_merge(self._read_raw(), payload))
            self.save(stored)
            return self.load()

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, key in SECRET_FIELDS:
            if config.get(section, {}).get(key):
                config[section][key] = MASK
        return config
