from __future__ import annotations

import copy
import json
import os
import subprocess
from typing import Any, Dict, Optional

import yaml
from platformdirs import user_config_dir, user_state_dir

from .bq.client import DEFAULT_API_ENDPOINT

APP_NAME = "bq_jobkit"

DEFAULT_CONFIG: Dict[str, Any] = {
    "app": {
        "default_project": None,
        "default_location": None,
        "api_endpoint": DEFAULT_API_ENDPOINT,
        "poll_interval_ms": 500,
        "page_size": 1000,
        "timeout_ms": 10000,
        "max_api_calls": None,
        "wrap_integers": False,
        "parse_json": False,
        "log_level": "WARNING",
        "bq": {
            "use_query_cache": True,
            "labels": {
                "app": "bq-jobkit",
            },
        },
    }
}

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class ConfigLoader:
    def __init__(self, config_dir: Optional[str] = None) -> None:
        self.config_dir = config_dir or user_config_dir(APP_NAME)
        self.config_path = f"{self.config_dir}/config.yaml"
        self._config: Optional[Dict[str, Any]] = None

    def load(self) -> Dict[str, Any]:
        if self._config is not None:
            return self._config
        data = copy.deepcopy(DEFAULT_CONFIG)
        try:
            with open(self.config_path, "r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
            data = self._merge(data, loaded)
        except FileNotFoundError:
            self._ensure_default_written(data)
        except yaml.YAMLError:
            self._ensure_default_written(data)
        self._config = self._validate(data)
        return self._config

    def _ensure_default_written(self, data: Dict[str, Any]) -> None:
        os.makedirs(self.config_dir, exist_ok=True)
        with open(self.config_path, "w", encoding="utf-8") as handle:
            yaml.safe_dump(data, handle, sort_keys=False)

    def _merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        for key, value in override.items():
            if isinstance(value, dict) and isinstance(base.get(key), dict):
                base[key] = self._merge(base[key], value)
            else:
                base[key] = value
        return base

    def _validate(self, data: Dict[str, Any]) -> Dict[str, Any]:
        app = data["app"]

        def safe_int(key: str, default: Optional[int], minimum: int = 0) -> Optional[int]:
            value = app.get(key)
            if isinstance(value, int) and not isinstance(value, bool) and value >= minimum:
                return value
            return default

        app["poll_interval_ms"] = safe_int("poll_interval_ms", 500, minimum=1)
        app["page_size"] = safe_int("page_size", 1000, minimum=1)
        app["timeout_ms"] = safe_int("timeout_ms", 10000)
        app["max_api_calls"] = safe_int("max_api_calls", None, minimum=1)
        app["wrap_integers"] = bool(app.get("wrap_integers"))
        app["parse_json"] = bool(app.get("parse_json"))
        level = str(app.get("log_level") or "WARNING").upper()
        app["log_level"] = level if level in LOG_LEVELS else "WARNING"
        if not app.get("api_endpoint"):
            app["api_endpoint"] = DEFAULT_API_ENDPOINT
        return data

    def as_json(self) -> str:
        return json.dumps(self.load())


def get_history_path() -> str:
    history_dir = user_state_dir(APP_NAME)
    return f"{history_dir}/history.jsonl"


PROJECT_ENV_VARS = ("GOOGLE_CLOUD_PROJECT", "GCLOUD_PROJECT")
LOCATION_ENV_VAR = "BIGQUERY_LOCATION"
GCLOUD_REGION_KEYS = ("dataproc/region", "run/region", "compute/region")


def _gcloud_value(key: str) -> Optional[str]:
    try:
        result = subprocess.run(
            ["gcloud", "config", "get-value", key],
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError:
        return None
    value = result.stdout.strip() if result.returncode == 0 else ""
    return value if value and value != "(unset)" else None


def resolve_project(config: Dict[str, Any]) -> Optional[str]:
    """Project for job requests: config, then environment, then gcloud."""
    project = config["app"].get("default_project")
    if project:
        return project
    for env in PROJECT_ENV_VARS:
        if os.environ.get(env):
            return os.environ[env]
    return _gcloud_value("core/project")


def resolve_location(config: Dict[str, Any]) -> Optional[str]:
    location = config["app"].get("default_location") or os.environ.get(LOCATION_ENV_VAR)
    if location:
        return location
    for key in GCLOUD_REGION_KEYS:
        value = _gcloud_value(key)
        if value:
            return value
    return None
