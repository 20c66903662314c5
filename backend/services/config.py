"""Runtime configuration for the flow metrics services.

Defaults can be overridden by ``backend/config/metrics-config.json``
(camelCase keys) and then by ``FLOW_METRICS_*`` environment variables.
"""

import json
import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Optional

from services.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.join(
    os.path.dirname(os.path.dirname(__file__)), "config", "metrics-config.json"
)

ENV_PREFIX = "FLOW_METRICS_"


@dataclass(frozen=True)
class MetricsConfig:
    board_cache_ttl_seconds: float = 1800.0
    database_cache_enabled: bool = True
    max_cache_age_hours: float = 24.0
    cached_sprints_limit: int = 50
    max_sprints_per_batch: int = 6
    max_issues_per_batch: int = 150
    estimated_issues_per_sprint: int = 40
    max_closed_sprints: int = 30
    stage_timeout_seconds: float = 45.0
    quick_stage_timeout_seconds: float = 10.0
    persistence_timeout_seconds: float = 10.0
    confidence_threshold: float = 85.0
    quick_cache_ttl_seconds: float = 180.0
    batch_cache_ttl_seconds: float = 300.0
    request_timeout_seconds: float = 30.0
    persistence_path: Optional[str] = None

    def __post_init__(self):
        positive = [
            "board_cache_ttl_seconds", "max_cache_age_hours", "cached_sprints_limit",
            "max_sprints_per_batch", "max_issues_per_batch",
            "estimated_issues_per_sprint", "max_closed_sprints",
            "stage_timeout_seconds", "quick_stage_timeout_seconds",
            "persistence_timeout_seconds", "request_timeout_seconds",
        ]
        for name in positive:
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive, got {getattr(self, name)}")
        if not 0 < self.confidence_threshold <= 100:
            raise ConfigurationError(
                f"confidence_threshold must be in (0, 100], got {self.confidence_threshold}"
            )

    @classmethod
    def load(cls, path: Optional[str] = None, environ: Optional[dict] = None) -> "MetricsConfig":
        """Build the configuration from defaults, JSON file and environment.

        Args:
            path: JSON file to read. Defaults to backend/config/metrics-config.json.
                A missing file is not an error.
            environ: Environment mapping, defaults to ``os.environ``.

        Raises:
            ConfigurationError: on unreadable JSON or values of the wrong type.
        """
        path = path or DEFAULT_CONFIG_PATH
        environ = os.environ if environ is None else environ
        overrides = {}

        if os.path.exists(path):
            try:
                with open(path, "r") as f:
                    raw = json.load(f)
            except (json.JSONDecodeError, IOError) as e:
                raise ConfigurationError(f"Failed to read {path}: {e}") from e
            by_camel = {_camel(f.name): f.name for f in fields(cls)}
            for key, value in raw.items():
                name = by_camel.get(key)
                if name is None:
                    logger.warning(f"Ignoring unknown config key: {key}")
                    continue
                overrides[name] = value
            logger.info(f"Loaded metrics config from {path}")

        for f in fields(cls):
            env_value = environ.get(ENV_PREFIX + f.name.upper())
            if env_value is not None:
                overrides[f.name] = env_value

        converted = {name: _coerce(cls, name, value) for name, value in overrides.items()}
        return replace(cls(), **converted)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _coerce(cls, name: str, value):
    default = getattr(cls, name)
    if name == "persistence_path":
        return str(value) if value else None
    try:
        if isinstance(default, bool):
            if isinstance(value, str):
                lowered = value.strip().lower()
                if lowered in ("1", "true", "yes", "on"):
                    return True
                if lowered in ("0", "false", "no", "off"):
                    return False
                raise ValueError(value)
            return bool(value)
        if isinstance(default, int):
            return int(value)
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {name}: {value!r}") from e
