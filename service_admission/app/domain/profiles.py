"""
Named admission tunings for the guarded operations.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from shared.config import AdmissionConfig
from shared.logging import get_logger


MINUTE_MS = 60 * 1000

BUILTIN_PROFILES: Dict[str, Dict[str, Any]] = {
    "create_task": {
        "cache_ttl_ms": 15 * MINUTE_MS,
        "cache_max_size": 100,
        "rate_limit_per_identity_per_hour": 20,
        "rate_limit_global_per_hour": 100,
        "sampling_rate": 0.9,
        "dedupe_ttl_ms": 15 * MINUTE_MS,
    },
    "gmail_status": {
        "cache_ttl_ms": 90 * MINUTE_MS,
        "cache_max_size": 200,
        "rate_limit_per_identity_per_hour": 1,
        "rate_limit_global_per_hour": 30,
        "sampling_rate": 0.8,
        "dedupe_ttl_ms": 60 * MINUTE_MS,
    },
    "calendar_status": {
        "cache_ttl_ms": 30 * MINUTE_MS,
        "cache_max_size": 200,
        "rate_limit_per_identity_per_hour": 10,
        "rate_limit_global_per_hour": 100,
        "sampling_rate": 0.8,
        "dedupe_ttl_ms": 30 * MINUTE_MS,
    },
}


class AdmissionProfiles:
    """
    Resolves an ``AdmissionConfig`` per guarded operation.

    Overrides come from an optional JSON file mapping profile names to partial
    settings, layered over the built-in profile of the same name and then
    over the environment defaults. A missing or unreadable file yields no
    overrides.
    """

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        self._path = Path(config_path) if config_path else None
        self._lock = threading.Lock()
        self.logger = get_logger("admission.profiles")
        self._overrides = self._load()

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def refresh(self) -> None:
        """Reload overrides from disk."""
        with self._lock:
            self._overrides = self._load()

    def names(self) -> List[str]:
        with self._lock:
            return sorted(set(BUILTIN_PROFILES) | set(self._overrides))

    def get(self, name: str) -> AdmissionConfig:
        """Return the validated configuration for ``name``."""
        with self._lock:
            settings = {**BUILTIN_PROFILES.get(name, {}), **self._overrides.get(name, {})}
        return AdmissionConfig(**settings)

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if self._path is None:
            return {}

        try:
            with self._path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            self.logger.warning("Admission profiles file not found", path=str(self._path))
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.error("Failed to load admission profiles", path=str(self._path), error=str(exc))
            return {}

        if not isinstance(data, dict):
            self.logger.error("Admission profiles file must contain an object", path=str(self._path))
            return {}

        overrides: Dict[str, Dict[str, Any]] = {}
        for name, settings in data.items():
            if not isinstance(settings, dict):
                self.logger.warning("Skipping malformed admission profile", profile=name)
                continue
            try:
                AdmissionConfig(**{**BUILTIN_PROFILES.get(name, {}), **settings})
            except PydanticValidationError as exc:
                self.logger.warning("Skipping invalid admission profile", profile=name, error=str(exc))
                continue
            overrides[name] = settings

        self.logger.info("Loaded admission profiles", path=str(self._path), profiles=sorted(overrides))
        return overrides
