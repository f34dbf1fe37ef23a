"""Config artifact hook: persists resource identifiers per domain."""

from __future__ import annotations

import copy
import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Union

from ..errors import ConfigWriteError

logger = logging.getLogger(__name__)


def deep_merge(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``patch`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class ConfigWriter(ABC):
    """Writes resource identifiers into a domain's external configuration."""

    @abstractmethod
    def update(self, domain: str, environment: str, patch: Dict[str, Any]) -> None:
        """Merge ``patch`` into the ``environment`` section for ``domain``.

        Raises:
            ConfigWriteError: the artifact could not be updated.
        """

    @abstractmethod
    def read(self, domain: str, environment: str) -> Dict[str, Any]:
        """Return the ``environment`` section for ``domain`` (empty if none)."""


class NullConfigWriter(ConfigWriter):
    """Discards every update."""

    def update(self, domain: str, environment: str, patch: Dict[str, Any]) -> None:
        logger.debug(f"Config update for {domain}/{environment} discarded")

    def read(self, domain: str, environment: str) -> Dict[str, Any]:
        return {}


class JsonConfigWriter(ConfigWriter):
    """
    One JSON document per domain: ``<config_dir>/<domain>.json``.

    The document holds one section per environment. Each domain has its own
    lock so a pipeline never races another writer of the same artifact.
    """

    def __init__(self, config_dir: Union[str, Path]) -> None:
        self.config_dir = Path(config_dir)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def path_for(self, domain: str) -> Path:
        return self.config_dir / f"{domain}.json"

    def update(self, domain: str, environment: str, patch: Dict[str, Any]) -> None:
        with self._lock_for(domain):
            document = self._load(domain)
            section = document.get(environment, {})
            document[environment] = deep_merge(section, patch)
            path = self.path_for(domain)
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with open(path, "w", encoding="utf-8") as f:
                    json.dump(document, f, indent=2, ensure_ascii=False)
            except OSError as exc:
                raise ConfigWriteError(
                    f"Failed to write config artifact {path}: {exc}",
                    {"domain": domain, "environment": environment, "path": str(path)},
                ) from exc
            logger.debug(f"📝 Updated {path} [{environment}] with {sorted(patch)}")

    def read(self, domain: str, environment: str) -> Dict[str, Any]:
        with self._lock_for(domain):
            return copy.deepcopy(self._load(domain).get(environment, {}))

    def _lock_for(self, domain: str) -> threading.Lock:
        with self._locks_guard:
            if domain not in self._locks:
                self._locks[domain] = threading.Lock()
            return self._locks[domain]

    def _load(self, domain: str) -> Dict[str, Any]:
        path = self.path_for(domain)
        if not path.is_file():
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigWriteError(
                f"Failed to read config artifact {path}: {exc}",
                {"domain": domain, "path": str(path)},
            ) from exc
