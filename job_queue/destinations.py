"""
Destination names — resolve ${...} placeholders in queue names once and
cache the result, so transports do not re-resolve on every send.
"""
from __future__ import annotations

import threading
import structlog
from typing import Callable, Optional

from core.exceptions import ConfigurationError

logger = structlog.get_logger()


class DestinationResolver:

    def __init__(self, resolve_placeholders: Optional[Callable[[str], str]] = None):
        self._resolve_placeholders = resolve_placeholders
        self._cache: dict[str, str] = {}
        self._lock = threading.Lock()

    def resolve(self, name: str) -> str:
        with self._lock:
            cached = self._cache.get(name)
            if cached is not None:
                return cached

            resolved = name
            if self._resolve_placeholders is not None and "${" in name:
                resolved = self._resolve_placeholders(name)
            resolved = (resolved or "").strip()
            if not resolved:
                raise ConfigurationError(f"Destination '{name}' resolved to an empty name")

            self._cache[name] = resolved
            logger.debug("destination_resolved", name=name, resolved=resolved)
            return resolved

    def remove_from_cache(self, name: str) -> None:
        with self._lock:
            self._cache.pop(name, None)
