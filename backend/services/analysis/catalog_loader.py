"""Shared JSON catalog loader for analysis configuration files."""

from __future__ import annotations

import json
import logging
from copy import deepcopy
from pathlib import Path
from typing import Any, Optional

from config import settings
from .errors import MalformedConfiguration

logger = logging.getLogger(__name__)

_DATA_ROOT = Path(__file__).resolve().parents[2] / "data" / "analysis"


def data_root() -> Path:
    override = getattr(settings, "ANALYSIS_DATA_DIR", None)
    if override:
        return Path(override).expanduser().resolve()
    return _DATA_ROOT


class AnalysisJsonCatalog:
    """Loads an analysis JSON file with mtime-aware caching.

    Non-strict catalogs fall back to ``default_payload`` when the file is
    missing or unreadable on first load, and keep the last payload when a
    later edit is unreadable.  Strict catalogs raise ``MalformedConfiguration``
    instead, for registries the core cannot run without.
    """

    def __init__(
        self,
        filename: str,
        default_payload: dict[str, Any],
        *,
        strict: bool = False,
        path: Optional[Path] = None,
    ) -> None:
        self._path = path or (data_root() / filename)
        self._default = deepcopy(default_payload)
        self._payload: dict[str, Any] = deepcopy(default_payload)
        self._strict = strict
        self._loaded = False
        self._mtime_ns: int | None = None

    @property
    def path(self) -> Path:
        return self._path

    def _reload_if_needed(self) -> None:
        if not self._path.exists():
            if self._strict:
                raise MalformedConfiguration("catalog file is missing", source=str(self._path))
            if not self._loaded:
                logger.warning("Analysis catalog missing: %s", self._path)
                self._payload = deepcopy(self._default)
                self._loaded = True
            return

        mtime_ns = int(self._path.stat().st_mtime_ns)
        if self._loaded and self._mtime_ns == mtime_ns:
            return

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError("catalog root must be an object")
        except (OSError, ValueError) as exc:
            if self._strict:
                raise MalformedConfiguration(str(exc), source=str(self._path)) from exc
            logger.error("Failed loading analysis catalog %s: %s", self._path, exc)
            if not self._loaded:
                self._payload = deepcopy(self._default)
            self._loaded = True
            self._mtime_ns = mtime_ns
            return

        self._payload = raw
        self._mtime_ns = mtime_ns
        self._loaded = True

    def payload(self) -> dict[str, Any]:
        self._reload_if_needed()
        return deepcopy(self._payload)
