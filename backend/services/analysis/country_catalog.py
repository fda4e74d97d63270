"""Monitored-country profiles and region groupings.

Each profile carries the keywords used to attribute news clusters to the
country, an optional score floor, and an optional news-volume threshold
for the coverage-bias damping.  Regions group countries for regional
convergence summaries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .catalog_loader import AnalysisJsonCatalog
from .errors import MalformedConfiguration

logger = logging.getLogger(__name__)

_DEFAULT = {
    "version": 0,
    "updated_at": None,
    "countries": [],
    "regions": [],
}


@dataclass(frozen=True)
class CountryProfile:
    code: str
    name: str
    keywords: tuple[str, ...] = ()
    floor: Optional[int] = None
    news_volume_threshold: Optional[float] = None


@dataclass(frozen=True)
class Region:
    id: str
    name: str
    countries: frozenset[str]


def _normalize_code(value: Any) -> str:
    return str(value or "").strip().upper()


class CountryCatalog:
    """Country profiles and regions.

    Once a payload has validated, a later edit that fails to parse is
    logged and the last valid profiles and regions stay in effect.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self._catalog = AnalysisJsonCatalog("country_profiles.json", _DEFAULT, path=path)
        self._last_good: Optional[tuple[dict[str, CountryProfile], list[Region]]] = None
        self._last_error: Optional[str] = None

    def payload(self) -> dict[str, Any]:
        return self._catalog.payload()

    def validate(self) -> int:
        """Parse profiles and regions now, raising ``MalformedConfiguration``.

        Returns the number of profiles.
        """
        parsed = self._parse()
        self._last_good = parsed
        self._last_error = None
        return len(parsed[0])

    def _current(self) -> tuple[dict[str, CountryProfile], list[Region]]:
        try:
            parsed = self._parse()
        except MalformedConfiguration as exc:
            if self._last_good is None:
                raise
            if str(exc) != self._last_error:
                logger.warning("Keeping last valid country profiles: %s", exc)
                self._last_error = str(exc)
            return self._last_good
        self._last_good = parsed
        self._last_error = None
        return parsed

    def profiles(self) -> dict[str, CountryProfile]:
        return dict(self._current()[0])

    def regions(self) -> list[Region]:
        return list(self._current()[1])

    def _parse(self) -> tuple[dict[str, CountryProfile], list[Region]]:
        return self._parse_profiles(), self._parse_regions()

    def _parse_profiles(self) -> dict[str, CountryProfile]:
        rows = self.payload().get("countries") or []
        out: dict[str, CountryProfile] = {}
        for row in rows:
            if not isinstance(row, dict):
                continue
            code = _normalize_code(row.get("code"))
            if not code:
                continue
            out[code] = CountryProfile(
                code=code,
                name=str(row.get("name") or code).strip(),
                keywords=tuple(
                    str(k).strip().casefold() for k in (row.get("keywords") or []) if str(k).strip()
                ),
                floor=self._parse_floor(code, row.get("floor")),
                news_volume_threshold=self._parse_threshold(code, row.get("news_volume_threshold")),
            )
        return out

    def _parse_regions(self) -> list[Region]:
        rows = self.payload().get("regions") or []
        out: list[Region] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            region_id = str(row.get("id") or "").strip()
            countries = frozenset(
                _normalize_code(c) for c in (row.get("countries") or []) if _normalize_code(c)
            )
            if not region_id or not countries:
                continue
            out.append(Region(id=region_id, name=str(row.get("name") or region_id), countries=countries))
        return out

    def _parse_floor(self, code: str, value: Any) -> Optional[int]:
        if value is None:
            return None
        try:
            floor = int(value)
        except (TypeError, ValueError) as exc:
            raise MalformedConfiguration(
                f"country {code} has non-numeric floor {value!r}", source=str(self._catalog.path)
            ) from exc
        if not 0 <= floor <= 100:
            raise MalformedConfiguration(
                f"country {code} floor {floor} outside 0-100", source=str(self._catalog.path)
            )
        return floor

    def _parse_threshold(self, code: str, value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            threshold = float(value)
        except (TypeError, ValueError) as exc:
            raise MalformedConfiguration(
                f"country {code} has non-numeric news threshold {value!r}",
                source=str(self._catalog.path),
            ) from exc
        if threshold <= 0:
            raise MalformedConfiguration(
                f"country {code} news threshold must be positive", source=str(self._catalog.path)
            )
        return threshold


country_catalog = CountryCatalog()
