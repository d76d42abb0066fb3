"""
Address → coordinates lookup used by the delivery dispatcher.

The default provider talks to Nominatim (OpenStreetMap), which needs no API
key but does require a descriptive User-Agent and rate-limits aggressively.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import requests

from core.config import settings
from core.errors import GeocodingUnavailable

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = 429


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float

    @property
    def is_valid(self) -> bool:
        return -90 <= self.latitude <= 90 and -180 <= self.longitude <= 180


class GeocodingProvider(Protocol):
    def resolve(self, address: str) -> Optional[Coordinates]:
        """Coordinates for ``address``, ``None`` when nothing matches.

        Raises ``GeocodingUnavailable`` when the provider cannot be reached.
        """


def format_address(address: str, country: Optional[str] = None) -> str:
    """Drop repeated comma-separated parts and make sure the country is named."""
    parts = [p.strip() for p in (address or "").split(",") if p.strip()]
    seen = set()
    unique = []
    for part in parts:
        if part.lower() not in seen:
            seen.add(part.lower())
            unique.append(part)
    formatted = ", ".join(unique)
    country = settings.GEOCODER_COUNTRY if country is None else country
    if formatted and country and country.lower() not in formatted.lower():
        formatted = f"{formatted}, {country}"
    return formatted


class NominatimGeocoder:
    def __init__(
        self,
        url: Optional[str] = None,
        user_agent: Optional[str] = None,
        country_codes: Optional[str] = None,
        retries: Optional[int] = None,
        timeout: Optional[float] = None,
        backoff: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.url = url or settings.GEOCODER_URL
        self.user_agent = user_agent or settings.GEOCODER_USER_AGENT
        self.country_codes = settings.GEOCODER_COUNTRY_CODES if country_codes is None else country_codes
        self.retries = max(1, retries or settings.GEOCODER_RETRIES)
        self.timeout = timeout or settings.GEOCODER_TIMEOUT_SECONDS
        self.backoff = settings.GEOCODER_BACKOFF_SECONDS if backoff is None else backoff
        self._sleep = sleep

    def resolve(self, address: str) -> Optional[Coordinates]:
        query = format_address(address)
        if not query:
            return None

        params = {"q": query, "format": "json", "limit": 1, "addressdetails": 0}
        if self.country_codes:
            params["countrycodes"] = self.country_codes
        headers = {"User-Agent": self.user_agent, "Accept": "application/json"}

        last_error = None
        for attempt in range(1, self.retries + 1):
            try:
                resp = requests.get(self.url, params=params, headers=headers, timeout=self.timeout)
            except requests.RequestException as exc:
                last_error = str(exc)
                logger.warning("Geocoding request failed (attempt %s/%s): %s", attempt, self.retries, exc)
            else:
                if resp.status_code == RETRYABLE_STATUS or resp.status_code >= 500:
                    last_error = f"HTTP {resp.status_code}"
                    logger.warning("Geocoder answered %s (attempt %s/%s)", resp.status_code, attempt, self.retries)
                elif not resp.ok:
                    # Client errors will not improve on retry
                    logger.warning("Geocoder rejected %r with HTTP %s", query, resp.status_code)
                    return None
                else:
                    return self._parse(query, resp)
            if attempt < self.retries:
                self._sleep(self.backoff * attempt)

        raise GeocodingUnavailable(f"Geocoding service unavailable: {last_error}", address=query)

    @staticmethod
    def _parse(query: str, resp: requests.Response) -> Optional[Coordinates]:
        try:
            payload = resp.json()
        except ValueError:
            logger.warning("Geocoder returned a non-JSON body for %r", query)
            return None
        if not isinstance(payload, list) or not payload:
            logger.info("No geocoding result for %r", query)
            return None
        item = payload[0]
        if not isinstance(item, dict):
            logger.warning("Geocoder returned an unexpected result for %r: %r", query, item)
            return None
        try:
            coords = Coordinates(float(item.get("lat")), float(item.get("lon")))
        except (TypeError, ValueError):
            return None
        if not coords.is_valid:
            logger.warning("Geocoder returned out-of-range coordinates for %r: %s", query, coords)
            return None
        logger.info("Geocoded %r to %s,%s", query, coords.latitude, coords.longitude)
        return coords


class DisabledGeocoder:
    """Resolves nothing; used when geocoding is switched off (tests, offline dev)."""

    def resolve(self, address: str) -> Optional[Coordinates]:
        return None


def build_geocoder() -> GeocodingProvider:
    if not settings.GEOCODING_ENABLED:
        return DisabledGeocoder()
    return NominatimGeocoder()
