"""Provider-specific request building and response parsing."""
from __future__ import annotations

from typing import Any, Dict, Protocol
from urllib.parse import quote

from geoqueue.geocode.models import Coordinate, GeocodeSettings


class GeocodeError(RuntimeError):
    """Base class for failures reported by a geocoding provider."""


class EmptyResultError(GeocodeError):
    """The provider answered successfully but returned no candidates."""


class ProviderResponseError(GeocodeError):
    """The provider payload did not have the expected shape."""


class Provider(Protocol):
    name: str

    def build_url(self, query: str) -> str: ...

    def headers(self) -> Dict[str, str]: ...

    def parse(self, payload: Any) -> Coordinate: ...


def _encode(query: str) -> str:
    return quote(query, safe="")


class NominatimProvider:
    """OpenStreetMap Nominatim, which requires an identifying User-Agent."""

    name = "nominatim"

    def __init__(self, *, base_url: str, user_agent: str) -> None:
        self._base_url = base_url
        self._user_agent = user_agent

    def build_url(self, query: str) -> str:
        return f"{self._base_url}q={_encode(query)}&format=json&limit=1"

    def headers(self) -> Dict[str, str]:
        return {"User-Agent": self._user_agent}

    def parse(self, payload: Any) -> Coordinate:
        if not payload:
            raise EmptyResultError("Geocode result is empty.")
        if not isinstance(payload, list):
            raise ProviderResponseError(f"expected a list of candidates, got {type(payload).__name__}")
        first = payload[0]
        try:
            return Coordinate(
                latitude=float(first["lat"]),
                longitude=float(first["lon"]),
                type=first.get("type"),
                name=first.get("display_name"),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise ProviderResponseError(f"malformed nominatim candidate: {exc}") from exc


class PhotonProvider:
    """Komoot Photon, answering with a GeoJSON feature collection."""

    name = "photon"

    def __init__(self, *, base_url: str) -> None:
        self._base_url = base_url

    def build_url(self, query: str) -> str:
        return f"{self._base_url}q={_encode(query)}&limit=1"

    def headers(self) -> Dict[str, str]:
        return {}

    def parse(self, payload: Any) -> Coordinate:
        if not payload:
            raise EmptyResultError("Geocode result is empty.")
        if not isinstance(payload, dict):
            raise ProviderResponseError(f"expected a feature collection, got {type(payload).__name__}")
        features = payload.get("features")
        if not features:
            raise EmptyResultError("Geocode result is empty.")
        try:
            feature = features[0]
            lon, lat = feature["geometry"]["coordinates"][:2]
            properties = feature.get("properties") or {}
            return Coordinate(
                latitude=float(lat),
                longitude=float(lon),
                type=properties.get("type"),
                name=properties.get("name") or properties.get("street"),
            )
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as exc:
            raise ProviderResponseError(f"malformed photon feature: {exc}") from exc


def build_provider(settings: GeocodeSettings) -> Provider:
    """Return the provider selected in ``settings``."""
    if settings.provider == "nominatim":
        return NominatimProvider(base_url=settings.nominatim_url, user_agent=settings.user_agent)
    return PhotonProvider(base_url=settings.photon_url)
