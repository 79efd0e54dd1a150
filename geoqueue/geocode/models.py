"""Pydantic models for resolved coordinates and geocoder settings."""
from __future__ import annotations

from typing import Literal, Mapping, Optional

from pydantic import BaseModel, Field

ProviderName = Literal["nominatim", "photon"]


class Coordinate(BaseModel):
    """A resolved location along with the descriptive fields a provider returned."""

    latitude: float
    longitude: float
    type: Optional[str] = None
    name: Optional[str] = None
    address: Optional[str] = Field(default=None, description="Query text the coordinate was resolved for")

    def stamped(self, address: str) -> "Coordinate":
        """Return a copy carrying the supplied query text as its address."""
        return self.model_copy(update={"address": address})


class GeocodeSettings(BaseModel):
    """Read-only configuration for the geocoding scheduler."""

    max_concurrent_requests: int = Field(default=1, gt=0)
    min_request_interval_ms: int = Field(default=1000, ge=0)
    max_cache_size: int = Field(default=3000, ge=0)
    max_cache_overflow: int = Field(default=1000, ge=0)
    provider: ProviderName = "photon"
    nominatim_url: str = "https://nominatim.openstreetmap.org/search?"
    photon_url: str = "https://photon.komoot.io/api/?"
    user_agent: str = "geoqueue/0.1"
    timeout_seconds: float = Field(default=10.0, gt=0)

    model_config = {"frozen": True}

    @property
    def min_request_interval(self) -> float:
        """Minimum spacing between dispatches, in seconds."""
        return self.min_request_interval_ms / 1000.0

    @property
    def eviction_threshold(self) -> int:
        return self.max_cache_size + self.max_cache_overflow

    @classmethod
    def from_mapping(cls, payload: Optional[Mapping[str, object]]) -> "GeocodeSettings":
        """Build settings from the ``[geocode]`` table, ignoring unknown keys."""
        payload = payload or {}
        known = {key: value for key, value in payload.items() if key in cls.model_fields}
        return cls(**known)
