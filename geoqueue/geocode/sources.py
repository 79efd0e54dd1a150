"""Static resolution sources consulted before the runtime cache."""
from __future__ import annotations

from typing import Callable, Dict, Mapping, Optional

from geoqueue.geocode.models import Coordinate


class OverrideStore:
    """Host-supplied coordinates that take priority over every other source."""

    def __init__(self) -> None:
        self._overrides: Dict[str, Coordinate] = {}

    def inject(self, locations: Optional[Mapping[str, Optional[Coordinate]]], *, replace_all: bool = False) -> None:
        """Merge ``locations`` into the store.

        With ``replace_all`` the store becomes exactly ``locations``. Otherwise a
        key mapped to ``None`` removes that override.
        """
        locations = locations or {}
        if replace_all:
            self._overrides = {key: loc for key, loc in locations.items() if loc is not None}
            return
        for key, loc in locations.items():
            if loc is not None:
                self._overrides[key] = loc
            else:
                self._overrides.pop(key, None)

    def remove(self, predicate: Callable[[Coordinate], bool]) -> int:
        """Drop every override whose coordinate satisfies ``predicate``."""
        doomed = [key for key, loc in self._overrides.items() if predicate(loc)]
        for key in doomed:
            del self._overrides[key]
        return len(doomed)

    def get(self, address: str) -> Optional[Coordinate]:
        return self._overrides.get(address)

    def __contains__(self, address: object) -> bool:
        return address in self._overrides

    def __len__(self) -> int:
        return len(self._overrides)


class InitCache:
    """Read-only snapshot of coordinates supplied once at startup."""

    def __init__(self) -> None:
        self._snapshot: Dict[str, Coordinate] = {}

    def seed(self, locations: Optional[Mapping[str, Coordinate]]) -> None:
        self._snapshot = dict(locations or {})

    def get(self, address: str) -> Optional[Coordinate]:
        return self._snapshot.get(address)

    def __len__(self) -> int:
        return len(self._snapshot)
