from typing import Dict, Optional

from core.actors import Actor
from core.errors import GeocodingUnavailable
from models.user import User
from services.geocoding import Coordinates


class StaticGeocoder:
    """Geocoder double answering from a dict; optionally failing like a dead network."""

    def __init__(self, known: Optional[Dict[str, Coordinates]] = None, unavailable: bool = False):
        self.known = known or {}
        self.unavailable = unavailable
        self.calls = []

    def resolve(self, address: str) -> Optional[Coordinates]:
        self.calls.append(address)
        if self.unavailable:
            raise GeocodingUnavailable("Geocoding service unavailable: connection refused", address=address)
        return self.known.get(address)


def actor_for(user: User) -> Actor:
    return Actor(user_id=user.id, role=user.role)
