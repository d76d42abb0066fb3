import logging
import math
from datetime import datetime
from typing import List, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from models.enums import UserRole
from models.user import User
from services.geocoding import Coordinates

logger = logging.getLogger(__name__)

users_table = User.__table__


def haversine_km(a: Coordinates, b: Coordinates) -> float:
    r = 6371.0
    dlat = math.radians(b.latitude - a.latitude)
    dlon = math.radians(b.longitude - a.longitude)
    h = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(a.latitude))
        * math.cos(math.radians(b.latitude))
        * math.sin(dlon / 2) ** 2
    )
    return r * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


class AgentPool(Protocol):
    def select_available(self, near: Optional[Coordinates]) -> Optional[int]:
        """Claim an available delivery agent and return its id, or ``None``."""

    def claim(self, agent_id: int) -> bool:
        """Mark a specific agent busy; False if it was not available."""

    def release(self, agent_id: int) -> None:
        """Put an agent back into the pool."""


class DatabaseAgentPool:
    """Delivery agents are users with role DELIVERY_AGENT and ``is_available`` set.

    Claiming flips ``is_available`` with a conditional update, so an agent is
    never handed two deliveries by concurrent dispatchers.
    """

    def __init__(self, db: Session):
        self.db = db

    def candidates(self, near: Optional[Coordinates]) -> List[User]:
        agents = list(
            self.db.scalars(
                select(User)
                .where(User.role == UserRole.DELIVERY_AGENT, User.is_available.is_(True))
                .order_by(User.id)
            ).all()
        )
        if near is None:
            return agents

        def distance(agent: User) -> float:
            if agent.latitude is None or agent.longitude is None:
                return math.inf
            return haversine_km(near, Coordinates(agent.latitude, agent.longitude))

        # Stable sort keeps lowest id first among agents without a position
        return sorted(agents, key=distance)

    def select_available(self, near: Optional[Coordinates]) -> Optional[int]:
        for agent in self.candidates(near):
            if self.claim(agent.id):
                return agent.id
            logger.info("Delivery agent %s was claimed concurrently, trying next", agent.id)
        return None

    def claim(self, agent_id: int) -> bool:
        if self._set_available(agent_id, expected=True, value=False):
            logger.info("Claimed delivery agent %s", agent_id)
            return True
        return False

    def release(self, agent_id: int) -> None:
        if self._set_available(agent_id, expected=False, value=True):
            logger.info("Delivery agent %s is available again", agent_id)

    def _set_available(self, agent_id: int, expected: bool, value: bool) -> bool:
        result = self.db.execute(
            update(users_table)
            .where(users_table.c.id == agent_id, users_table.c.is_available == expected)
            .values(is_available=value, updated_at=datetime.utcnow())
        )
        self.db.commit()
        cached = self.db.identity_map.get(self.db.identity_key(User, agent_id))
        if cached is not None:
            self.db.expire(cached, ["is_available", "updated_at"])
        return result.rowcount == 1
