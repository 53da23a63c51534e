"""Who is driving a workflow operation."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from portal.core.exceptions import ForbiddenError


class ActorRole(str, Enum):
    ADMIN = "admin"
    CLIENT = "client"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    """Caller identity as seen by the workflow services.

    ``actor_id`` is the surrounding user system's id (or ``None`` for the
    automation sweep).
    """
    actor_id: str | None
    role: ActorRole

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN

    @property
    def is_client(self) -> bool:
        return self.role == ActorRole.CLIENT

    @property
    def is_system(self) -> bool:
        return self.role == ActorRole.SYSTEM

    @classmethod
    def admin(cls, actor_id: str | None = None) -> "Actor":
        return cls(actor_id, ActorRole.ADMIN)

    @classmethod
    def client(cls, actor_id: str | None = None) -> "Actor":
        return cls(actor_id, ActorRole.CLIENT)


SYSTEM_ACTOR = Actor(None, ActorRole.SYSTEM)


def require_admin(actor: Actor, operation: str) -> None:
    if not actor.is_admin:
        raise ForbiddenError(
            f"Only an admin may {operation}",
            details={"operation": operation, "role": actor.role.value},
        )
