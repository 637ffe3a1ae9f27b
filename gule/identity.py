from __future__ import annotations

from dataclasses import dataclass

from gule.models import UserType


@dataclass(frozen=True)
class Identity:
    """Authenticated caller, resolved once per request."""

    id: int
    user_type: UserType
    role: str

    @property
    def is_admin(self) -> bool:
        return self.user_type == UserType.ADMIN

    @property
    def is_buyer(self) -> bool:
        return self.user_type == UserType.BUYER

    @property
    def is_seller(self) -> bool:
        return self.user_type == UserType.SELLER

    @property
    def reference(self) -> str:
        return f"{self.user_type.value}:{self.id}"


SYSTEM_ACTOR = "system"
