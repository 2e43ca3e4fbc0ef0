from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    user_name: str
    email: str
    name: Optional[str] = None
    phone: str = ""
    location_id: Optional[int] = None
    is_active: bool = True
    security_question: Optional[str] = None
    two_factor_enabled: bool = False
    access_failed_count: int = 0
    lockout_end: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    def is_locked_out(self, now: Optional[datetime] = None) -> bool:
        if self.lockout_end is None:
            return False
        return self.lockout_end > (now or _utcnow())


@dataclass
class Role:
    id: str
    name: str
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(cls, name: str) -> "Role":
        return cls(id=str(uuid.uuid4()), name=name)


@dataclass
class RememberedClient:
    """A browser that completed 2FA with "remember this machine" ticked."""

    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Location:
    id: int
    name: str


@dataclass
class GlassFixationCategory:
    id: int
    name: str
    fixation_cost: Decimal = Decimal("0")


@dataclass
class Product:
    id: int
    code: str
    name: str
    product_type: str = ""
    color: str = ""
    price: Decimal = Decimal("0")
    fixation_category_id: Optional[int] = None


@dataclass
class Inventory:
    id: int
    product_id: Optional[int]
    location_id: Optional[int]
    shelf: str = ""
    quantity: int = 0
