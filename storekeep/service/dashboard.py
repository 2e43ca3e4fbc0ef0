from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from storekeep.logging import get_logger
from storekeep.storage.memory import MemoryStore

logger = get_logger(__name__)

ADMIN_ROLE = "Admin"
MANAGER_ROLE = "Manager"
DEFAULT_ROLE = "User"


class DashboardRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    OTHER = "other"

    @classmethod
    def from_role_name(cls, role: Optional[str]) -> "DashboardRole":
        return _ROLE_NAMES.get(role or "", cls.OTHER)


_ROLE_NAMES = {
    ADMIN_ROLE: DashboardRole.ADMIN,
    MANAGER_ROLE: DashboardRole.MANAGER,
}

DASHBOARD_TARGETS: Dict[DashboardRole, str] = {
    DashboardRole.ADMIN: "/AdminDashboard/Index",
    DashboardRole.MANAGER: "/ManagerDashboard/Index",
    DashboardRole.OTHER: "/ManagerDashboard/Index",
}


def dashboard_for(role: Optional[str]) -> str:
    """Landing route for a signed-in role name."""
    return DASHBOARD_TARGETS[DashboardRole.from_role_name(role)]


@dataclass(frozen=True)
class InventoryRow:
    product_code: str
    location_name: str
    product_name: str
    product_type: str
    product_color: str
    quantity: int
    shelf: str
    price: Decimal
    total_price: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "productCode": self.product_code,
            "locationName": self.location_name,
            "productName": self.product_name,
            "productType": self.product_type,
            "productColor": self.product_color,
            "quantity": self.quantity,
            "shelf": self.shelf,
            "price": str(self.price),
            "totalPrice": str(self.total_price),
        }


class DashboardService:
    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    def my_inventory(self, location_id: int) -> List[InventoryRow]:
        """Inventory rows for one location; location 0 means every location."""
        records = self.store.list_inventory(location_id if location_id else None)
        rows: List[InventoryRow] = []
        for record in records:
            product = (
                self.store.get_product(record.product_id)
                if record.product_id is not None
                else None
            )
            location = (
                self.store.get_location(record.location_id)
                if record.location_id is not None
                else None
            )
            price = product.price if product else Decimal("0")
            rows.append(
                InventoryRow(
                    product_code=product.code if product else "",
                    location_name=location.name if location else "",
                    product_name=product.name if product else "",
                    product_type=product.product_type if product else "",
                    product_color=product.color if product else "",
                    quantity=record.quantity,
                    shelf=record.shelf,
                    price=price,
                    total_price=price * record.quantity,
                )
            )
        logger.debug("inventory_listed", location_id=location_id, rows=len(rows))
        return rows
