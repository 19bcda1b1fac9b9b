"""
matchadmin/models/plan.py

Subscription plan models.

A plan is a named billing tier mirrored to the billing provider as one
product (name, feature metadata, active flag) plus one price.
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict

from matchadmin.core.config import settings


class FieldGroup(str, Enum):
    """Field groups synchronized to the provider, in the order they are applied."""
    PRODUCT = "product"  # name + features, one provider call
    PRICE = "price"
    AVAILABILITY = "availability"


SYNC_ORDER: List[FieldGroup] = [FieldGroup.PRODUCT, FieldGroup.PRICE, FieldGroup.AVAILABILITY]


def to_minor_units(price: Decimal) -> int:
    """9.99 -> 999, rounding half up to whole cents."""
    return int((Decimal(price) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


class SubscriptionPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    price_minor_units: int
    currency: str = "usd"
    features: Dict[str, Any]
    available: bool = True
    is_default: bool = False
    external_product_id: Optional[str] = None
    external_price_id: Optional[str] = None
    pending_sync: bool = False
    pending_groups: List[FieldGroup] = []
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def price(self) -> Decimal:
        return from_minor_units(self.price_minor_units)

    def feature(self, key: str, default: Any = None) -> Any:
        return self.features.get(key, default)

    @property
    def swipe_limit(self) -> Optional[int]:
        value = self.feature(settings.SWIPE_LIMIT_FEATURE)
        if isinstance(value, bool) or not isinstance(value, int):
            return None
        return value


class PlanChangeset(BaseModel):
    """
    Partial plan update.

    A field left as None is absent: it is neither written locally nor sent
    to the provider.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: Optional[str] = None
    price: Optional[Decimal] = None
    available: Optional[bool] = None
    features: Optional[Dict[str, Any]] = None

    def present(self) -> Dict[str, Any]:
        return {key: value for key, value in self.model_dump().items() if value is not None}

    def groups(self) -> List[FieldGroup]:
        """Field groups this changeset touches, in sync order."""
        touched = []
        if self.name is not None or self.features is not None:
            touched.append(FieldGroup.PRODUCT)
        if self.price is not None:
            touched.append(FieldGroup.PRICE)
        if self.available is not None:
            touched.append(FieldGroup.AVAILABILITY)
        return touched

    def merged_over(self, earlier: Optional["PlanChangeset"]) -> "PlanChangeset":
        """This changeset layered on top of an earlier, still-unsynced one."""
        if earlier is None:
            return self
        return PlanChangeset(**{**earlier.present(), **self.present()})

    def to_json(self) -> Dict[str, Any]:
        data = self.present()
        if "price" in data:
            data["price"] = str(data["price"])
        return data
