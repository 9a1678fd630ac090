"""
External collaborators consumed by the engine: a SKU reader and a
pricing/inventory mutator. Only the interfaces are owned here, plus an
in-memory implementation used by the API's default backend and by tests.
"""

import json
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import SKUNotFoundError, PermanentExecutionError


@dataclass
class SKU:
    sku: str
    price: float
    quantity: int = 0
    cost_price: Optional[float] = None
    name: str = ""

    @property
    def margin_percentage(self) -> Optional[float]:
        if self.cost_price is None or self.price <= 0:
            return None
        return (self.price - self.cost_price) / self.price * 100


@dataclass
class MutationResult:
    """What the target system reports back. actual_impact is None when it cannot measure a delta."""
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    actual_impact: Optional[float] = None
    external_refs: Dict[str, Any] = field(default_factory=dict)


class ISKUStore(ABC):
    """Read-only view of the catalog."""

    @abstractmethod
    def get_sku(self, sku: str) -> Optional[SKU]:
        pass


class ICommerceSystem(ABC):
    """Mutating interface of the pricing/inventory system."""

    @abstractmethod
    def apply_price_change(self, sku: str, new_price: float, reason: str = "") -> MutationResult:
        pass

    @abstractmethod
    def apply_stock_change(self, sku: str, new_quantity: int, reason: str = "") -> MutationResult:
        pass

    @abstractmethod
    def launch_campaign(self, campaign_ref: str, name: str, target_skus: List[str],
                        discount_percentage: float, duration_hours: float,
                        channels: List[str]) -> MutationResult:
        pass

    @abstractmethod
    def end_campaign(self, campaign_ref: str) -> MutationResult:
        pass


class InMemoryCommerce(ISKUStore, ICommerceSystem):
    """Thread-safe in-process catalog with price history and campaigns."""

    def __init__(self, skus: Optional[List[SKU]] = None):
        self._lock = threading.Lock()
        self._skus: Dict[str, SKU] = {s.sku: s for s in (skus or [])}
        self._campaigns: Dict[str, Dict[str, Any]] = {}
        self.price_history: List[Dict[str, Any]] = []
        self.inventory_events: List[Dict[str, Any]] = []

    @classmethod
    def from_json_file(cls, path: str) -> 'InMemoryCommerce':
        """Load `[{"sku": ..., "price": ..., "quantity": ..., "cost_price": ...}]`."""
        with open(path, "r", encoding="utf-8") as handle:
            rows = json.load(handle)
        return cls([SKU(**row) for row in rows])

    def add_sku(self, sku: SKU) -> None:
        with self._lock:
            self._skus[sku.sku] = sku

    def get_sku(self, sku: str) -> Optional[SKU]:
        with self._lock:
            current = self._skus.get(sku)
            return replace(current) if current else None

    def _require(self, sku: str) -> SKU:
        current = self._skus.get(sku)
        if current is None:
            raise SKUNotFoundError(sku)
        return current

    def apply_price_change(self, sku: str, new_price: float, reason: str = "") -> MutationResult:
        if new_price <= 0:
            raise PermanentExecutionError(f"Refusing non-positive price {new_price} for {sku}")
        with self._lock:
            current = self._require(sku)
            old_price = current.price
            current.price = new_price
            self.price_history.append({
                "sku_code": sku,
                "date": datetime.now().isoformat(),
                "price": new_price,
                "cost_price": current.cost_price,
                "source": "action_engine",
                "change_reason": reason,
            })
            quantity = current.quantity

        change = new_price - old_price
        return MutationResult(
            message=f"Price updated from {old_price:.2f} to {new_price:.2f}",
            data={
                "sku_code": sku,
                "old_price": old_price,
                "new_price": new_price,
                "change_amount": round(change, 2),
                "change_percent": round(change / old_price * 100, 1) if old_price else None,
            },
            actual_impact=round(change * quantity, 2),
        )

    def apply_stock_change(self, sku: str, new_quantity: int, reason: str = "") -> MutationResult:
        if new_quantity < 0:
            raise PermanentExecutionError(f"Refusing negative stock level {new_quantity} for {sku}")
        with self._lock:
            current = self._require(sku)
            previous = current.quantity
            current.quantity = new_quantity
            self.inventory_events.append({
                "sku_code": sku,
                "event_type": "stock_change",
                "quantity_change": new_quantity - previous,
                "previous_level": previous,
                "new_level": new_quantity,
                "reason": reason,
                "event_date": datetime.now().isoformat(),
            })
        return MutationResult(
            message=f"Stock for {sku} moved from {previous} to {new_quantity}",
            data={"sku_code": sku, "previous_level": previous, "new_level": new_quantity},
        )

    def launch_campaign(self, campaign_ref: str, name: str, target_skus: List[str],
                        discount_percentage: float, duration_hours: float,
                        channels: List[str]) -> MutationResult:
        with self._lock:
            for sku in target_skus:
                self._require(sku)
            if campaign_ref in self._campaigns:
                raise PermanentExecutionError(f"Campaign {campaign_ref} already exists")
            self._campaigns[campaign_ref] = {
                "name": name,
                "target_skus": list(target_skus),
                "discount_percentage": discount_percentage,
                "duration_hours": duration_hours,
                "channels": list(channels),
                "status": "active",
                "started_at": datetime.now().isoformat(),
            }
        return MutationResult(
            message=f'Campaign "{name}" launched for {len(target_skus)} products',
            data={
                "campaign_name": name,
                "target_skus_count": len(target_skus),
                "discount_percentage": discount_percentage,
                "duration_hours": duration_hours,
                "channels": list(channels),
            },
            external_refs={"campaign_id": campaign_ref, "discount_code": f"AE-{uuid.uuid4().hex[:8].upper()}"},
        )

    def end_campaign(self, campaign_ref: str) -> MutationResult:
        with self._lock:
            campaign = self._campaigns.get(campaign_ref)
            if campaign is None:
                raise PermanentExecutionError(f"Campaign {campaign_ref} not found")
            campaign["status"] = "ended"
        return MutationResult(message=f"Campaign {campaign_ref} ended", data={"campaign_id": campaign_ref})

    def campaign(self, campaign_ref: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            found = self._campaigns.get(campaign_ref)
            return dict(found) if found else None
