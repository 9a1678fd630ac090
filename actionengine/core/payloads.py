"""
Typed action payloads and rollback snapshots.

Each action type has exactly one payload variant and one snapshot variant.
Both are stored as JSON tagged with `kind`; snapshots also carry a
`version` so historically stored rollback data keeps decoding when a
variant grows new fields.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from .errors import PayloadError

SNAPSHOT_VERSION = 1


def _require(data: Dict[str, Any], key: str, kind: str) -> Any:
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise PayloadError(f"{kind} requires '{key}'", field=key)
    return value


def _number(value: Any, key: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise PayloadError(f"'{key}' must be a number, got {value!r}", field=key)


def _integer(value: Any, key: str) -> int:
    number = _number(value, key)
    if number != int(number):
        raise PayloadError(f"'{key}' must be a whole number, got {value!r}", field=key)
    return int(number)


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

class ActionPayload:
    kind = ""

    def skus(self) -> List[str]:
        raise NotImplementedError

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind
        return data


@dataclass
class PriceUpdatePayload(ActionPayload):
    sku: str
    new_price: float
    current_price: Optional[float] = None
    kind = "price_update"

    def skus(self) -> List[str]:
        return [self.sku]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PriceUpdatePayload':
        sku = data.get("sku") or data.get("sku_code")
        if not sku:
            raise PayloadError("price_update requires 'sku_code'", field="sku_code")
        current = data.get("current_price")
        return cls(
            sku=str(sku),
            new_price=_number(_require(data, "new_price", cls.kind), "new_price"),
            current_price=_number(current, "current_price") if current is not None else None,
        )


@dataclass
class ReorderStockPayload(ActionPayload):
    sku: str
    quantity: int
    cost_per_unit: float = 0.0
    supplier: str = ""
    delivery_eta: Optional[str] = None
    kind = "reorder_stock"

    def skus(self) -> List[str]:
        return [self.sku]

    @property
    def total_cost(self) -> float:
        return self.quantity * self.cost_per_unit

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReorderStockPayload':
        sku = data.get("sku") or data.get("sku_code")
        if not sku:
            raise PayloadError("reorder_stock requires 'sku_code'", field="sku_code")
        return cls(
            sku=str(sku),
            quantity=_integer(_require(data, "quantity", cls.kind), "quantity"),
            cost_per_unit=_number(data.get("cost_per_unit", 0), "cost_per_unit"),
            supplier=str(data.get("supplier") or ""),
            delivery_eta=data.get("delivery_eta"),
        )


@dataclass
class LaunchCampaignPayload(ActionPayload):
    campaign_name: str
    target_skus: List[str]
    discount_percentage: float = 0.0
    budget: float = 0.0
    duration_hours: float = 24.0
    channels: List[str] = field(default_factory=list)
    kind = "launch_campaign"

    def skus(self) -> List[str]:
        return list(self.target_skus)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LaunchCampaignPayload':
        targets = _require(data, "target_skus", cls.kind)
        if not isinstance(targets, list) or not targets:
            raise PayloadError("'target_skus' must be a non-empty list", field="target_skus")
        return cls(
            campaign_name=str(_require(data, "campaign_name", cls.kind)),
            target_skus=[str(s) for s in targets],
            discount_percentage=_number(data.get("discount_percentage", 0), "discount_percentage"),
            budget=_number(data.get("budget", 0), "budget"),
            duration_hours=_number(data.get("duration_hours", 24), "duration_hours"),
            channels=list(data.get("channels") or []),
        )


@dataclass
class BulkItem:
    sku: str
    new_price: Optional[float] = None
    new_quantity: Optional[int] = None


@dataclass
class BulkUpdatePayload(ActionPayload):
    items: List[BulkItem]
    kind = "bulk_update"

    def skus(self) -> List[str]:
        return [item.sku for item in self.items]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BulkUpdatePayload':
        raw_items = data.get("items") or data.get("updates")
        if not isinstance(raw_items, list) or not raw_items:
            raise PayloadError("bulk_update requires a non-empty 'items' list", field="items")
        items = []
        for index, raw in enumerate(raw_items):
            if not isinstance(raw, dict):
                raise PayloadError(f"items[{index}] must be an object", field="items")
            sku = raw.get("sku") or raw.get("sku_code")
            if not sku:
                raise PayloadError(f"items[{index}] requires 'sku_code'", field="items")
            new_price = raw.get("new_price")
            new_quantity = raw.get("new_quantity")
            if new_price is None and new_quantity is None:
                raise PayloadError(f"items[{index}] changes nothing", field="items")
            items.append(BulkItem(
                sku=str(sku),
                new_price=_number(new_price, "new_price") if new_price is not None else None,
                new_quantity=_integer(new_quantity, "new_quantity") if new_quantity is not None else None,
            ))
        skus = [item.sku for item in items]
        if len(set(skus)) != len(skus):
            raise PayloadError("bulk_update lists a SKU more than once", field="items")
        return cls(items=items)


PAYLOAD_TYPES = {
    PriceUpdatePayload.kind: PriceUpdatePayload,
    ReorderStockPayload.kind: ReorderStockPayload,
    LaunchCampaignPayload.kind: LaunchCampaignPayload,
    BulkUpdatePayload.kind: BulkUpdatePayload,
}


def decode_payload(action_type: str, params: Dict[str, Any]) -> ActionPayload:
    """Decode raw params into the payload variant for `action_type`."""
    payload_cls = PAYLOAD_TYPES.get(action_type)
    if payload_cls is None:
        raise PayloadError(f"Unknown action type: {action_type}", field="type")
    if not isinstance(params, dict):
        raise PayloadError("params must be an object", field="params")
    return payload_cls.from_dict(params)


# ---------------------------------------------------------------------------
# Rollback snapshots
# ---------------------------------------------------------------------------

class RollbackSnapshot:
    kind = ""

    @property
    def captured(self) -> bool:
        """False when the action failed before any pre-mutation state was read."""
        return True

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind
        data["version"] = SNAPSHOT_VERSION
        return data


@dataclass
class EmptySnapshot(RollbackSnapshot):
    reason: str = ""
    kind = "none"

    @property
    def captured(self) -> bool:
        return False


@dataclass
class PriceSnapshot(RollbackSnapshot):
    sku: str
    old_price: float
    kind = "price_update"


@dataclass
class StockSnapshot(RollbackSnapshot):
    sku: str
    old_quantity: int
    quantity_ordered: int = 0
    kind = "reorder_stock"


@dataclass
class CampaignSnapshot(RollbackSnapshot):
    campaign_ref: str
    target_skus: List[str] = field(default_factory=list)
    old_prices: Dict[str, float] = field(default_factory=dict)
    kind = "launch_campaign"


@dataclass
class BulkSnapshotItem:
    sku: str
    old_price: Optional[float] = None
    old_quantity: Optional[int] = None


@dataclass
class BulkSnapshot(RollbackSnapshot):
    items: List[BulkSnapshotItem] = field(default_factory=list)
    kind = "bulk_update"


def decode_snapshot(data: Optional[Dict[str, Any]]) -> Optional[RollbackSnapshot]:
    """Decode stored rollback data. `{}` and None both mean nothing was captured yet."""
    if not data:
        return None

    version = data.get("version", 1)
    if version > SNAPSHOT_VERSION:
        raise PayloadError(f"Unsupported rollback_data version {version}", field="rollback_data")

    kind = data.get("kind")
    if kind == EmptySnapshot.kind:
        return EmptySnapshot(reason=data.get("reason", ""))
    if kind == PriceSnapshot.kind:
        return PriceSnapshot(sku=data["sku"], old_price=float(data["old_price"]))
    if kind == StockSnapshot.kind:
        return StockSnapshot(sku=data["sku"], old_quantity=int(data["old_quantity"]),
                             quantity_ordered=int(data.get("quantity_ordered", 0)))
    if kind == CampaignSnapshot.kind:
        return CampaignSnapshot(campaign_ref=data["campaign_ref"],
                                target_skus=list(data.get("target_skus", [])),
                                old_prices={k: float(v) for k, v in (data.get("old_prices") or {}).items()})
    if kind == BulkSnapshot.kind:
        return BulkSnapshot(items=[BulkSnapshotItem(**item) for item in data.get("items", [])])

    raise PayloadError(f"Unknown rollback_data kind: {kind}", field="rollback_data")
