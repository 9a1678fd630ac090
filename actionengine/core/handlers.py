"""
Per-action-type handlers. Each handler owns one encode/apply/revert triple:
capture() reads the pre-mutation state into a rollback snapshot, apply()
performs the mutation, revert() applies the compensating mutation using
only the snapshot.
"""

import uuid
from abc import ABC, abstractmethod
from typing import Dict, List

from .commerce import ICommerceSystem, ISKUStore, MutationResult
from .errors import PermanentExecutionError, SKUNotFoundError
from .payloads import (
    ActionPayload,
    BulkSnapshot,
    BulkSnapshotItem,
    BulkUpdatePayload,
    CampaignSnapshot,
    LaunchCampaignPayload,
    PriceSnapshot,
    PriceUpdatePayload,
    ReorderStockPayload,
    RollbackSnapshot,
    StockSnapshot,
)
from .schema import ActionType
from ..util.logging import logger


def _read(sku_store: ISKUStore, sku: str):
    current = sku_store.get_sku(sku)
    if current is None:
        raise SKUNotFoundError(sku)
    return current


class ActionHandler(ABC):
    action_type: ActionType

    @abstractmethod
    def capture(self, sku_store: ISKUStore, payload: ActionPayload) -> RollbackSnapshot:
        pass

    @abstractmethod
    def apply(self, commerce: ICommerceSystem, payload: ActionPayload, snapshot: RollbackSnapshot,
              reason: str = "") -> MutationResult:
        pass

    @abstractmethod
    def revert(self, commerce: ICommerceSystem, sku_store: ISKUStore, snapshot: RollbackSnapshot,
               reason: str = "") -> MutationResult:
        pass


class PriceUpdateHandler(ActionHandler):
    action_type = ActionType.PRICE_UPDATE

    def capture(self, sku_store, payload: PriceUpdatePayload) -> PriceSnapshot:
        return PriceSnapshot(sku=payload.sku, old_price=_read(sku_store, payload.sku).price)

    def apply(self, commerce, payload: PriceUpdatePayload, snapshot: PriceSnapshot, reason=""):
        return commerce.apply_price_change(payload.sku, payload.new_price, reason)

    def revert(self, commerce, sku_store, snapshot: PriceSnapshot, reason=""):
        return commerce.apply_price_change(snapshot.sku, snapshot.old_price, reason)


class ReorderStockHandler(ActionHandler):
    action_type = ActionType.REORDER_STOCK

    def capture(self, sku_store, payload: ReorderStockPayload) -> StockSnapshot:
        current = _read(sku_store, payload.sku)
        return StockSnapshot(sku=payload.sku, old_quantity=current.quantity, quantity_ordered=payload.quantity)

    def apply(self, commerce, payload: ReorderStockPayload, snapshot: StockSnapshot, reason=""):
        result = commerce.apply_stock_change(payload.sku, snapshot.old_quantity + payload.quantity, reason)
        result.data.update({
            "quantity_ordered": payload.quantity,
            "supplier": payload.supplier,
            "total_cost": round(payload.total_cost, 2),
            "delivery_eta": payload.delivery_eta,
        })
        return result

    def revert(self, commerce, sku_store, snapshot: StockSnapshot, reason=""):
        return commerce.apply_stock_change(snapshot.sku, snapshot.old_quantity, reason)


class LaunchCampaignHandler(ActionHandler):
    action_type = ActionType.LAUNCH_CAMPAIGN

    def capture(self, sku_store, payload: LaunchCampaignPayload) -> CampaignSnapshot:
        # The campaign reference is fixed before launch so the snapshot is complete up front
        old_prices = {sku: _read(sku_store, sku).price for sku in payload.target_skus}
        return CampaignSnapshot(
            campaign_ref=f"camp_{uuid.uuid4().hex[:12]}",
            target_skus=list(payload.target_skus),
            old_prices=old_prices,
        )

    def apply(self, commerce, payload: LaunchCampaignPayload, snapshot: CampaignSnapshot, reason=""):
        result = commerce.launch_campaign(
            snapshot.campaign_ref,
            payload.campaign_name,
            payload.target_skus,
            payload.discount_percentage,
            payload.duration_hours,
            payload.channels,
        )
        result.external_refs.setdefault("campaign_id", snapshot.campaign_ref)
        result.data["budget"] = payload.budget
        return result

    def revert(self, commerce, sku_store, snapshot: CampaignSnapshot, reason=""):
        return commerce.end_campaign(snapshot.campaign_ref)


class BulkUpdateHandler(ActionHandler):
    action_type = ActionType.BULK_UPDATE

    def capture(self, sku_store, payload: BulkUpdatePayload) -> BulkSnapshot:
        items = []
        for item in payload.items:
            current = _read(sku_store, item.sku)
            items.append(BulkSnapshotItem(
                sku=item.sku,
                old_price=current.price if item.new_price is not None else None,
                old_quantity=current.quantity if item.new_quantity is not None else None,
            ))
        return BulkSnapshot(items=items)

    def apply(self, commerce, payload: BulkUpdatePayload, snapshot: BulkSnapshot, reason=""):
        applied: List[BulkSnapshotItem] = []
        by_sku = {item.sku: item for item in snapshot.items}
        impact = 0.0
        measured = False
        changes: List[Dict] = []

        try:
            for item in payload.items:
                if item.new_price is not None:
                    result = commerce.apply_price_change(item.sku, item.new_price, reason)
                    if result.actual_impact is not None:
                        impact += result.actual_impact
                        measured = True
                    changes.append(result.data)
                if item.new_quantity is not None:
                    result = commerce.apply_stock_change(item.sku, item.new_quantity, reason)
                    changes.append(result.data)
                applied.append(by_sku[item.sku])
        except Exception:
            # Undo the items already written so the action fails as a whole
            self._undo(commerce, applied, reason)
            raise

        return MutationResult(
            message=f"Bulk update applied to {len(payload.items)} SKUs",
            data={"changes": changes, "sku_count": len(payload.items)},
            actual_impact=round(impact, 2) if measured else None,
        )

    def revert(self, commerce, sku_store, snapshot: BulkSnapshot, reason=""):
        missing = [item.sku for item in snapshot.items if sku_store.get_sku(item.sku) is None]
        if missing:
            raise PermanentExecutionError(f"SKU(s) no longer exist: {', '.join(missing)}")
        # Each entry holds the value a field had before it was reverted
        reverted: List[BulkSnapshotItem] = []
        try:
            for item in reversed(snapshot.items):
                current = _read(sku_store, item.sku)
                if item.old_price is not None:
                    commerce.apply_price_change(item.sku, item.old_price, reason)
                    reverted.append(BulkSnapshotItem(sku=item.sku, old_price=current.price))
                if item.old_quantity is not None:
                    commerce.apply_stock_change(item.sku, item.old_quantity, reason)
                    reverted.append(BulkSnapshotItem(sku=item.sku, old_quantity=current.quantity))
        except Exception as e:
            # Put the bulk update back in full so the action stays as it was
            try:
                self._undo(commerce, reverted, reason)
            except Exception as redo_error:
                logger.error(f"Could not re-apply bulk update after failed rollback ({e}): {redo_error}")
            raise
        return MutationResult(
            message=f"Bulk update reverted for {len(snapshot.items)} SKUs",
            data={"skus": [item.sku for item in snapshot.items]},
        )

    def _undo(self, commerce, items: List[BulkSnapshotItem], reason: str):
        for item in reversed(items):
            if item.old_price is not None:
                commerce.apply_price_change(item.sku, item.old_price, reason)
            if item.old_quantity is not None:
                commerce.apply_stock_change(item.sku, item.old_quantity, reason)
            logger.debug(f"Restored {item.sku} from bulk snapshot")


HANDLERS: Dict[ActionType, ActionHandler] = {
    handler.action_type: handler
    for handler in (PriceUpdateHandler(), ReorderStockHandler(), LaunchCampaignHandler(), BulkUpdateHandler())
}


def get_handler(action_type) -> ActionHandler:
    """Look up the handler for an action type (enum or its string value)."""
    return HANDLERS[ActionType(action_type)]
