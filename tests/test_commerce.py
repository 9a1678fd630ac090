"""
In-memory commerce backend used by the API and the tests.
"""

import json

import pytest

from actionengine.core.commerce import SKU, InMemoryCommerce
from actionengine.core.errors import PermanentExecutionError, SKUNotFoundError

from conftest import make_catalog


@pytest.fixture
def store():
    return InMemoryCommerce(make_catalog())


class TestCatalog:

    def test_get_sku_returns_a_copy(self, store):
        sku = store.get_sku("GIN-001")
        sku.price = 1.0
        assert store.get_sku("GIN-001").price == 28.50

    def test_add_sku(self, store):
        store.add_sku(SKU(sku="MEZ-007", price=60.0, quantity=5, cost_price=30.0))
        assert store.get_sku("MEZ-007").quantity == 5

    def test_unknown_sku(self, store):
        assert store.get_sku("NOPE-000") is None
        with pytest.raises(SKUNotFoundError):
            store.apply_price_change("NOPE-000", 10.0)

    def test_margin_percentage(self):
        assert SKU(sku="A", price=50.0, cost_price=30.0).margin_percentage == pytest.approx(40.0)
        assert SKU(sku="B", price=50.0).margin_percentage is None

    def test_from_json_file(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps([{"sku": "GIN-001", "price": 28.5, "quantity": 100, "cost_price": 15}]))

        store = InMemoryCommerce.from_json_file(str(path))

        assert store.get_sku("GIN-001").cost_price == 15


class TestMutations:

    def test_price_change_reports_impact(self, store):
        result = store.apply_price_change("GIN-001", 27.99, "competitor price match")

        assert result.data["old_price"] == 28.50
        assert result.data["change_percent"] == pytest.approx(-1.8)
        assert result.actual_impact == pytest.approx(-51.0)
        assert store.price_history[-1]["change_reason"] == "competitor price match"

    def test_non_positive_price_refused(self, store):
        with pytest.raises(PermanentExecutionError):
            store.apply_price_change("GIN-001", 0)
        assert store.price_history == []

    def test_stock_change_records_event(self, store):
        result = store.apply_stock_change("RUM-003", 120, "reorder")

        assert result.data == {"sku_code": "RUM-003", "previous_level": 80, "new_level": 120}
        assert store.inventory_events[-1]["quantity_change"] == 40

    def test_negative_stock_refused(self, store):
        with pytest.raises(PermanentExecutionError):
            store.apply_stock_change("RUM-003", -1)

    def test_campaign_lifecycle(self, store):
        result = store.launch_campaign("camp_1", "Tequila Tuesday", ["TEQ-004"], 10, 24, ["email"])

        assert result.external_refs["campaign_id"] == "camp_1"
        assert store.campaign("camp_1")["status"] == "active"

        store.end_campaign("camp_1")
        assert store.campaign("camp_1")["status"] == "ended"

    def test_duplicate_campaign_refused(self, store):
        store.launch_campaign("camp_1", "A", ["TEQ-004"], 10, 24, [])
        with pytest.raises(PermanentExecutionError, match="already exists"):
            store.launch_campaign("camp_1", "B", ["TEQ-004"], 10, 24, [])

    def test_end_unknown_campaign(self, store):
        with pytest.raises(PermanentExecutionError, match="not found"):
            store.end_campaign("camp_missing")
