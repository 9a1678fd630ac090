"""
Shared fixtures: a small spirits catalog, an in-memory repository and an
engine wired to both with its own SKU lock registry.
"""

import threading
import time

import pytest

from actionengine.core.commerce import InMemoryCommerce, SKU
from actionengine.core.engine import ActionEngine
from actionengine.core.errors import PermanentExecutionError
from actionengine.core.locks import SKULockRegistry
from actionengine.core.repository import InMemoryActionRepository
from actionengine.core.schema import ActionRequest


USER = "owner-1"


def make_catalog():
    return [
        SKU(sku="GIN-001", price=28.50, quantity=100, cost_price=15.0, name="London Dry Gin"),
        SKU(sku="VOD-002", price=40.00, quantity=50, cost_price=20.0, name="Premium Vodka"),
        SKU(sku="RUM-003", price=22.00, quantity=80, cost_price=11.0, name="Spiced Rum"),
        SKU(sku="TEQ-004", price=35.00, quantity=40, cost_price=18.0, name="Blanco Tequila"),
        SKU(sku="WHI-005", price=55.00, quantity=30, cost_price=30.0, name="Single Malt"),
        SKU(sku="BRA-006", price=45.00, quantity=20, cost_price=25.0, name="VSOP Brandy"),
    ]


def price_request(sku="GIN-001", new_price=27.99, **extra):
    return ActionRequest.from_dict({
        "type": "price_update",
        "sku_code": sku,
        "params": {"new_price": new_price},
        "reason": "competitor price match",
        **extra,
    })


def wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class RecordingCommerce(InMemoryCommerce):
    """
    InMemoryCommerce that can slow down or fail mutations per SKU and
    records how many mutations were in flight at once.
    """

    def __init__(self, skus=None, delay=0.0, slow_skus=None, failing_skus=None):
        super().__init__(skus)
        self.delay = delay
        self.slow_skus = set(slow_skus) if slow_skus is not None else None
        self.failing_skus = set(failing_skus or [])
        self._count_lock = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0
        self.in_flight_by_sku = {}
        self.max_in_flight_by_sku = {}

    def _enter(self, sku):
        with self._count_lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            current = self.in_flight_by_sku.get(sku, 0) + 1
            self.in_flight_by_sku[sku] = current
            self.max_in_flight_by_sku[sku] = max(self.max_in_flight_by_sku.get(sku, 0), current)

    def _leave(self, sku):
        with self._count_lock:
            self.in_flight -= 1
            self.in_flight_by_sku[sku] -= 1

    def apply_price_change(self, sku, new_price, reason=""):
        self._enter(sku)
        try:
            if sku in self.failing_skus:
                raise PermanentExecutionError(f"pricing system rejected {sku}")
            if self.delay and (self.slow_skus is None or sku in self.slow_skus):
                time.sleep(self.delay)
            return super().apply_price_change(sku, new_price, reason)
        finally:
            self._leave(sku)


@pytest.fixture
def commerce():
    return InMemoryCommerce(make_catalog())


@pytest.fixture
def repository():
    return InMemoryActionRepository()


@pytest.fixture
def make_engine(repository):
    """Factory so tests can swap the commerce backend or timeouts."""
    engines = []

    def _make(commerce=None, **kwargs):
        kwargs.setdefault("locks", SKULockRegistry())
        kwargs.setdefault("execution_timeout_sec", 5)
        engine = ActionEngine(kwargs.pop("repository", repository), commerce or InMemoryCommerce(make_catalog()),
                              **kwargs)
        engines.append(engine)
        return engine

    yield _make

    for engine in engines:
        engine.shutdown()


@pytest.fixture
def engine(make_engine, commerce):
    return make_engine(commerce)
