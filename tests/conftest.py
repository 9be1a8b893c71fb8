"""Shared fixtures for recordsync tests."""

import pytest

from recordsync_datasource import ArrayDataSource
from recordsync_models import ViewConfig


@pytest.fixture
def invoice_model():
    """Model with a two-level computed chain: subtotal -> total."""
    return {
        "name": "Invoice",
        "fields": {
            "id": {"type": "id"},
            "qty": {"type": "number"},
            "price": {"type": "currency"},
            "tax": {"type": "percent"},
            "subtotal": {
                "computed": True,
                "dependsOn": ["qty", "price"],
                "compute": lambda r, ctx: r["qty"] * r["price"],
            },
            "total": {
                "computed": True,
                "dependsOn": ["subtotal", "tax"],
                "compute": lambda r, ctx: ctx.get("subtotal") * (1 + r["tax"]),
            },
        },
    }


@pytest.fixture
def plain_model():
    return {"name": "Item", "fields": {"id": {}, "name": {}, "status": {}}}


@pytest.fixture
def items():
    return [
        {"id": "1", "name": "alpha", "status": "open"},
        {"id": "2", "name": "beta", "status": "done"},
        {"id": "3", "name": "gamma", "status": "open"},
    ]


@pytest.fixture
def array_source(items):
    return ArrayDataSource(items, entity_type="Item")


@pytest.fixture
def item_view():
    return ViewConfig(name="items", resource="items", entityType="Item")
