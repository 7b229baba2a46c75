"""Tests for the ``seed_orders`` management command."""

import re
from io import StringIO

import pytest
from django.core.management import call_command
from django.db.models import F

from modules.customers.models import Customer
from modules.inventory.models import Inventory, Warehouse
from modules.orders.models import Order

pytestmark = pytest.mark.integration


def _seed(orders: int) -> dict:
    out = StringIO()
    call_command("seed_orders", orders=orders, stdout=out)
    summary = re.search(r"orders=(\d+), rejected=(\d+)", out.getvalue())
    return {"created": int(summary.group(1)), "rejected": int(summary.group(2))}


class TestSeedOrders:
    def test_creates_reference_data_and_orders(self):
        summary = _seed(5)

        assert Warehouse.objects.count() == 2
        assert Customer.objects.count() == 4
        assert Inventory.objects.count() == 16
        assert summary["created"] <= 5
        assert summary["created"] + summary["rejected"] >= 5
        assert Order.objects.count() == summary["created"]
        assert summary["created"] >= 1

    def test_reservations_stay_within_stock(self):
        _seed(10)
        assert not Inventory.objects.filter(reserved__gt=F("on_hand")).exists()

    def test_rerun_reuses_reference_data(self):
        first = _seed(1)
        second = _seed(1)
        assert Warehouse.objects.count() == 2
        assert Customer.objects.count() == 4
        assert Order.objects.count() == first["created"] + second["created"]
