from decimal import Decimal
from types import SimpleNamespace

import pytest

from services.mileage_service.policy import RateAccrualPolicy


def order(items, eligible=True):
    return SimpleNamespace(
        mileage_eligible=eligible,
        total_amount=sum((Decimal(i.total_price) for i in items), Decimal("0")),
        items=items,
    )


def line(seller_id, total):
    return SimpleNamespace(seller_id=seller_id, total_price=Decimal(total))


def test_platform_rate_rounds_down():
    policy = RateAccrualPolicy(rate=Decimal("0.01"), seller_rates={})
    assert policy(order([line("a", "9999")]), Decimal("9999")) == 99


def test_ineligible_order_earns_nothing():
    policy = RateAccrualPolicy(rate=Decimal("0.05"), seller_rates={})
    assert policy(order([line("a", "1000")], eligible=False), Decimal("1000")) == 0


def test_seller_rates_split_amount_by_item_share():
    policy = RateAccrualPolicy(rate=Decimal("0.01"), seller_rates={"b": Decimal("0.05")})
    items = [line("a", "6000"), line("b", "4000")]

    # 6000 * 0.01 + 4000 * 0.05
    assert policy(order(items), Decimal("10000")) == 260
    # half paid: each share halves
    assert policy(order(items), Decimal("5000")) == 130


def test_negative_rate_is_refused():
    with pytest.raises(ValueError):
        RateAccrualPolicy(rate=Decimal("-0.01"))
