# tests/test_loyalty.py
from decimal import Decimal

import pytest

from dtfshop.model import PointTransaction
from dtfshop.services.loyalty_service import check_redemption, max_redeemable_points, points_for, points_to_euros, tier_for


@pytest.mark.parametrize("spent,tier", [
    ("0", "BRONZE"), ("199.99", "BRONZE"), ("200", "SILVER"),
    ("500", "GOLD"), ("999.99", "GOLD"), ("1000", "PLATINUM"),
])
def test_tier_thresholds(spent, tier):
    assert tier_for(spent) == tier


def test_points_for():
    assert points_for("99.99", "BRONZE") == 99
    assert points_for("100", "GOLD") == 150
    assert points_for("106.25", "BRONZE", voucher_purchase=True) == 132
    assert points_for("100", "BRONZE", points_per_euro=2) == 200


class TestAward:
    def test_uses_tier_held_before_purchase(self, svc, db, customer, make_order):
        assert svc.loyalty.award_for_order(make_order(customer, total="150")) == 150
        # 300 spent after this one: SILVER, but this order still earns at BRONZE
        assert svc.loyalty.award_for_order(make_order(customer, total="150")) == 150
        acct = svc.loyalty.account_for(customer.id)
        assert acct.tier == "SILVER"
        assert svc.loyalty.award_for_order(make_order(customer, total="100")) == 125

    def test_awarded_once_per_order(self, svc, db, customer, make_order):
        order = make_order(customer, total="40")
        assert svc.loyalty.award_for_order(order) == 40
        db.session.commit()
        assert svc.loyalty.award_for_order(order) is None
        order.points_earned = None
        assert svc.loyalty.award_for_order(order) is None
        assert order.points_earned == 40
        assert svc.loyalty.account_for(customer.id).loyalty_points == 40

    def test_voucher_purchase_bonus(self, svc, customer, make_order):
        order = make_order(customer, total="106.25", is_voucher_purchase=True)
        assert svc.loyalty.award_for_order(order) == 132
        tx = svc.session.query(PointTransaction).filter_by(order_id=order.id).one()
        assert "voucher bonus" in tx.description

    def test_guest_orders_earn_nothing(self, svc, make_order):
        assert svc.loyalty.award_for_order(make_order(None, total="80")) is None


def test_revoke_takes_points_back_once(svc, db, customer, make_order):
    first = make_order(customer, total="150")
    second = make_order(customer, total="100")
    svc.loyalty.award_for_order(first)
    svc.loyalty.award_for_order(second)
    db.session.commit()
    acct = svc.loyalty.account_for(customer.id)
    assert acct.tier == "SILVER"

    assert svc.loyalty.revoke_for_order(second) == 100
    assert svc.loyalty.revoke_for_order(second) is None
    db.session.commit()

    assert acct.loyalty_points == 150
    assert acct.total_spent == Decimal("150.00")
    assert acct.tier == "BRONZE"
    kinds = [t.kind for t in db.session.query(PointTransaction).filter_by(order_id=second.id)]
    assert sorted(kinds) == ["earned", "revoked"]


def test_revoke_without_award_is_noop(svc, customer, make_order):
    assert svc.loyalty.revoke_for_order(make_order(customer, total="10")) is None


class TestRedemptionLimits:
    def test_hundred_points_are_five_euros(self):
        assert points_to_euros(100) == Decimal("5")
        assert points_to_euros(250) == Decimal("10")

    @pytest.mark.parametrize("amount,available,cap", [
        ("77", 300, 300),       # 20 % of 77 is 15.40: three steps
        ("77", 1000, 300),
        ("100", 250, 200),      # only two whole steps held
        ("20", 1000, 0),        # 4.00 allowed, less than one step
    ])
    def test_max_redeemable_points(self, amount, available, cap):
        assert max_redeemable_points(amount, available) == cap

    def test_valid_redemption_returns_discount(self):
        assert check_redemption(200, 300, "77") == Decimal("10")

    @pytest.mark.parametrize("points,available,amount,message", [
        (50, 300, "77", "at least 100"),
        (150, 300, "77", "multiples of 100"),
        ("100.5", 300, "77", "whole number"),
        (400, 300, "200", "not enough"),
        (400, 1000, "77", "at most 300"),
    ])
    def test_rejected_redemptions(self, points, available, amount, message):
        with pytest.raises(ValueError, match=message):
            check_redemption(points, available, amount)
