# dtfshop/services/loyalty_service.py
from __future__ import annotations

import logging

from sqlalchemy import select

from ..model import LoyaltyAccount, PointTransaction
from ..utils.money import D, Money, floor_int, round_money

logger = logging.getLogger(__name__)

# (tier, min total spent, points multiplier), highest first
TIERS = (
    ("PLATINUM", D("1000"), D("2")),
    ("GOLD", D("500"), D("1.5")),
    ("SILVER", D("200"), D("1.25")),
    ("BRONZE", D("0"), D("1")),
)
TIER_MULTIPLIER = {name: mult for name, _, mult in TIERS}
VOUCHER_PURCHASE_BONUS = D("1.25")

# redemption: whole steps of 100 points, 5 EUR each, at most 20 % of the order
MIN_POINTS_TO_REDEEM = 100
POINTS_PER_STEP = 100
EUROS_PER_STEP = D("5")
MAX_REDEEM_SHARE = D("0.20")


def tier_for(total_spent) -> str:
    spent = D(total_spent)
    for name, threshold, _ in TIERS:
        if spent >= threshold:
            return name
    return "BRONZE"


def points_for(amount, tier: str, points_per_euro=1, voucher_purchase: bool = False) -> int:
    points = floor_int(D(amount) * D(points_per_euro) * TIER_MULTIPLIER.get(tier, D(1)))
    if voucher_purchase:
        points = floor_int(D(points) * VOUCHER_PURCHASE_BONUS)
    return max(points, 0)


def points_to_euros(points) -> Money:
    return D(int(points) // POINTS_PER_STEP) * EUROS_PER_STEP


def max_redeemable_points(order_amount, available) -> int:
    steps_by_value = floor_int(D(order_amount) * MAX_REDEEM_SHARE / EUROS_PER_STEP)
    steps_held = int(available) // POINTS_PER_STEP
    return max(min(steps_by_value, steps_held), 0) * POINTS_PER_STEP


def check_redemption(points, available, order_amount) -> Money:
    """
    Validate a redemption request against the balance held and the order
    amount it discounts. Returns the discount in euros; raises ValueError.
    """
    wanted = D(points)
    if wanted != wanted.to_integral_value():
        raise ValueError("points must be a whole number")
    wanted = int(wanted)
    if wanted < MIN_POINTS_TO_REDEEM:
        raise ValueError(f"at least {MIN_POINTS_TO_REDEEM} points must be redeemed")
    if wanted % POINTS_PER_STEP:
        raise ValueError(f"points are redeemed in multiples of {POINTS_PER_STEP}")
    if wanted > int(available):
        raise ValueError("not enough loyalty points")
    cap = max_redeemable_points(order_amount, available)
    if wanted > cap:
        raise ValueError(f"at most {cap} points can be used on this order")
    return points_to_euros(wanted)


class LoyaltyService:
    def __init__(self, session, settings):
        self.session = session
        self.settings = settings

    def account_for(self, user_id, lock=False) -> LoyaltyAccount:
        stmt = select(LoyaltyAccount).where(LoyaltyAccount.user_id == user_id)
        if lock:
            stmt = stmt.with_for_update()
        acct = self.session.scalars(stmt).first()
        if acct is None:
            acct = LoyaltyAccount(user_id=user_id, loyalty_points=0, lifetime_points=0,
                                  total_spent=D(0), tier="BRONZE")
            self.session.add(acct)
            self.session.flush()
        return acct

    def award_for_order(self, order) -> int | None:
        """
        Credit points for a paid order, once. Points use the tier held before
        this purchase; the tier is then recomputed from the new total spent.
        Returns the points awarded, or None when nothing was done.
        """
        if order.user_id is None:
            return None
        if order.points_earned is not None:
            return None
        already = self.session.scalars(
            select(PointTransaction).where(
                PointTransaction.order_id == order.id, PointTransaction.kind == "earned"
            )
        ).first()
        if already is not None:
            order.points_earned = already.points
            return None

        acct = self.account_for(order.user_id)
        amount: Money = round_money(D(order.total_price))
        points = points_for(amount, acct.tier, self.settings.points_per_euro(),
                            voucher_purchase=order.is_voucher_purchase)

        acct.loyalty_points += points
        acct.lifetime_points += points
        acct.total_spent = round_money(D(acct.total_spent) + amount)
        acct.tier = tier_for(acct.total_spent)
        order.points_earned = points

        bonus = " - voucher bonus +25%" if order.is_voucher_purchase else ""
        self.session.add(PointTransaction(
            account_id=acct.id,
            order_id=order.id,
            points=points,
            kind="earned",
            description=f"Points for order {order.order_number} ({amount:.2f}){bonus}",
        ))
        logger.info("awarded %s points to user %s for %s (tier now %s)",
                    points, order.user_id, order.order_number, acct.tier)
        return points

    def revoke_for_order(self, order) -> int | None:
        """Take back the points of a refunded order (once)."""
        earned = self.session.scalars(
            select(PointTransaction).where(
                PointTransaction.order_id == order.id, PointTransaction.kind == "earned"
            )
        ).first()
        if earned is None:
            return None
        revoked = self.session.scalars(
            select(PointTransaction).where(
                PointTransaction.order_id == order.id, PointTransaction.kind == "revoked"
            )
        ).first()
        if revoked is not None:
            return None

        acct = earned.account
        points = min(earned.points, acct.loyalty_points)
        acct.loyalty_points -= points
        acct.lifetime_points = max(acct.lifetime_points - earned.points, 0)
        acct.total_spent = max(round_money(D(acct.total_spent) - D(order.total_price)), D(0))
        acct.tier = tier_for(acct.total_spent)
        self.session.add(PointTransaction(
            account_id=acct.id,
            order_id=order.id,
            points=-points,
            kind="revoked",
            description=f"Refund of order {order.order_number}",
        ))
        logger.info("revoked %s points from user %s for refunded %s", points, order.user_id, order.order_number)
        return points

    def available_points(self, user_id) -> int:
        if user_id is None:
            return 0
        acct = self.session.scalars(
            select(LoyaltyAccount).where(LoyaltyAccount.user_id == user_id)
        ).first()
        return acct.loyalty_points if acct else 0

    def _transaction(self, order, kind):
        return self.session.scalars(
            select(PointTransaction).where(PointTransaction.order_id == order.id, PointTransaction.kind == kind)
        ).first()

    def redeem_for_order(self, order) -> int | None:
        """
        Debit the points an order was discounted with, once, when its payment
        is confirmed. The discount is already in the charged total, so a
        balance spent elsewhere in the meantime is debited as far as it goes.
        """
        wanted = order.points_used or 0
        if not wanted or order.user_id is None:
            return None
        if self._transaction(order, "redeemed") is not None:
            return None

        acct = self.account_for(order.user_id, lock=True)
        points = min(wanted, acct.loyalty_points)
        if points < wanted:
            logger.warning("user %s holds %s points, %s were redeemed on %s",
                           order.user_id, acct.loyalty_points, wanted, order.order_number)
        acct.loyalty_points -= points
        self.session.add(PointTransaction(
            account_id=acct.id,
            order_id=order.id,
            points=-points,
            kind="redeemed",
            description=f"Redeemed on order {order.order_number} (-{D(order.points_discount):.2f})",
        ))
        logger.info("redeemed %s points from user %s on %s", points, order.user_id, order.order_number)
        return points

    def restore_for_order(self, order) -> int | None:
        """Give back the points a refunded order redeemed (once)."""
        redeemed = self._transaction(order, "redeemed")
        if redeemed is None or self._transaction(order, "restored") is not None:
            return None
        points = -redeemed.points
        acct = redeemed.account
        acct.loyalty_points += points
        self.session.add(PointTransaction(
            account_id=acct.id,
            order_id=order.id,
            points=points,
            kind="restored",
            description=f"Refund of order {order.order_number}, redeemed points returned",
        ))
        return points
