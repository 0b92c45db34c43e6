# dtfshop/services/tiers.py
"""
Volume pricing: pick the price tier that contains an ordered quantity.

Tiers are read ascending by `from_qty`; a tier matches when
`from_qty <= q` and (`to_qty` is NULL or `q <= to_qty`). Quantities are
matched at centimeter resolution (`QUANTITY_STEP`), the precision they are
stored with, so bands such as 1-5.99 / 6-10.99 cover every orderable
quantity. A quantity that no tier covers is a catalogue configuration
error, never a reason to guess.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from ..errors import PriceTierError
from ..utils.money import CENT, D, Money, ZERO, round_money, round_quantity

logger = logging.getLogger(__name__)

QUANTITY_STEP = CENT


@dataclass(frozen=True)
class TierPrice:
    unit_price: Money
    subtotal: Money            # unit_price * quantity
    discount_pct: Money
    discount_amount: Money     # subtotal * discount_pct / 100
    from_qty: Money | None = None
    to_qty: Money | None = None

    @property
    def net_subtotal(self) -> Money:
        return round_money(self.subtotal - self.discount_amount)

    def as_api(self):
        return {
            "unit_price": float(self.unit_price),
            "subtotal": float(self.subtotal),
            "discount_pct": float(self.discount_pct),
            "discount_amount": float(self.discount_amount),
            "applied_range": None if self.from_qty is None else {
                "from_qty": float(self.from_qty),
                "to_qty": None if self.to_qty is None else float(self.to_qty),
            },
        }


def _sorted(ranges):
    return sorted(ranges, key=lambda r: D(r.from_qty))


def resolve_unit_price(quantity, ranges) -> TierPrice:
    q = D(quantity)
    if q <= ZERO:
        raise ValueError("quantity must be > 0")
    if not ranges:
        raise PriceTierError("product has no price tiers configured")

    band_q = round_quantity(q)
    for r in _sorted(ranges):
        if r.contains(band_q):
            unit = D(r.price)
            pct = D(r.discount_pct or 0)
            subtotal = round_money(unit * q)
            return TierPrice(
                unit_price=unit,
                subtotal=subtotal,
                discount_pct=pct,
                discount_amount=round_money(subtotal * pct / D(100)),
                from_qty=D(r.from_qty),
                to_qty=None if r.to_qty is None else D(r.to_qty),
            )

    logger.error("no price tier covers quantity %s (tiers: %s)", q,
                 [(str(r.from_qty), str(r.to_qty)) for r in _sorted(ranges)])
    raise PriceTierError(f"no price tier covers quantity {q}", {"quantity": float(q)})


def flat_price(quantity, unit_price) -> TierPrice:
    """Flat-priced goods (vouchers, consumables) skip tier resolution."""
    unit = D(unit_price)
    return TierPrice(
        unit_price=unit,
        subtotal=round_money(unit * D(quantity)),
        discount_pct=ZERO,
        discount_amount=ZERO,
    )


def price_for_product(product, quantity, fallback_unit_price=None) -> TierPrice:
    if product.price_ranges:
        return resolve_unit_price(quantity, product.price_ranges)
    unit = product.base_price if fallback_unit_price is None else fallback_unit_price
    return flat_price(quantity, unit)


def tier_gaps(ranges) -> list[str]:
    """
    Describe structural problems in a tier list: overlaps, gaps wider than
    one `QUANTITY_STEP`, an open tier that is not last, or a missing
    open-ended final tier. Empty list = well formed.
    """
    problems = []
    ordered = _sorted(ranges)
    for prev, cur in zip(ordered, ordered[1:]):
        if prev.to_qty is None:
            problems.append(f"open-ended tier from {prev.from_qty} is not last")
        elif D(cur.from_qty) <= D(prev.to_qty):
            problems.append(f"tiers {prev.from_qty}-{prev.to_qty} and {cur.from_qty} overlap")
        elif D(cur.from_qty) - D(prev.to_qty) > QUANTITY_STEP:
            problems.append(f"gap between {prev.to_qty} and {cur.from_qty}")
    if ordered and ordered[-1].to_qty is not None:
        problems.append("last tier must be open-ended")
    return problems
