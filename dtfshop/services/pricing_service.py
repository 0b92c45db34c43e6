# dtfshop/services/pricing_service.py
"""
Order pricing aggregator.

Cart preview, checkout, quote pricing and webhook-time order creation all
run through `PricingService`, so the figure shown to the customer is the
figure charged.

Order of operations:
  1) per line: tier price (or flat price), minus tier discount
  2) per line: layout / cutting extras from the meter tables
  3) once per cart: prioritization surcharge on total metered meters
  4) voucher coverage of the metered portion (full / partial / none)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from .extras import Extra, cutting_price, layout_price, parse_extras, prioritization_surcharge
from .loyalty_service import check_redemption
from .tiers import TierPrice, price_for_product
from .voucher_ledger import Allocation, Balance, allocate
from ..utils.money import D, Money, ZERO, round_money

logger = logging.getLogger(__name__)


@dataclass
class LineInput:
    product: object
    quantity: Money
    customizations: object = None
    unit_price: Money | None = None      # snapshot for flat-priced goods


@dataclass
class PricedLine:
    product: object
    quantity: Money
    tier: TierPrice
    extras: Extra | None
    extras_price: Money

    @property
    def is_metered(self) -> bool:
        return self.product.is_metered

    @property
    def net_price(self) -> Money:
        return self.tier.net_subtotal

    @property
    def line_total(self) -> Money:
        return round_money(self.net_price + self.extras_price)

    @property
    def unit_price(self) -> Money:
        # effective unit price after tier discount
        return round_money(self.net_price / self.quantity)

    def as_api(self):
        return {
            "product_id": self.product.id,
            "name": self.product.name,
            "product_type": self.product.product_type,
            "quantity": float(self.quantity),
            "tier": self.tier.as_api(),
            "extras": list(self.extras.kinds()) if self.extras else [],
            "extras_price": float(self.extras_price),
            "line_total": float(self.line_total),
        }


@dataclass
class PricingSummary:
    lines: list[PricedLine]
    metered_meters: Money
    metered_subtotal: Money
    other_subtotal: Money
    extras_total: Money
    prioritization_enabled: bool
    prioritization_price: Money
    original_subtotal: Money
    subtotal: Money
    balance: Balance
    allocation: Allocation
    metered_cash: Money = ZERO

    @property
    def uses_voucher(self) -> bool:
        return self.allocation.covered

    @property
    def shipment_from_voucher(self) -> bool:
        return self.allocation.full and self.balance.shipments > 0

    @property
    def is_voucher_purchase(self) -> bool:
        return any(l.product.is_voucher for l in self.lines)

    def voucher_preview(self):
        a = self.allocation
        return {
            "canUseVoucherMeters": a.full,
            "canUseVoucherMetersPartially": a.partial,
            "canUseVoucherShipment": self.shipment_from_voucher,
            "metersFromVoucher": float(a.meters_from_voucher),
            "metersToPay": float(a.meters_to_pay),
            "availableMeters": float(self.balance.meters),
            "availableShipments": self.balance.shipments,
        }

    def as_api(self):
        return {
            "items": [l.as_api() for l in self.lines],
            "metered_meters": float(self.metered_meters),
            "metered_subtotal": float(self.metered_subtotal),
            "extras_total": float(self.extras_total),
            "prioritization": {
                "enabled": self.prioritization_enabled,
                "total_meters": float(self.metered_meters),
                "price": float(self.prioritization_price),
            },
            "original_subtotal": float(self.original_subtotal),
            "subtotal": float(self.subtotal),
            "voucher": self.voucher_preview(),
        }


@dataclass(frozen=True)
class CheckoutTotals:
    original_subtotal: Money
    subtotal: Money
    discount: Money
    tax: Money
    shipping: Money
    total: Money
    points_used: int = 0
    points_discount: Money = ZERO

    def as_api(self):
        data = {k: float(getattr(self, k)) for k in
                ("original_subtotal", "subtotal", "discount", "points_discount", "tax", "shipping", "total")}
        data["points_used"] = self.points_used
        return data


@dataclass(frozen=True)
class QuotePrice:
    meters: Money
    price_per_meter: Money
    meters_subtotal: Money
    cutting_price: Money
    layout_price: Money
    priority_price: Money
    subtotal: Money
    tax: Money
    shipping: Money
    total: Money

    def as_api(self):
        return {k: float(getattr(self, k)) for k in self.__dataclass_fields__}


class PricingService:
    def __init__(self, ledger, settings):
        self.ledger = ledger
        self.settings = settings

    def price_line(self, line: LineInput) -> PricedLine:
        product = line.product
        qty = D(line.quantity)
        if qty <= ZERO:
            raise ValueError("quantity must be > 0")
        extras = parse_extras(line.customizations)
        if extras is not None and not product.is_metered:
            raise ValueError(f"extras are only available for printed meters ({product.name})")

        tier = price_for_product(product, qty, fallback_unit_price=line.unit_price)
        extras_price = round_money(extras.item_price(qty)) if extras else ZERO
        return PricedLine(product, qty, tier, extras, extras_price)

    def price_lines(self, user_id, lines, use_vouchers: bool = True) -> PricingSummary:
        priced = [self.price_line(l) for l in lines]

        metered_meters = sum((l.quantity for l in priced if l.is_metered), ZERO)
        metered_subtotal = sum((l.net_price for l in priced if l.is_metered), ZERO)
        other_subtotal = sum((l.net_price for l in priced if not l.is_metered), ZERO)
        extras_total = sum((l.extras_price for l in priced), ZERO)

        wants_priority = any(l.extras is not None and l.extras.wants_priority for l in priced)
        priority = prioritization_surcharge(metered_meters) if wants_priority else ZERO

        original = round_money(metered_subtotal + other_subtotal + extras_total + priority)

        balance = self.ledger.available_balance(user_id) if (use_vouchers and user_id) else Balance(ZERO, 0)
        alloc = allocate(metered_meters, balance.meters)

        if alloc.full:
            metered_cash = ZERO
        elif alloc.partial:
            # weighted average over every metered line
            avg = metered_subtotal / metered_meters
            metered_cash = round_money(avg * alloc.meters_to_pay)
            logger.debug("partial voucher coverage: %s m to pay at %s/m", alloc.meters_to_pay, round_money(avg))
        else:
            metered_cash = round_money(metered_subtotal)

        subtotal = round_money(metered_cash + other_subtotal + extras_total + priority)
        return PricingSummary(
            lines=priced,
            metered_meters=metered_meters,
            metered_subtotal=round_money(metered_subtotal),
            other_subtotal=round_money(other_subtotal),
            extras_total=round_money(extras_total),
            prioritization_enabled=wants_priority,
            prioritization_price=priority,
            original_subtotal=original,
            subtotal=subtotal,
            balance=balance,
            allocation=alloc,
            metered_cash=metered_cash,
        )

    def price_cart(self, cart, user_id=None) -> PricingSummary:
        lines = [
            LineInput(it.product, it.quantity, it.customizations, it.unit_price)
            for it in cart.items
        ]
        return self.price_lines(user_id, lines)

    def checkout_totals(self, summary: PricingSummary, user=None, shipping_cost=None,
                        points=None, available_points=0) -> CheckoutTotals:
        """
        Professional discount, then redeemed loyalty points, then tax on the
        discounted voucher-adjusted subtotal, then shipping. Shipping comes
        from the settings unless a server-side caller fixes it, and is waived
        when a voucher covers all metered meters and still has a shipment
        credit.
        """
        subtotal = summary.subtotal
        discount = ZERO
        if user is not None and getattr(user, "is_professional", False):
            pct = self.settings.professional_discount_pct()
            discount = round_money(subtotal * pct / D(100))

        points_used, points_discount = 0, ZERO
        if points is not None and D(points) != ZERO:
            if user is None:
                raise ValueError("sign in to redeem loyalty points")
            points_discount = check_redemption(points, available_points, subtotal - discount)
            points_used = int(D(points))

        taxable = subtotal - discount - points_discount
        tax = round_money(taxable * self.settings.tax_rate())

        if shipping_cost is None:
            shipping = self.settings.default_shipping_cost()
            threshold = self.settings.free_shipping_threshold()
            if threshold is not None and summary.original_subtotal >= threshold:
                shipping = ZERO
        else:
            shipping = D(shipping_cost)
            if shipping < ZERO:
                raise ValueError("shipping cost must be >= 0")
        if summary.shipment_from_voucher:
            shipping = ZERO
        shipping = round_money(shipping)

        return CheckoutTotals(
            original_subtotal=summary.original_subtotal,
            subtotal=round_money(subtotal),
            discount=discount,
            tax=tax,
            shipping=shipping,
            total=round_money(taxable + tax + shipping),
            points_used=points_used,
            points_discount=points_discount,
        )

    def price_quote(self, product, meters, needs_cutting=False, needs_layout=False,
                    is_priority=False, shipping_cost=0) -> QuotePrice:
        """Quotes are always cash-priced; voucher payment is a separate action."""
        meters = D(meters)
        if meters <= ZERO:
            raise ValueError("estimated meters must be > 0")
        kinds = [k for k, on in (("layout", needs_layout), ("cutting", needs_cutting),
                                 ("prioritize", is_priority)) if on]
        summary = self.price_lines(None, [LineInput(product, meters, {"extras": kinds} if kinds else None)],
                                   use_vouchers=False)
        line = summary.lines[0]
        layout = round_money(layout_price(meters)) if needs_layout else ZERO
        cutting = round_money(cutting_price(meters)) if needs_cutting else ZERO

        subtotal = summary.subtotal
        tax = round_money(subtotal * self.settings.tax_rate())
        shipping = round_money(D(shipping_cost or 0))
        if shipping < ZERO:
            raise ValueError("shipping cost must be >= 0")
        return QuotePrice(
            meters=meters,
            price_per_meter=line.tier.unit_price,
            meters_subtotal=line.net_price,
            cutting_price=cutting,
            layout_price=layout,
            priority_price=summary.prioritization_price,
            subtotal=subtotal,
            tax=tax,
            shipping=shipping,
            total=round_money(subtotal + tax + shipping),
        )

    def price_line_for_item(self, item) -> PricedLine:
        return self.price_line(LineInput(item.product, item.quantity, item.customizations, item.unit_price))
