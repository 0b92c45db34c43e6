# dtfshop/services/quotes.py
import logging
from datetime import timedelta

from sqlalchemy import select, update

from .extras import parse_extras
from .numbering import next_quote_number
from .state_machine import QUOTE_OPEN, QUOTE_TRANSITIONS, ensure_transition
from ..errors import InvalidTransition, PriceTierError, QuoteNotPriced
from ..model import Product, Quote
from ..utils.clock import utcnow
from ..utils.money import D

logger = logging.getLogger(__name__)


def quote_product(session):
    """The printed-meter product whose tiers price custom quotes."""
    product = session.scalars(
        select(Product)
        .where(Product.product_type == "DTF_TEXTILE", Product.is_active.is_(True))
        .order_by(Product.id.asc())
    ).first()
    if product is None or not product.price_ranges:
        raise PriceTierError("no active DTF product with price tiers for quotes")
    return product


def quote_extras(quote):
    kinds = [k for k, on in (("layout", quote.needs_layout), ("cutting", quote.needs_cutting),
                             ("prioritize", quote.is_priority)) if on]
    return parse_extras(kinds) if kinds else None


def _flag(payload, key, current):
    return bool(payload[key]) if key in payload else current


class QuoteService:
    def __init__(self, session, pricing, gateway=None, valid_days=15, clock=utcnow):
        self.session = session
        self.pricing = pricing
        self.gateway = gateway
        self.valid_days = valid_days
        self.clock = clock

    def create(self, payload, user=None) -> Quote:
        name = (payload.get("customer_name") or (user.name if user else "") or "").strip()
        email = (payload.get("customer_email") or (user.email if user else "") or "").strip().lower()
        if not name or not email:
            raise ValueError("customer_name and customer_email are required")
        now = self.clock()
        quote = Quote(
            quote_number=next_quote_number(self.session, now),
            status="PENDING_REVIEW",
            user_id=user.id if user else None,
            customer_name=name,
            customer_email=email,
            customer_phone=payload.get("customer_phone"),
            description=payload.get("description"),
            needs_cutting=bool(payload.get("needs_cutting")),
            needs_layout=bool(payload.get("needs_layout")),
            is_priority=bool(payload.get("is_priority")),
            expires_at=now + timedelta(days=self.valid_days),
            created_at=now,
        )
        if payload.get("estimated_meters") is not None:
            quote.estimated_meters = D(payload["estimated_meters"])
        self.session.add(quote)
        self.session.flush()
        logger.info("quote %s created for %s", quote.quote_number, email)
        return quote

    def _ensure_open(self, quote, target):
        ensure_transition(QUOTE_TRANSITIONS, quote.status, target, "quote")

    def price(self, quote, payload):
        """`quote` action: attach pricing and move to QUOTED."""
        self._ensure_open(quote, "QUOTED")
        meters = D(payload.get("estimated_meters", quote.estimated_meters or 0))
        if meters <= 0:
            raise ValueError("estimated meters must be > 0")
        needs_cutting = _flag(payload, "needs_cutting", quote.needs_cutting)
        needs_layout = _flag(payload, "needs_layout", quote.needs_layout)
        is_priority = _flag(payload, "is_priority", quote.is_priority)
        shipping = D(payload.get("shipping_cost", quote.shipping_cost or 0))

        calc = self.pricing.price_quote(
            quote_product(self.session), meters,
            needs_cutting=needs_cutting, needs_layout=needs_layout,
            is_priority=is_priority, shipping_cost=shipping,
        )
        quote.estimated_meters = calc.meters
        quote.price_per_meter = calc.price_per_meter
        quote.needs_cutting = needs_cutting
        quote.cutting_price = calc.cutting_price if needs_cutting else None
        quote.needs_layout = needs_layout
        quote.layout_price = calc.layout_price if needs_layout else None
        quote.is_priority = is_priority
        quote.priority_price = calc.priority_price if is_priority else None
        quote.shipping_cost = calc.shipping or None
        quote.subtotal = calc.subtotal
        quote.tax_amount = calc.tax
        quote.estimated_total = calc.total
        quote.status = "QUOTED"
        if payload.get("admin_notes"):
            quote.admin_notes = payload["admin_notes"]
        return calc

    def _require_total(self, quote):
        if not quote.has_total():
            raise QuoteNotPriced("quote the request before sending payment", {"quote": quote.quote_number})

    def generate_payment_link(self, quote) -> str:
        self._require_total(quote)
        if quote.status == "PAID":
            raise InvalidTransition("quote is already paid")
        self._ensure_open(quote, "PAYMENT_SENT")
        url = self.gateway.create_payment_link(quote)
        quote.payment_method = "STRIPE"
        quote.payment_link_url = url
        quote.status = "PAYMENT_SENT"
        return url

    def set_bizum(self, quote):
        self._require_total(quote)
        self._ensure_open(quote, "PAYMENT_SENT")
        quote.payment_method = "BIZUM"
        quote.status = "PAYMENT_SENT"

    def close(self, quote, status, admin_notes=None):
        """cancel / expire"""
        self._ensure_open(quote, status)
        quote.status = status
        if admin_notes:
            quote.admin_notes = admin_notes

    def update_notes(self, quote, admin_notes):
        quote.admin_notes = admin_notes

    def delete(self, quote):
        if quote.status != "PENDING_REVIEW":
            raise InvalidTransition("only quotes pending review can be deleted", {"status": quote.status})
        self.session.delete(quote)

    def expire_overdue(self) -> int:
        now = self.clock()
        res = self.session.execute(
            update(Quote)
            .where(
                Quote.status.in_(QUOTE_OPEN),
                Quote.order_id.is_(None),
                Quote.expires_at.is_not(None),
                Quote.expires_at < now,
            )
            .values(status="EXPIRED", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount or 0
