# dtfshop/services/reconciliation.py
"""
Payment reconciliation.

Four triggers end up here: the gateway webhook for a checkout order, the
gateway webhook for a quote payment link, the success-page session check,
and admin quote actions. Each call is one unit of work: commit on success,
roll back everything on failure, and only then hand queued notifications to
the dispatcher.

Idempotency guards:
  - order confirmation: payment_status already PAID -> no-op
  - voucher minting: deterministic code per order/template/unit (unique column)
  - voucher consumption: order.vouchers_consumed_at
  - loyalty award, redemption and refund: unique (order_id, kind) on PointTransaction
  - quote conversion: UPDATE quote SET order_id ... WHERE order_id IS NULL
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field

from sqlalchemy import select, update

from .numbering import generate_order_number
from .quotes import quote_extras, quote_product
from .state_machine import ORDER_PAYMENT_TRANSITIONS, ORDER_TRANSITIONS, QUOTE_TRANSITIONS, ensure_transition
from ..errors import InsufficientVoucherBalance, InvalidTransition, NotFound, QuoteNotPriced
from ..model import Order, OrderItem, OrderStatusHistory, Quote, Voucher
from ..utils.clock import utcnow
from ..utils.money import D, ZERO, floor_int, round_money

logger = logging.getLogger(__name__)

QUOTE_TRIGGER_METHOD = {"stripe": "STRIPE", "voucher": "VOUCHER"}


def voucher_code(order_number, template_id, unit) -> str:
    return f"{order_number}-{template_id}-{unit}"


@dataclass
class ReconcileResult:
    order: Order | None
    changed: bool
    minted: list = field(default_factory=list)
    consumption: object = None
    points: int | None = None

    @property
    def applied(self):
        return self.changed

    def as_api(self):
        return {
            "order": self.order.summary() if self.order else None,
            "changed": self.changed,
            "vouchers_minted": [v.code for v in self.minted],
            "consumption": self.consumption.as_api() if self.consumption else None,
            "points_earned": self.points,
        }


@dataclass
class ConversionResult:
    quote: Quote | None
    order: Order | None
    created: bool
    consumption: object = None
    points: int | None = None

    @property
    def applied(self):
        return self.created

    def as_api(self):
        return {
            "quote": self.quote.as_api() if self.quote else None,
            "order": self.order.summary() if self.order else None,
            "created": self.created,
            "consumption": self.consumption.as_api() if self.consumption else None,
            "points_earned": self.points,
        }


class _AlreadyConverted(Exception):
    pass


class PaymentReconciler:
    def __init__(self, session, ledger, loyalty, settings, dispatcher, clock=utcnow):
        self.session = session
        self.ledger = ledger
        self.loyalty = loyalty
        self.settings = settings
        self.dispatcher = dispatcher
        self.clock = clock

    @contextmanager
    def unit_of_work(self):
        try:
            yield
            self.session.commit()
        except Exception:
            self.session.rollback()
            self.dispatcher.discard()
            raise
        self.dispatcher.dispatch()

    # ---- loading ----------------------------------------------------------
    def _lock_order(self, order_id=None, payment_reference=None):
        stmt = select(Order)
        if order_id is not None:
            stmt = stmt.where(Order.id == order_id)
        elif payment_reference:
            stmt = stmt.where(Order.payment_reference == payment_reference)
        else:
            return None
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.session.scalars(stmt).first()

    def _lock_quote(self, quote_id):
        stmt = (
            select(Quote).where(Quote.id == quote_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.session.scalars(stmt).first()

    def _history(self, order, status, notes):
        order.history.append(OrderStatusHistory(status=status, notes=notes[:255], created_at=self.clock()))

    # ---- checkout orders --------------------------------------------------
    def confirm_order_payment(self, order_id, payment_reference=None, source="stripe") -> ReconcileResult:
        with self.unit_of_work():
            order = self._lock_order(order_id)
            if order is None:
                logger.info("payment confirmation for unknown order %s ignored", order_id)
                return ReconcileResult(None, changed=False)
            if order.payment_status == "PAID":
                logger.info("order %s already paid, duplicate confirmation ignored", order.order_number)
                return ReconcileResult(order, changed=False)

            ensure_transition(ORDER_PAYMENT_TRANSITIONS, order.payment_status, "PAID", "order payment")
            ensure_transition(ORDER_TRANSITIONS, order.status, "CONFIRMED", "order")
            order.payment_status = "PAID"
            order.status = "CONFIRMED"
            if payment_reference:
                order.payment_reference = payment_reference
            if not order.payment_method:
                order.payment_method = "VOUCHER" if source == "free" else "STRIPE"
            self._history(order, "CONFIRMED", f"payment confirmed ({source})")

            minted = self._mint_vouchers(order)
            consumption = self._consume_vouchers(order, strict=(source == "free"))
            self.loyalty.redeem_for_order(order)
            points = self.loyalty.award_for_order(order)
            self._notify_confirmed(order, minted)
            logger.info("order %s confirmed via %s", order.order_number, source)
            return ReconcileResult(order, True, minted, consumption, points)

    def fail_order_payment(self, order_id, payment_status, notes) -> ReconcileResult:
        """FAILED / EXPIRED, only while the payment is still pending."""
        with self.unit_of_work():
            order = self._lock_order(order_id)
            if order is None:
                logger.info("%s for unknown order %s ignored", payment_status, order_id)
                return ReconcileResult(None, changed=False)
            if order.payment_status != "PENDING":
                logger.info("order %s is %s, %s ignored", order.order_number, order.payment_status, payment_status)
                return ReconcileResult(order, changed=False)
            ensure_transition(ORDER_PAYMENT_TRANSITIONS, order.payment_status, payment_status, "order payment")
            order.payment_status = payment_status
            self._history(order, order.status, notes)
            return ReconcileResult(order, changed=True)

    def refund_order(self, order_id=None, payment_reference=None) -> ReconcileResult:
        with self.unit_of_work():
            order = self._lock_order(order_id, payment_reference)
            if order is None:
                logger.info("refund for unknown order %s/%s ignored", order_id, payment_reference)
                return ReconcileResult(None, changed=False)
            if order.payment_status == "REFUNDED":
                logger.info("order %s already refunded", order.order_number)
                return ReconcileResult(order, changed=False)
            if order.payment_status != "PAID":
                logger.info("order %s is %s, refund ignored", order.order_number, order.payment_status)
                return ReconcileResult(order, changed=False)

            ensure_transition(ORDER_PAYMENT_TRANSITIONS, order.payment_status, "REFUNDED", "order payment")
            ensure_transition(ORDER_TRANSITIONS, order.status, "CANCELLED", "order")
            order.payment_status = "REFUNDED"
            order.status = "CANCELLED"
            self._history(order, "CANCELLED", "payment refunded")
            points = self.loyalty.revoke_for_order(order)
            self.loyalty.restore_for_order(order)
            self.dispatcher.queue(
                "order_refunded", f"Order {order.order_number} has been refunded.",
                user_id=order.user_id, email=order.customer_email, subject="Refund processed",
            )
            return ReconcileResult(order, True, points=points)

    def _mint_vouchers(self, order) -> list:
        voucher_items = [i for i in order.items if i.product is not None and i.product.is_voucher]
        if not voucher_items:
            return []
        if order.user_id is None:
            logger.warning("voucher purchase %s has no customer account, nothing minted", order.order_number)
            return []

        minted = []
        for item in voucher_items:
            template = self.ledger.template_for_product(item.product_id)
            if template is None:
                logger.error("no voucher template for product %s (order %s)", item.product_id, order.order_number)
                continue
            for unit in range(1, max(floor_int(item.quantity), 1) + 1):
                code = voucher_code(order.order_number, template.id, unit)
                exists = self.session.scalars(select(Voucher.id).where(Voucher.code == code)).first()
                if exists is not None:
                    continue
                v = Voucher(
                    code=code,
                    name=template.name,
                    product_id=template.product_id,
                    user_id=order.user_id,
                    is_template=False,
                    price=item.unit_price,
                    initial_meters=template.initial_meters,
                    remaining_meters=template.initial_meters,
                    initial_shipments=template.initial_shipments,
                    remaining_shipments=template.initial_shipments,
                    expires_at=template.expires_at,
                    is_active=True,
                    source_order_id=order.id,
                    created_at=self.clock(),
                )
                self.session.add(v)
                minted.append(v)
                logger.info("minted voucher %s for user %s", code, order.user_id)
        self.session.flush()
        return minted

    def _consume_vouchers(self, order, strict=False):
        """
        Debit the meters promised at checkout. With `strict`, used when
        nothing was charged, a shortfall aborts the whole confirmation;
        otherwise the payment already happened and the gap is recorded.
        """
        if not order.uses_meter_vouchers or order.vouchers_consumed_at is not None:
            return None
        if order.user_id is None:
            if strict:
                raise InsufficientVoucherBalance("order has no customer account with vouchers")
            return None
        needed = D(order.voucher_meters)
        result = self.ledger.consume(order, needed, shipments_needed=1)
        if result.meters_consumed < needed:
            short = needed - result.meters_consumed
            if strict:
                raise InsufficientVoucherBalance(
                    "voucher balance no longer covers this order",
                    {"needed": float(needed), "covered": float(result.meters_consumed)},
                )
            logger.warning("order %s: voucher balance short by %s m at confirmation", order.order_number, short)
            self._history(order, order.status, f"voucher shortfall: {short} m not covered")
        order.vouchers_consumed_at = self.clock()
        return result

    def _notify_confirmed(self, order, minted):
        self.dispatcher.queue(
            "order_confirmed", f"Order {order.order_number} is confirmed.",
            user_id=order.user_id, email=order.customer_email, subject="Order confirmed",
        )
        for v in minted:
            self.dispatcher.queue(
                "voucher_issued", f"Voucher {v.code}: {v.initial_meters} m, {v.initial_shipments} free shipments.",
                user_id=order.user_id, email=order.customer_email, subject="Your voucher is ready",
            )

    # ---- quotes -----------------------------------------------------------
    def convert_quote(self, quote_id, trigger, payment_reference=None, require_paid=False) -> ConversionResult:
        """
        Quote -> Order in one transaction. Safe to call from any trigger, any
        number of times: the order is created only by whoever flips
        quote.order_id from NULL.
        """
        with self.unit_of_work():
            quote = self._lock_quote(quote_id)
            if quote is None:
                logger.info("conversion of unknown quote %s ignored", quote_id)
                return ConversionResult(None, None, created=False)
            if quote.order_id is not None:
                logger.info("quote %s already converted to order %s (%s)", quote.quote_number, quote.order_id, trigger)
                return ConversionResult(quote, quote.order, created=False)
            if not quote.has_total():
                raise QuoteNotPriced("quote has no computed total", {"quote": quote.quote_number})
            if require_paid and quote.status != "PAID":
                raise InvalidTransition("quote must be paid before conversion", {"status": quote.status})
            if quote.status != "PAID":
                ensure_transition(QUOTE_TRANSITIONS, quote.status, "PAID", "quote")

            now = self.clock()
            method = QUOTE_TRIGGER_METHOD.get(trigger) or quote.payment_method or "MANUAL"
            try:
                with self.session.begin_nested():
                    order = self._order_from_quote(quote, method, payment_reference)
                    self.session.add(order)
                    self.session.flush()
                    claimed = self.session.execute(
                        update(Quote)
                        .where(Quote.id == quote.id, Quote.order_id.is_(None))
                        .values(order_id=order.id, status="PAID", payment_method=method,
                                converted_at=now, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    if claimed.rowcount != 1:
                        raise _AlreadyConverted()
            except _AlreadyConverted:
                self.session.refresh(quote)
                logger.info("quote %s was converted concurrently (%s)", quote.quote_number, trigger)
                return ConversionResult(quote, quote.order, created=False)
            self.session.refresh(quote)

            consumption = None
            if trigger == "voucher":
                consumption = self._consume_vouchers(order)
                if consumption is None or consumption.meters_consumed < D(order.voucher_meters):
                    raise InsufficientVoucherBalance(
                        "voucher balance no longer covers this quote",
                        {"needed": float(order.voucher_meters)},
                    )
                if consumption.shipments_consumed:
                    order.shipping_cost = ZERO
                order.total_price = round_money(D(order.subtotal) + D(order.tax_amount) + D(order.shipping_cost))

            points = self.loyalty.award_for_order(order)
            self._notify_confirmed(order, [])
            logger.info("quote %s converted to order %s (%s)", quote.quote_number, order.order_number, trigger)
            return ConversionResult(quote, order, created=True, consumption=consumption, points=points)

    def _order_from_quote(self, quote, method, payment_reference) -> Order:
        product = quote_product(self.session)
        extras = quote_extras(quote)
        extras_total = sum((D(p or 0) for p in (quote.cutting_price, quote.layout_price, quote.priority_price)), ZERO)
        subtotal = D(quote.subtotal)
        meters_subtotal = round_money(subtotal - extras_total)
        tax = D(quote.tax_amount or 0)
        shipping = D(quote.shipping_cost or 0)

        order = Order(
            order_number=generate_order_number(),
            status="CONFIRMED",
            payment_status="PAID",
            payment_method=method,
            payment_reference=payment_reference,
            user_id=quote.user_id,
            customer_name=quote.customer_name,
            customer_email=quote.customer_email,
            customer_phone=quote.customer_phone,
            original_subtotal=subtotal,
            subtotal=subtotal,
            discount_amount=ZERO,
            tax_amount=tax,
            shipping_cost=shipping,
            total_price=D(quote.estimated_total),
            quote_id=quote.id,
            notes=quote.admin_notes,
            created_at=self.clock(),
        )
        if method == "VOUCHER":
            # meters come from the voucher, extras stay payable
            order.uses_meter_vouchers = True
            order.voucher_meters = D(quote.estimated_meters)
            order.subtotal = round_money(extras_total)
            order.tax_amount = round_money(order.subtotal * self.settings.tax_rate())
            order.total_price = round_money(order.subtotal + order.tax_amount + shipping)

        order.items.append(OrderItem(
            product_id=product.id,
            product_name=f"{product.name} ({quote.quote_number})",
            quantity=D(quote.estimated_meters),
            unit_price=D(quote.price_per_meter or 0),
            subtotal=meters_subtotal + extras_total,
            customizations={**(extras.as_json() if extras else {}), "notes": quote.description or ""},
        ))
        order.history.append(OrderStatusHistory(
            status="CONFIRMED", notes=f"created from quote {quote.quote_number} ({method})", created_at=self.clock(),
        ))
        return order

    def mark_quote_paid(self, quote_id, payment_reference=None) -> ConversionResult:
        return self.convert_quote(quote_id, "manual", payment_reference)

    def pay_quote_with_voucher(self, quote_id) -> ConversionResult:
        """Reject before anything is charged when the balance cannot cover the meters."""
        quote = self.session.get(Quote, quote_id)
        if quote is None:
            raise NotFound("quote not found")
        if quote.order_id is not None:
            return self.convert_quote(quote_id, "voucher")
        if not quote.has_total() or not quote.estimated_meters:
            raise QuoteNotPriced("quote has no computed total", {"quote": quote.quote_number})
        if quote.user_id is None:
            raise InsufficientVoucherBalance("quote is not linked to a customer account with vouchers")
        needed = D(quote.estimated_meters)
        balance = self.ledger.available_balance(quote.user_id)
        if balance.meters < needed:
            raise InsufficientVoucherBalance(
                "insufficient voucher balance",
                {"needed": float(needed), "available": float(balance.meters)},
            )
        return self.convert_quote(quote_id, "voucher")

    # ---- gateway events ---------------------------------------------------
    def apply_completed_session(self, session: dict):
        """
        A paid checkout session, from the webhook or read back from the
        gateway when the customer lands on the success page first.
        """
        meta = session.get("metadata") or {}
        reference = session.get("payment_intent") or session.get("id")
        if meta.get("quoteId"):
            return self.convert_quote(_as_id(meta["quoteId"]), "stripe", reference)
        if meta.get("orderId"):
            return self.confirm_order_payment(_as_id(meta["orderId"]), reference, source="stripe")
        logger.info("session %s carries no order or quote id", session.get("id"))
        return None

    def handle_event(self, event: dict):
        """Route a verified gateway event. Unknown ids and types are no-ops."""
        etype = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        meta = obj.get("metadata") or {}

        if etype == "checkout.session.completed":
            if obj.get("payment_status") not in (None, "paid", "no_payment_required"):
                logger.info("session %s completed with payment_status=%s, waiting", obj.get("id"), obj.get("payment_status"))
                return None
            return self.apply_completed_session(obj)

        if etype == "checkout.session.expired":
            if meta.get("orderId"):
                return self.fail_order_payment(_as_id(meta["orderId"]), "EXPIRED", "payment session expired")
            return None

        if etype == "payment_intent.payment_failed":
            order_id = meta.get("orderId")
            if order_id:
                return self.fail_order_payment(_as_id(order_id), "FAILED", "payment failed")
            order = self.session.scalars(
                select(Order).where(Order.payment_reference == obj.get("id"))
            ).first()
            if order is not None:
                return self.fail_order_payment(order.id, "FAILED", "payment failed")
            return None

        if etype == "charge.refunded":
            return self.refund_order(payment_reference=obj.get("payment_intent"))

        logger.info("unhandled event type %s", etype)
        return None


def _as_id(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
