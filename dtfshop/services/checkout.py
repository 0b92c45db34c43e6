# dtfshop/services/checkout.py
import logging

from .numbering import generate_order_number
from ..errors import InsufficientVoucherBalance
from ..model import Order, OrderItem, OrderStatusHistory
from ..utils.clock import utcnow
from ..utils.money import ZERO

logger = logging.getLogger(__name__)


class CheckoutService:
    def __init__(self, session, pricing, loyalty, reconciler, gateway, clock=utcnow):
        self.session = session
        self.pricing = pricing
        self.loyalty = loyalty
        self.reconciler = reconciler
        self.gateway = gateway
        self.clock = clock

    def create_order(self, cart, user, customer, shipping_address=None, points=None):
        """
        Snapshot the cart into a PENDING order using the same aggregator as
        the preview. Voucher meters and redeemed points are recorded here and
        debited only when payment is confirmed.
        """
        if not cart.items:
            raise ValueError("cart is empty")
        name = (customer.get("name") or (user.name if user else "") or "").strip()
        email = (customer.get("email") or (user.email if user else "") or "").strip().lower()
        if not name or not email:
            raise ValueError("customer name and email are required")

        summary = self.pricing.price_cart(cart, user.id if user else None)
        available = self.loyalty.available_points(user.id) if user else 0
        totals = self.pricing.checkout_totals(summary, user, points=points, available_points=available)
        alloc = summary.allocation
        if totals.total < ZERO or (totals.total == ZERO and not alloc.full):
            raise ValueError("order total must be positive unless vouchers cover it")

        order = Order(
            order_number=generate_order_number(summary.is_voucher_purchase),
            status="PENDING",
            payment_status="PENDING",
            user_id=user.id if user else None,
            customer_name=name,
            customer_email=email,
            customer_phone=customer.get("phone"),
            shipping_address=shipping_address,
            original_subtotal=totals.original_subtotal,
            subtotal=totals.subtotal,
            discount_amount=totals.discount,
            points_used=totals.points_used,
            points_discount=totals.points_discount,
            tax_amount=totals.tax,
            shipping_cost=totals.shipping,
            total_price=totals.total,
            uses_meter_vouchers=alloc.covered,
            voucher_meters=alloc.meters_from_voucher if alloc.covered else ZERO,
            is_voucher_purchase=summary.is_voucher_purchase,
            created_at=self.clock(),
        )
        for line in summary.lines:
            order.items.append(OrderItem(
                product_id=line.product.id,
                product_name=line.product.name,
                quantity=line.quantity,
                unit_price=line.tier.unit_price,
                subtotal=line.line_total,
                customizations=line.extras.as_json() if line.extras else None,
            ))
        if summary.prioritization_enabled:
            order.notes = f"prioritized: {summary.prioritization_price} EUR on {summary.metered_meters} m"
        order.history.append(OrderStatusHistory(status="PENDING", notes="order created", created_at=self.clock()))
        self.session.add(order)
        cart.status = "checked_out"
        self.session.flush()
        logger.info("order %s created from cart %s (total %s, voucher meters %s)",
                    order.order_number, cart.uuid, totals.total, order.voucher_meters)
        return order, summary, totals

    def checkout(self, cart, user, customer, shipping_address=None, points=None) -> dict:
        order, summary, totals = self.create_order(cart, user, customer, shipping_address, points)
        self.session.commit()

        if totals.total == ZERO and summary.allocation.full:
            # fully covered by vouchers: nothing to charge
            try:
                self.reconciler.confirm_order_payment(order.id, source="free")
            except InsufficientVoucherBalance:
                # order stays PENDING; the cart can be priced again
                cart.status = "active"
                self.session.commit()
                raise
            payment = {"type": "free", "url": None}
        else:
            session = self.gateway.create_checkout_session(order, f"Order {order.order_number}")
            order.payment_reference = session["id"]
            self.session.commit()
            payment = {"type": "stripe", "url": session["url"]}

        return {
            "order": order.as_api(),
            "pricing": summary.as_api(),
            "totals": totals.as_api(),
            "payment": payment,
        }
