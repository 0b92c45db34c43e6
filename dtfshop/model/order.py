# dtfshop/model/order.py
from ..extensions import db
from ..utils.clock import utcnow
from ..utils.money import to_float


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(48), unique=True, nullable=False, index=True)  # e.g. "DTF-LX2A9-4KQ7Z"
    status = db.Column(db.String(20), nullable=False, default="PENDING", index=True)
    payment_status = db.Column(db.String(20), nullable=False, default="PENDING", index=True)
    payment_method = db.Column(db.String(20), nullable=True)
    payment_reference = db.Column(db.String(255), nullable=True, index=True)

    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=True, index=True)
    customer_name = db.Column(db.String(120))
    customer_email = db.Column(db.String(255))
    customer_phone = db.Column(db.String(50))
    shipping_address = db.Column(db.JSON)

    # Money snapshot
    original_subtotal = db.Column(db.Numeric(12, 2))
    subtotal = db.Column(db.Numeric(12, 2))
    discount_amount = db.Column(db.Numeric(12, 2), default=0)
    tax_amount = db.Column(db.Numeric(12, 2), default=0)
    shipping_cost = db.Column(db.Numeric(12, 2), default=0)
    total_price = db.Column(db.Numeric(12, 2))

    # Voucher usage
    uses_meter_vouchers = db.Column(db.Boolean, nullable=False, default=False)
    voucher_meters = db.Column(db.Numeric(10, 2), nullable=False, default=0)   # meters promised from vouchers at checkout
    vouchers_consumed_at = db.Column(db.DateTime, nullable=True)
    voucher_id = db.Column(db.Integer, db.ForeignKey("voucher.id"), nullable=True)

    # Loyalty
    points_earned = db.Column(db.Integer, nullable=True)
    points_used = db.Column(db.Integer, nullable=False, default=0)          # redeemed at checkout, debited on payment
    points_discount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    is_voucher_purchase = db.Column(db.Boolean, nullable=False, default=False)

    quote_id = db.Column(db.Integer, nullable=True, index=True)
    notes = db.Column(db.Text)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    items = db.relationship(
        "OrderItem",
        backref="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.id.asc()",
    )
    history = db.relationship(
        "OrderStatusHistory",
        backref="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderStatusHistory.id.asc()",
    )

    def summary(self):
        return {
            "id": self.id,
            "order_number": self.order_number,
            "status": self.status,
            "payment_status": self.payment_status,
            "total_price": to_float(self.total_price),
        }

    def as_api(self):
        return {
            **self.summary(),
            "payment_method": self.payment_method,
            "payment_reference": self.payment_reference,
            "user_id": self.user_id,
            "customer": {
                "name": self.customer_name,
                "email": self.customer_email,
                "phone": self.customer_phone,
                "address": self.shipping_address,
            },
            "money": {
                "original_subtotal": to_float(self.original_subtotal),
                "subtotal": to_float(self.subtotal),
                "discount_amount": to_float(self.discount_amount),
                "points_discount": to_float(self.points_discount),
                "tax_amount": to_float(self.tax_amount),
                "shipping_cost": to_float(self.shipping_cost),
                "total_price": to_float(self.total_price),
            },
            "uses_meter_vouchers": self.uses_meter_vouchers,
            "voucher_meters": to_float(self.voucher_meters),
            "voucher_id": self.voucher_id,
            "points_earned": self.points_earned,
            "points_used": self.points_used,
            "is_voucher_purchase": self.is_voucher_purchase,
            "quote_id": self.quote_id,
            "notes": self.notes,
            "items": [i.as_api() for i in self.items],
            "history": [h.as_api() for h in self.history],
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("product.id"), nullable=False, index=True)

    product_name = db.Column(db.String(255))
    quantity = db.Column(db.Numeric(10, 2), nullable=False)
    unit_price = db.Column(db.Numeric(12, 2))
    subtotal = db.Column(db.Numeric(12, 2))
    customizations = db.Column(db.JSON)

    product = db.relationship("Product", lazy="joined")

    def as_api(self):
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": to_float(self.quantity),
            "unit_price": to_float(self.unit_price),
            "subtotal": to_float(self.subtotal),
            "customizations": self.customizations,
        }


class OrderStatusHistory(db.Model):
    __tablename__ = "order_status_history"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False)
    notes = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=utcnow)

    def as_api(self):
        return {
            "status": self.status,
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
