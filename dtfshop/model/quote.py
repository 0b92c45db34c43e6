# dtfshop/model/quote.py
from ..extensions import db
from ..utils.clock import utcnow
from ..utils.money import to_float


class Quote(db.Model):
    __tablename__ = "quote"

    id = db.Column(db.Integer, primary_key=True)
    quote_number = db.Column(db.String(32), unique=True, nullable=False, index=True)  # PRES-2026-0001
    status = db.Column(db.String(20), nullable=False, default="PENDING_REVIEW", index=True)

    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=True, index=True)
    customer_name = db.Column(db.String(120), nullable=False)
    customer_email = db.Column(db.String(255), nullable=False)
    customer_phone = db.Column(db.String(50))
    description = db.Column(db.Text)

    # Pricing (filled by the "quote" admin action)
    estimated_meters = db.Column(db.Numeric(10, 2))
    price_per_meter = db.Column(db.Numeric(10, 2))
    needs_cutting = db.Column(db.Boolean, nullable=False, default=False)
    cutting_price = db.Column(db.Numeric(10, 2))
    needs_layout = db.Column(db.Boolean, nullable=False, default=False)
    layout_price = db.Column(db.Numeric(10, 2))
    is_priority = db.Column(db.Boolean, nullable=False, default=False)
    priority_price = db.Column(db.Numeric(10, 2))
    shipping_cost = db.Column(db.Numeric(10, 2))
    subtotal = db.Column(db.Numeric(12, 2))
    tax_amount = db.Column(db.Numeric(12, 2))
    estimated_total = db.Column(db.Numeric(12, 2))

    payment_method = db.Column(db.String(20))          # STRIPE | BIZUM | VOUCHER | MANUAL
    payment_link_url = db.Column(db.String(1024))
    admin_notes = db.Column(db.Text)

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), unique=True, nullable=True)
    converted_at = db.Column(db.DateTime, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    order = db.relationship("Order", lazy="joined")

    def has_total(self) -> bool:
        return self.estimated_total is not None and self.estimated_total > 0

    def as_api(self):
        return {
            "id": self.id,
            "quote_number": self.quote_number,
            "status": self.status,
            "user_id": self.user_id,
            "customer": {
                "name": self.customer_name,
                "email": self.customer_email,
                "phone": self.customer_phone,
            },
            "description": self.description,
            "pricing": {
                "estimated_meters": to_float(self.estimated_meters),
                "price_per_meter": to_float(self.price_per_meter),
                "needs_cutting": self.needs_cutting,
                "cutting_price": to_float(self.cutting_price),
                "needs_layout": self.needs_layout,
                "layout_price": to_float(self.layout_price),
                "is_priority": self.is_priority,
                "priority_price": to_float(self.priority_price),
                "shipping_cost": to_float(self.shipping_cost),
                "subtotal": to_float(self.subtotal),
                "tax_amount": to_float(self.tax_amount),
                "estimated_total": to_float(self.estimated_total),
            },
            "payment_method": self.payment_method,
            "payment_link_url": self.payment_link_url,
            "admin_notes": self.admin_notes,
            "order": self.order.summary() if self.order else None,
            "converted_at": self.converted_at.isoformat() if self.converted_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
