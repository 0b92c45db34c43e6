# dtfshop/model/cart.py
from __future__ import annotations
import uuid as _uuid
from sqlalchemy.sql import func
from ..extensions import db
from ..utils.money import to_float


class Cart(db.Model):
    __tablename__ = "cart"

    id = db.Column(db.Integer, primary_key=True)
    uuid = db.Column(db.String(36), unique=True, index=True, default=lambda: str(_uuid.uuid4()))
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=True, index=True)
    status = db.Column(db.String(16), default="active", index=True)
    created_at = db.Column(db.DateTime, server_default=func.now())
    updated_at = db.Column(db.DateTime, onupdate=func.now(), server_default=func.now())

    items = db.relationship(
        "CartItem",
        backref="cart",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="CartItem.id.asc()"
    )


class CartItem(db.Model):
    __tablename__ = "cart_item"

    id = db.Column(db.Integer, primary_key=True)
    cart_id = db.Column(db.Integer, db.ForeignKey("cart.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("product.id"), nullable=False, index=True)

    quantity = db.Column(db.Numeric(10, 2), nullable=False, default=1)
    # price snapshot for flat-priced goods (vouchers, consumables)
    unit_price = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    # validated Extras, stored via Extra.as_json()
    customizations = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime, server_default=func.now())
    updated_at = db.Column(db.DateTime, onupdate=func.now(), server_default=func.now())

    product = db.relationship("Product", lazy="joined")

    def as_api(self):
        return {
            "id": self.id,
            "product_id": self.product_id,
            "name": self.product.name if self.product else None,
            "product_type": self.product.product_type if self.product else None,
            "quantity": to_float(self.quantity),
            "unit_price": to_float(self.unit_price),
            "customizations": self.customizations,
        }
