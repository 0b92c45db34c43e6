# dtfshop/model/product.py
from ..extensions import db
from sqlalchemy.orm import validates
from sqlalchemy.sql import func
from ..utils.money import D, to_float

METERED_TYPES = ("DTF_TEXTILE", "DTF_UV")
PRODUCT_TYPES = METERED_TYPES + ("VOUCHER", "CONSUMABLE")


class Product(db.Model):
    __tablename__ = "product"

    id = db.Column(db.Integer, primary_key=True)
    slug = db.Column(db.String(255), unique=True, index=True)
    name = db.Column(db.String(255), nullable=False, index=True)
    product_type = db.Column(db.String(32), nullable=False, default="DTF_TEXTILE", index=True)
    unit = db.Column(db.String(32), default="m")              # "m" for metered goods
    base_price = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    is_active = db.Column(db.Boolean, default=True, index=True)

    created_at = db.Column(db.DateTime, server_default=func.now())
    updated_at = db.Column(db.DateTime, onupdate=func.now(), server_default=func.now())

    price_ranges = db.relationship(
        "PriceRange",
        backref="product",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PriceRange.from_qty.asc()",
    )

    @validates("product_type")
    def _check_type(self, key, value):
        if value not in PRODUCT_TYPES:
            raise ValueError(f"unknown product type: {value}")
        return value

    @property
    def is_metered(self) -> bool:
        return self.product_type in METERED_TYPES

    @property
    def is_voucher(self) -> bool:
        return self.product_type == "VOUCHER"

    def as_api(self):
        return {
            "id": self.id,
            "slug": self.slug,
            "name": self.name,
            "product_type": self.product_type,
            "unit": self.unit,
            "base_price": to_float(self.base_price),
            "is_active": self.is_active,
            "price_ranges": [r.as_api() for r in self.price_ranges],
        }


class PriceRange(db.Model):
    __tablename__ = "price_range"

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("product.id"), nullable=False, index=True)
    from_qty = db.Column(db.Numeric(10, 2), nullable=False)
    to_qty = db.Column(db.Numeric(10, 2), nullable=True)      # NULL = open-ended last tier
    price = db.Column(db.Numeric(10, 2), nullable=False)
    discount_pct = db.Column(db.Numeric(5, 2), nullable=False, default=0)

    def contains(self, quantity) -> bool:
        q = D(quantity)
        if q < D(self.from_qty):
            return False
        return self.to_qty is None or q <= D(self.to_qty)

    def as_api(self):
        return {
            "id": self.id,
            "from_qty": to_float(self.from_qty),
            "to_qty": to_float(self.to_qty),
            "price": to_float(self.price),
            "discount_pct": to_float(self.discount_pct),
        }
