# dtfshop/model/voucher.py
from ..extensions import db
from ..utils.clock import utcnow
from ..utils.money import D, ZERO, to_float


class Voucher(db.Model):
    """
    Prepaid meters + free shipments ("bono").

    Rows with is_template=True are purchasable blueprints tied to a VOUCHER
    product; issued vouchers are owned by a user and only ever change through
    VoucherLedger.consume (compare-and-swap on `version`).
    """
    __tablename__ = "voucher"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(96), unique=True, nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("product.id"), nullable=True, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=True, index=True)
    is_template = db.Column(db.Boolean, nullable=False, default=False, index=True)

    price = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    initial_meters = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    remaining_meters = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    initial_shipments = db.Column(db.Integer, nullable=False, default=0)
    remaining_shipments = db.Column(db.Integer, nullable=False, default=0)

    expires_at = db.Column(db.DateTime, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    usage_count = db.Column(db.Integer, nullable=False, default=0)
    version = db.Column(db.Integer, nullable=False, default=0)

    # issued from this order (purchase); used for idempotent minting
    source_order_id = db.Column(db.Integer, nullable=True, index=True)  # not a FK, audit link only

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    product = db.relationship("Product", lazy="joined")

    __table_args__ = (
        db.CheckConstraint("remaining_meters >= 0", name="ck_voucher_meters_nonneg"),
        db.CheckConstraint("remaining_shipments >= 0", name="ck_voucher_shipments_nonneg"),
    )

    def is_expired(self, now=None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or utcnow())

    def should_be_active(self, meters=None, shipments=None, now=None) -> bool:
        meters = D(self.remaining_meters if meters is None else meters)
        shipments = self.remaining_shipments if shipments is None else shipments
        if self.is_expired(now):
            return False
        return meters > ZERO or shipments > 0

    def as_api(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "product_id": self.product_id,
            "is_template": self.is_template,
            "price": to_float(self.price),
            "initial_meters": to_float(self.initial_meters),
            "remaining_meters": to_float(self.remaining_meters),
            "initial_shipments": self.initial_shipments,
            "remaining_shipments": self.remaining_shipments,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "is_active": self.is_active,
            "usage_count": self.usage_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
