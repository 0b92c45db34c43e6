# dtfshop/model/loyalty.py
from ..extensions import db
from ..utils.clock import utcnow
from ..utils.money import to_float


class LoyaltyAccount(db.Model):
    __tablename__ = "loyalty_account"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), unique=True, nullable=False)
    loyalty_points = db.Column(db.Integer, nullable=False, default=0)     # spendable
    lifetime_points = db.Column(db.Integer, nullable=False, default=0)
    total_spent = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    tier = db.Column(db.String(16), nullable=False, default="BRONZE")

    transactions = db.relationship(
        "PointTransaction",
        backref="account",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PointTransaction.id.asc()",
    )

    def as_api(self):
        return {
            "user_id": self.user_id,
            "loyalty_points": self.loyalty_points,
            "lifetime_points": self.lifetime_points,
            "total_spent": to_float(self.total_spent),
            "tier": self.tier,
        }


class PointTransaction(db.Model):
    __tablename__ = "point_transaction"

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("loyalty_account.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    points = db.Column(db.Integer, nullable=False)
    kind = db.Column(db.String(16), nullable=False, default="earned")   # earned | revoked | redeemed | restored
    description = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=utcnow)

    __table_args__ = (
        db.UniqueConstraint("order_id", "kind", name="uq_point_tx_order_kind"),
    )
