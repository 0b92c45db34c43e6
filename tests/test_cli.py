# tests/test_cli.py
from datetime import timedelta
from decimal import Decimal

from dtfshop.model import Notification, Product, User, Voucher
from dtfshop.services.tiers import resolve_unit_price, tier_gaps
from dtfshop.utils.clock import utcnow


def test_seed_catalog_once(app, db):
    runner = app.test_cli_runner()
    out = runner.invoke(args=["seed-catalog"]).output
    assert "Catalog seeded" in out
    assert "warning" not in out
    assert "already seeded" in runner.invoke(args=["seed-catalog"]).output

    assert db.session.query(Product).count() == 4
    templates = db.session.query(Voucher).filter_by(is_template=True).order_by(Voucher.price).all()
    assert [(t.initial_meters, t.initial_shipments) for t in templates] == [(Decimal("10"), 2), (Decimal("25"), 2)]
    dtf = db.session.query(Product).filter_by(slug="dtf-textil").one()
    assert len(dtf.price_ranges) == 4


def test_seeded_tiers_cover_fractional_meters(app, db):
    app.test_cli_runner().invoke(args=["seed-catalog"])
    for product in db.session.query(Product).filter(Product.price_ranges.any()):
        assert tier_gaps(product.price_ranges) == []
    dtf = db.session.query(Product).filter_by(slug="dtf-textil").one()
    assert resolve_unit_price("5.5", dtf.price_ranges).unit_price == Decimal("12.50")
    assert resolve_unit_price("10.5", dtf.price_ranges).unit_price == Decimal("11.00")


def test_create_admin(app, db):
    out = app.test_cli_runner().invoke(args=["create-admin", "--email", "Jefa@Example.com", "--name", "Jefa"]).output
    assert "Admin created" in out
    assert db.session.query(User).filter_by(email="jefa@example.com").one().role == "admin"


def test_expire_quotes(app, db, make_quote):
    overdue = make_quote(status="QUOTED")
    overdue.expires_at = utcnow() - timedelta(days=1)
    fresh = make_quote()
    db.session.commit()

    out = app.test_cli_runner().invoke(args=["expire-quotes"]).output

    assert "1 quote(s) expired" in out
    db.session.refresh(overdue)
    db.session.refresh(fresh)
    assert overdue.status == "EXPIRED"
    assert fresh.status == "PENDING_REVIEW"


def test_expire_vouchers(app, db, customer, issue_voucher):
    v = issue_voucher(customer, "10", expires_at=utcnow() - timedelta(minutes=5))
    out = app.test_cli_runner().invoke(args=["expire-vouchers"]).output
    assert "1 voucher(s) deactivated" in out
    db.session.refresh(v)
    assert v.is_active is False


def test_voucher_expiry_reminders(app, db, customer, issue_voucher):
    issue_voucher(customer, "4", expires_at=utcnow() + timedelta(days=2))
    issue_voucher(customer, "4", expires_at=utcnow() + timedelta(days=90))

    out = app.test_cli_runner().invoke(args=["voucher-expiry-reminders", "--days", "7"]).output

    assert "1 reminder(s) sent, 0 failed" in out
    assert [n.kind for n in db.session.query(Notification).filter_by(user_id=customer.id)] == ["voucher_expiring"]
