# tests/conftest.py
import hashlib
import hmac
import json
import time
from datetime import timedelta

import pytest
from flask_jwt_extended import create_access_token

from dtfshop import create_app
from dtfshop.extensions import db as _db
from dtfshop.model import Order, OrderItem, PriceRange, Product, Quote, User, Voucher
from dtfshop.services import Services
from dtfshop.utils.clock import utcnow
from dtfshop.utils.money import D

WEBHOOK_SECRET = "whsec_test_secret"


# ---------------------------------------------------------------------------
# App / DB
# ---------------------------------------------------------------------------

@pytest.fixture
def app():
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "JWT_SECRET_KEY": "test-jwt-secret-key-that-is-long-enough",
        "STRIPE_SECRET_KEY": "",
        "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "LOG_LEVEL": "WARNING",
    })
    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db(app):
    return _db


@pytest.fixture
def svc(app):
    return Services(_db.session, app.config)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_user(db):
    def _make(email="ana@example.com", role="user", is_professional=False, name="Ana"):
        u = User(email=email, name=name, role=role, is_professional=is_professional)
        db.session.add(u)
        db.session.commit()
        return u
    return _make


@pytest.fixture
def customer(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(email="admin@example.com", role="admin", name="Admin")


@pytest.fixture
def auth_headers(app):
    def _headers(user):
        token = create_access_token(identity=str(user.id))
        return {"Authorization": f"Bearer {token}"}
    return _headers


def _product(db, slug, name, ptype, base, tiers=()):
    p = Product(slug=slug, name=name, product_type=ptype, base_price=D(base), is_active=True)
    for lo, hi, price in tiers:
        p.price_ranges.append(PriceRange(
            from_qty=D(lo), to_qty=None if hi is None else D(hi), price=D(price), discount_pct=D(0),
        ))
    db.session.add(p)
    db.session.commit()
    return p


@pytest.fixture
def dtf_product(db):
    return _product(db, "dtf-textil", "DTF Textil", "DTF_TEXTILE", "15", [
        ("0.5", "0.99", "15.00"),
        ("1", "5.99", "12.50"),
        ("6", "10.99", "11.00"),
        ("11", None, "9.50"),
    ])


@pytest.fixture
def uv_product(db):
    return _product(db, "uv-dtf", "UV DTF", "DTF_UV", "20", [
        ("0.25", "0.49", "20.00"),
        ("0.5", "2", "18.00"),
        ("2.01", None, "16.00"),
    ])


@pytest.fixture
def voucher_product(db):
    p = _product(db, "bono-10-metros", "Bono 10 Metros DTF", "VOUCHER", "106.25")
    db.session.add(Voucher(
        code="TPL-BONO-10", name="Bono 10 Metros DTF", product_id=p.id, is_template=True,
        price=D("106.25"), initial_meters=D("10"), remaining_meters=D("10"),
        initial_shipments=2, remaining_shipments=2,
    ))
    db.session.commit()
    return p


@pytest.fixture
def issue_voucher(db):
    counter = {"n": 0}

    def _issue(user, meters, shipments=2, created_at=None, expires_at=None):
        counter["n"] += 1
        v = Voucher(
            code=f"TEST-{counter['n']}",
            name="Bono",
            user_id=user.id,
            is_template=False,
            price=D("100"),
            initial_meters=D(meters),
            remaining_meters=D(meters),
            initial_shipments=shipments,
            remaining_shipments=shipments,
            expires_at=expires_at,
            is_active=True,
            created_at=created_at or (utcnow() - timedelta(days=30) + timedelta(minutes=counter["n"])),
        )
        db.session.add(v)
        db.session.commit()
        return v
    return _issue


@pytest.fixture
def make_order(db):
    counter = {"n": 0}

    def _make(user=None, items=(), total="0", uses_meter_vouchers=False, voucher_meters="0", **kw):
        counter["n"] += 1
        o = Order(
            order_number=f"DTF-TEST-{counter['n']}",
            status="PENDING",
            payment_status="PENDING",
            user_id=user.id if user else None,
            customer_name=user.name if user else "Guest",
            customer_email=user.email if user else "guest@example.com",
            subtotal=D(total),
            original_subtotal=D(total),
            tax_amount=D(0),
            shipping_cost=D(0),
            total_price=D(total),
            uses_meter_vouchers=uses_meter_vouchers,
            voucher_meters=D(voucher_meters),
            **kw,
        )
        for product, qty, unit in items:
            o.items.append(OrderItem(
                product_id=product.id, product=product, product_name=product.name,
                quantity=D(qty), unit_price=D(unit), subtotal=D(unit) * D(qty),
            ))
        db.session.add(o)
        db.session.commit()
        return o
    return _make


@pytest.fixture
def make_quote(db):
    counter = {"n": 0}

    def _make(user=None, status="PENDING_REVIEW", **kw):
        counter["n"] += 1
        q = Quote(
            quote_number=f"PRES-2026-{counter['n']:04d}",
            status=status,
            user_id=user.id if user else None,
            customer_name=user.name if user else "Guest",
            customer_email=user.email if user else "guest@example.com",
            description="50 logos",
            expires_at=utcnow() + timedelta(days=15),
            **kw,
        )
        db.session.add(q)
        db.session.commit()
        return q
    return _make


@pytest.fixture
def priced_quote(make_quote, svc, dtf_product, db):
    """A quote already through the `quote` action: 7 m, no extras, 6.00 shipping."""
    def _make(user=None, meters="7", **kw):
        q = make_quote(user=user, **kw)
        svc.quotes.price(q, {"estimated_meters": meters, "shipping_cost": "6"})
        db.session.commit()
        return q
    return _make


# ---------------------------------------------------------------------------
# Webhook helpers
# ---------------------------------------------------------------------------

def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    ts = timestamp or int(time.time())
    sig = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def stripe_event(etype, obj, event_id="evt_test_1"):
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": etype,
        "data": {"object": obj},
    })
