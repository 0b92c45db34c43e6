# dtfshop/cli.py
from datetime import timedelta

import click
from flask import current_app

from .extensions import db
from .model import PriceRange, Product, User, Voucher
from .services import Services
from .services.tiers import tier_gaps
from .utils.clock import utcnow
from .utils.money import D


def _services():
    return Services(db.session, current_app.config)


@click.command("init-db")
def init_db():
    db.create_all()
    click.echo("Database tables created")


@click.command("create-admin")
@click.option("--email", required=True)
@click.option("--name", required=True)
def create_admin(email, name):
    email = email.strip().lower()
    if User.query.filter_by(email=email).first():
        click.echo("Email already exists"); return
    u = User(email=email, name=name, role="admin")
    db.session.add(u); db.session.commit()
    click.echo(f"Admin created: {u.id} {u.email}")


@click.command("seed-catalog")
def seed_catalog():
    """Printed-meter products with tiers, plus two voucher products and their templates."""
    if Product.query.filter_by(slug="dtf-textil").first():
        click.echo("Catalog already seeded"); return

    dtf = Product(slug="dtf-textil", name="DTF Textil", product_type="DTF_TEXTILE", unit="m", base_price=D("15"))
    for lo, hi, price in (
        ("0.5", "0.99", "15.00"), ("1", "5.99", "12.50"), ("6", "10.99", "11.00"), ("11", None, "9.50"),
    ):
        dtf.price_ranges.append(PriceRange(from_qty=D(lo), to_qty=D(hi) if hi else None, price=D(price)))
    uv = Product(slug="uv-dtf", name="UV DTF", product_type="DTF_UV", unit="m", base_price=D("20"))
    for lo, hi, price in (("0.25", "0.49", "20.00"), ("0.5", "2", "18.00"), ("2.01", None, "16.00")):
        uv.price_ranges.append(PriceRange(from_qty=D(lo), to_qty=D(hi) if hi else None, price=D(price)))
    db.session.add_all([dtf, uv])

    for slug, name, price, meters, days in (
        ("bono-10-metros", "Bono 10 Metros DTF", "106.25", "10", 180),
        ("bono-25-metros", "Bono 25 Metros DTF", "250.00", "25", 365),
    ):
        p = Product(slug=slug, name=name, product_type="VOUCHER", unit="bono", base_price=D(price))
        db.session.add(p)
        db.session.flush()
        db.session.add(Voucher(
            code=f"TPL-{slug.upper()}", name=name, product_id=p.id, is_template=True,
            price=D(price), initial_meters=D(meters), remaining_meters=D(meters),
            initial_shipments=2, remaining_shipments=2,
            expires_at=utcnow() + timedelta(days=days),
        ))
    db.session.commit()
    for p in (dtf, uv):
        for problem in tier_gaps(p.price_ranges):
            click.echo(f"warning: {p.slug}: {problem}")
    click.echo("Catalog seeded")


@click.command("expire-quotes")
def expire_quotes():
    """Move open quotes past their validity date to EXPIRED."""
    n = _services().quotes.expire_overdue()
    db.session.commit()
    click.echo(f"{n} quote(s) expired")


@click.command("expire-vouchers")
def expire_vouchers():
    n = _services().ledger.deactivate_expired()
    db.session.commit()
    click.echo(f"{n} voucher(s) deactivated")


@click.command("voucher-expiry-reminders")
@click.option("--days", default=7, show_default=True, type=int)
def voucher_expiry_reminders(days):
    """Notify owners of vouchers that expire within the next N days."""
    svc = _services()
    now = utcnow()
    vouchers = svc.ledger.expiring_between(now, now + timedelta(days=days))
    for v in vouchers:
        owner = db.session.get(User, v.user_id)
        svc.dispatcher.queue(
            "voucher_expiring",
            f"Voucher {v.code} expires on {v.expires_at:%Y-%m-%d} with {v.remaining_meters} m left.",
            user_id=v.user_id,
            email=owner.email if owner else None,
            subject="Your voucher is about to expire",
        )
    db.session.commit()
    failed = svc.dispatcher.dispatch()
    click.echo(f"{len(vouchers)} reminder(s) sent, {failed} failed")


def register_cli(app):
    for cmd in (init_db, create_admin, seed_catalog, expire_quotes, expire_vouchers, voucher_expiry_reminders):
        app.cli.add_command(cmd)
