# dtfshop/quote/routes.py
from flask import request

from ..errors import NotFound, ShopError
from ..extensions import db
from ..model import Quote
from ..services import services
from ..utils.api import err, ok
from ..utils.decorators import optional_user, role_required
from . import bp

ACTIONS = ("quote", "generate_payment_link", "set_bizum", "mark_paid",
           "pay_with_voucher", "cancel", "expire", "update_notes")


def _get_quote(quote_id) -> Quote:
    q = db.session.get(Quote, quote_id)
    if q is None:
        raise NotFound("quote not found")
    return q


@bp.post("")
def create_quote():
    """Body: { customer_name, customer_email, customer_phone?, description?, estimated_meters?, needs_* }"""
    user = optional_user()
    payload = request.get_json(silent=True) or {}
    quote = services().quotes.create(payload, user)
    db.session.commit()
    return ok("quote requested", {"quote": quote.as_api()}, status=201)


@bp.get("")
@role_required("admin")
def list_quotes():
    q = Quote.query
    status = request.args.get("status")
    if status:
        q = q.filter(Quote.status == status)
    page = int(request.args.get("page", 1))
    per = min(int(request.args.get("per_page", 20)), 100)
    paged = q.order_by(Quote.created_at.desc()).paginate(page=page, per_page=per, error_out=False)
    return ok("quotes", {
        "page": page,
        "per_page": per,
        "total": paged.total,
        "items": [x.as_api() for x in paged.items],
    })


@bp.get("/<int:quote_id>")
def get_quote(quote_id: int):
    user = optional_user()
    quote = _get_quote(quote_id)
    if user is None or (user.role != "admin" and quote.user_id != user.id):
        return err("Forbidden", 403)
    return ok("quote", {"quote": quote.as_api()})


@bp.patch("/<int:quote_id>")
@role_required("admin")
def update_quote(quote_id: int):
    """
    Body: { "action": one of ACTIONS, ... }
      quote                 estimated_meters, needs_cutting, needs_layout, is_priority, shipping_cost, admin_notes,
                            payment_link (also send the Stripe link)
      generate_payment_link -
      set_bizum             -
      mark_paid             payment_reference?   (converts to an order)
      pay_with_voucher      -                    (customer's voucher meters pay the print)
      cancel / expire       admin_notes?
      update_notes          admin_notes
    """
    payload = request.get_json(silent=True) or {}
    action = payload.get("action")
    if action not in ACTIONS:
        return err("invalid action", 400, {"allowed": list(ACTIONS)})

    svc = services()
    # conversion actions own their transaction
    if action == "mark_paid":
        result = svc.reconciler.mark_quote_paid(quote_id, payload.get("payment_reference"))
        if result.quote is None:
            raise NotFound("quote not found")
        return ok("quote paid", result.as_api())
    if action == "pay_with_voucher":
        result = svc.reconciler.pay_quote_with_voucher(quote_id)
        return ok("quote paid with voucher", result.as_api())

    quote = _get_quote(quote_id)
    data = {}
    try:
        if action == "quote":
            data["calculation"] = svc.quotes.price(quote, payload).as_api()
            if payload.get("payment_link"):
                data["payment_url"] = svc.quotes.generate_payment_link(quote)
        elif action == "generate_payment_link":
            data["payment_url"] = svc.quotes.generate_payment_link(quote)
        elif action == "set_bizum":
            svc.quotes.set_bizum(quote)
        elif action in ("cancel", "expire"):
            svc.quotes.close(quote, "CANCELLED" if action == "cancel" else "EXPIRED", payload.get("admin_notes"))
        elif action == "update_notes":
            svc.quotes.update_notes(quote, payload.get("admin_notes"))
        db.session.commit()
    except (ShopError, ValueError):
        db.session.rollback()
        raise
    return ok(f"quote {action} done", {"quote": quote.as_api(), **data})


@bp.post("/<int:quote_id>/convert-to-order")
@role_required("admin")
def convert_to_order(quote_id: int):
    result = services().reconciler.convert_quote(quote_id, "admin", require_paid=True)
    if result.quote is None:
        raise NotFound("quote not found")
    return ok("quote converted" if result.created else "quote already converted", result.as_api(),
              status=201 if result.created else 200)


@bp.delete("/<int:quote_id>")
@role_required("admin")
def delete_quote(quote_id: int):
    quote = _get_quote(quote_id)
    services().quotes.delete(quote)
    db.session.commit()
    return ok("quote deleted", {"id": quote_id})
