# dtfshop/order/routes.py
from datetime import datetime, timedelta

from flask import request

from ..extensions import db
from ..model import Order
from ..utils.api import err, ok
from ..utils.decorators import _current_user, login_required, role_required
from . import bp


@bp.get("")
@role_required("admin")
def list_orders():
    """
    Query params:
      - page, per_page
      - status=PENDING|CONFIRMED|CANCELLED
      - payment_status=PENDING|PAID|FAILED|EXPIRED|REFUNDED
      - email=...
      - number=DTF-...
      - start=YYYY-MM-DD
      - end=YYYY-MM-DD (inclusive)
    """
    q = Order.query

    status = request.args.get("status")
    payment_status = request.args.get("payment_status")
    email = request.args.get("email")
    number = request.args.get("number")
    start = request.args.get("start")
    end = request.args.get("end")

    if status: q = q.filter(Order.status == status)
    if payment_status: q = q.filter(Order.payment_status == payment_status)
    if email: q = q.filter(Order.customer_email == email.strip().lower())
    if number: q = q.filter(Order.order_number == number)
    if start:
        q = q.filter(Order.created_at >= datetime.fromisoformat(start))
    if end:
        # make end inclusive for the whole day
        q = q.filter(Order.created_at < datetime.fromisoformat(end) + timedelta(days=1))

    page = int(request.args.get("page", 1))
    per = min(int(request.args.get("per_page", 20)), 100)

    q = q.order_by(Order.created_at.desc())
    paged = q.paginate(page=page, per_page=per, error_out=False)

    return ok("orders", {
        "page": page,
        "per_page": per,
        "total": paged.total,
        "items": [o.as_api() for o in paged.items],
    })


@bp.get("/mine")
@login_required
def my_orders():
    user = _current_user()
    rows = (Order.query.filter(Order.user_id == user.id)
            .order_by(Order.created_at.desc())
            .limit(50).all())
    return ok("orders", {"items": [o.summary() for o in rows]})


@bp.get("/<int:order_id>")
@login_required
def get_order(order_id: int):
    user = _current_user()
    o = db.session.get(Order, order_id)
    if not o:
        return err("order not found", 404)
    if user.role != "admin" and o.user_id != user.id:
        return err("Forbidden", 403)
    return ok("order", {"order": o.as_api()})
