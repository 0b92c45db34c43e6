# dtfshop/cart/routes.py
from __future__ import annotations

from flask import request

from ..errors import ShopError
from ..extensions import db
from ..model import Cart, CartItem, Product
from ..services import services
from ..services.extras import parse_extras
from ..utils.api import err, ok
from ..utils.decorators import optional_user
from ..utils.money import D, round_quantity
from . import bp

# ---- helpers ---------------------------------------------------------------

def _get_or_create_cart_by_uuid(cart_uuid: str | None, user=None) -> Cart:
    cart = None
    if cart_uuid:
        cart = Cart.query.filter_by(status="active", uuid=cart_uuid).first()
    elif user is not None:
        cart = Cart.query.filter_by(status="active", user_id=user.id).order_by(Cart.id.desc()).first()
    if not cart:
        cart = Cart(status="active", user_id=user.id if user else None)
        db.session.add(cart)
        db.session.commit()
    elif user is not None and cart.user_id is None:
        cart.user_id = user.id
        db.session.commit()
    return cart


def _resolve_cart(user=None) -> Cart:
    return _get_or_create_cart_by_uuid(request.headers.get("X-Cart-Id"), user)


def _quantity(raw) -> D:
    try:
        q = D(raw)
    except ArithmeticError:
        raise ValueError("quantity must be a number")
    q = round_quantity(q)
    if q <= 0:
        raise ValueError("quantity must be > 0")
    return q


def _cart_payload(cart: Cart, user=None):
    data = {"uuid": cart.uuid, "items": [i.as_api() for i in cart.items]}
    if cart.items:
        data["pricing"] = services().pricing.price_cart(cart, user.id if user else None).as_api()
    return data


def _respond(msg, cart, user=None, status=200):
    resp = ok(msg, _cart_payload(cart, user), status=status)
    resp.headers["X-Cart-Id"] = cart.uuid
    return resp

# ---- endpoints -------------------------------------------------------------

@bp.get("")
def get_cart():
    user = optional_user()
    cart = _resolve_cart(user)
    return _respond("cart", cart, user)


@bp.get("/pricing")
def pricing_preview():
    """
    Read-only preview: per-item prices, prioritization, voucher coverage and
    both the adjusted and the original subtotal.
    Query: ?points=<int> previews a loyalty points redemption.
    """
    user = optional_user()
    cart = _resolve_cart(user)
    if not cart.items:
        return err("cart is empty", 422)
    svc = services()
    summary = svc.pricing.price_cart(cart, user.id if user else None)
    totals = svc.pricing.checkout_totals(
        summary, user,
        points=request.args.get("points"),
        available_points=svc.loyalty.available_points(user.id if user else None),
    )
    resp = ok("pricing", {**summary.as_api(), "totals": totals.as_api()})
    resp.headers["X-Cart-Id"] = cart.uuid
    return resp


@bp.post("/items")
def add_item():
    """
    Body: { "product_id": int, "quantity": number, "customizations": {"extras": {...}} }
    Header: X-Cart-Id: <uuid>
    """
    user = optional_user()
    cart = _resolve_cart(user)
    data = request.get_json(silent=True) or {}
    product_id = data.get("product_id")
    if not product_id:
        return err("product_id is required", 422)
    qty = _quantity(data.get("quantity", 1))

    product: Product | None = db.session.get(Product, product_id)
    if not product or not product.is_active:
        return err("product not found or inactive", 404)

    extras = parse_extras(data.get("customizations"))
    if extras is not None and not product.is_metered:
        return err("extras are only available for printed meters", 422)

    item = CartItem(
        product_id=product.id,
        product=product,
        quantity=qty,
        unit_price=product.base_price,
        customizations=extras.as_json() if extras else None,
    )
    # price it before it joins the cart so an uncovered quantity is rejected at the door
    services().pricing.price_line_for_item(item)
    cart.items.append(item)
    db.session.commit()
    return _respond("item added", cart, user, status=201)


@bp.patch("/items/<int:item_id>")
def update_item(item_id: int):
    """Body: { "quantity"?: number, "customizations"?: {...} }"""
    user = optional_user()
    cart = _resolve_cart(user)
    item: CartItem | None = next((i for i in cart.items if i.id == item_id), None)
    if not item:
        return err("item not found in this cart", 404)

    data = request.get_json(silent=True) or {}
    if "quantity" in data:
        item.quantity = _quantity(data["quantity"])
    if "customizations" in data:
        extras = parse_extras(data["customizations"])
        if extras is not None and not item.product.is_metered:
            return err("extras are only available for printed meters", 422)
        item.customizations = extras.as_json() if extras else None
    try:
        services().pricing.price_line_for_item(item)
    except ShopError:
        db.session.rollback()
        raise
    db.session.commit()
    return _respond("item updated", cart, user)


@bp.delete("/items/<int:item_id>")
def remove_item(item_id: int):
    user = optional_user()
    cart = _resolve_cart(user)
    item: CartItem | None = next((i for i in cart.items if i.id == item_id), None)
    if not item:
        return err("item not found in this cart", 404)
    db.session.delete(item)
    db.session.commit()
    return _respond("item removed", cart, user)


@bp.delete("/items")
def clear_cart_items():
    user = optional_user()
    cart = _resolve_cart(user)
    # cascade="all, delete-orphan" deletes the rows
    cart.items.clear()
    db.session.commit()
    return _respond("all items removed", cart, user)


@bp.post("/checkout")
def checkout():
    """
    Body: { "customer": {name, email, phone}, "shipping_address": {...}, "points"?: int }
    Creates a PENDING order; confirms it at once when vouchers leave nothing to charge.
    Shipping is always priced server-side.
    """
    user = optional_user()
    cart = _resolve_cart(user)
    if not cart.items:
        return err("cart is empty", 422)
    payload = request.get_json(silent=True) or {}
    try:
        result = services().checkout.checkout(
            cart, user,
            payload.get("customer") or {},
            shipping_address=payload.get("shipping_address"),
            points=payload.get("points"),
        )
    except (ShopError, ValueError):
        db.session.rollback()
        raise
    resp = ok("order created", result, status=201)
    resp.headers["X-Order-Id"] = str(result["order"]["id"])
    return resp
