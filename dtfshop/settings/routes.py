# dtfshop/settings/routes.py
from flask import request

from ..errors import ShopError
from ..extensions import db
from ..services import services
from ..utils.api import err, ok
from ..utils.decorators import role_required
from . import bp


@bp.get("")
@role_required("admin")
def get_settings():
    return ok("settings", {"settings": services().settings.all()})


@bp.put("")
@role_required("admin")
def put_settings():
    """Body: { "tax_rate": "0.21", "professional_discount_pct": "10", ... }"""
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict) or not payload:
        return err("settings object required", 422)
    store = services().settings
    try:
        for key, value in payload.items():
            store.set(key, value)
        db.session.commit()
    except (ShopError, ValueError):
        db.session.rollback()
        raise
    return ok("settings updated", {"settings": store.all()})
