# dtfshop/voucher/routes.py
from ..services import services
from ..utils.api import ok
from ..utils.decorators import _current_user, login_required
from . import bp


@bp.get("/balance")
@login_required
def balance():
    user = _current_user()
    ledger = services().ledger
    queue = ledger.select_for_consumption(user.id)
    return ok("voucher balance", {
        "balance": ledger.available_balance(user.id).as_api(),
        # consumption order, oldest first
        "vouchers": [v.as_api() for v in queue],
    })


@bp.get("/templates")
def templates():
    return ok("voucher templates", {
        "items": [t.as_api() for t in services().ledger.list_templates()],
    })
