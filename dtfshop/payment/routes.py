import logging

from flask import request

from ..errors import InvalidTransition, NotFound
from ..services import services
from ..utils.api import err, ok
from . import bp

logger = logging.getLogger(__name__)


@bp.post("/webhook")
def stripe_webhook():
    """
    Signature is checked before anything is read or written. Unknown ids,
    duplicates and unhandled types are acknowledged so the gateway stops
    redelivering them.
    """
    svc = services()
    payload = request.get_data()
    event = svc.gateway.verify_event(payload, request.headers.get("Stripe-Signature"))
    logger.info("webhook %s (%s)", event.get("type"), event.get("id"))

    try:
        result = svc.reconciler.handle_event(event)
    except InvalidTransition as e:
        # e.g. a completion arriving after the session already expired
        logger.warning("webhook %s not applied: %s", event.get("id"), e.message)
        return ok("received", {"applied": False, "reason": e.message})

    if result is None:
        return ok("received", {"applied": False})
    return ok("received", {"applied": result.applied, "result": result.as_api()})


@bp.get("/verify-session")
def verify_session():
    """
    Query: ?session_id=<checkout session id>
    Success-page check: reads the session back from Stripe and confirms the
    order if the webhook has not done it yet. Repeat calls change nothing.
    """
    session_id = (request.args.get("session_id") or "").strip()
    if not session_id:
        return err("session_id is required", 422)
    svc = services()
    session = svc.gateway.retrieve_checkout_session(session_id)
    if session.get("payment_status") != "paid":
        return err("payment not completed", 400, {"payment_status": session.get("payment_status")})

    result = svc.reconciler.apply_completed_session(session)
    if result is None or result.order is None:
        raise NotFound("no order for this payment session")
    logger.info("session %s verified (applied=%s)", session_id, result.applied)
    return ok("payment verified", {"applied": result.applied, "order": result.order.summary()})
