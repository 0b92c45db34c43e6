# dtfshop/services/gateway.py
import json
import logging

import stripe

from ..errors import NotFound, PaymentGatewayError, WebhookSignatureError
from ..utils.money import D, round_money

logger = logging.getLogger(__name__)


def to_cents(amount) -> int:
    return int(round_money(D(amount)) * 100)


class StripeGateway:
    """Stripe calls used by checkout, quote payment links and the webhook."""

    def __init__(self, secret_key, webhook_secret, app_url, currency="eur"):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.app_url = (app_url or "").rstrip("/")
        self.currency = currency.lower()

    @classmethod
    def from_config(cls, config):
        return cls(
            secret_key=config.get("STRIPE_SECRET_KEY", ""),
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET", ""),
            app_url=config.get("APP_URL", ""),
            currency=config.get("CURRENCY", "eur"),
        )

    def verify_event(self, payload: bytes, sig_header) -> dict:
        """Check the Stripe-Signature header and return the event as a dict."""
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not configured")
            raise WebhookSignatureError("webhook secret not configured")
        if not sig_header:
            raise WebhookSignatureError("missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)
        except ValueError as e:
            raise WebhookSignatureError("invalid payload") from e
        except stripe.error.SignatureVerificationError as e:
            logger.warning("rejected webhook with bad signature")
            raise WebhookSignatureError("invalid signature") from e
        return json.loads(payload)

    def _require_key(self):
        if not self.secret_key:
            raise PaymentGatewayError("Stripe is not configured")
        stripe.api_key = self.secret_key

    def create_checkout_session(self, order, title) -> dict:
        self._require_key()
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                payment_method_types=["card"],
                line_items=[{
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {"name": title},
                        "unit_amount": to_cents(order.total_price),
                    },
                    "quantity": 1,
                }],
                customer_email=order.customer_email or None,
                success_url=f"{self.app_url}/pedidos/{order.id}?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{self.app_url}/carrito",
                metadata={"orderId": str(order.id), "orderNumber": order.order_number},
            )
        except stripe.error.StripeError as e:
            logger.error("failed to create checkout session for %s: %s", order.order_number, e)
            raise PaymentGatewayError("could not create payment session") from e
        logger.info("checkout session %s for order %s", session.id, order.order_number)
        return {"id": session.id, "url": session.url}

    def retrieve_checkout_session(self, session_id) -> dict:
        self._require_key()
        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.error.InvalidRequestError as e:
            raise NotFound("payment session not found") from e
        except stripe.error.StripeError as e:
            logger.error("failed to retrieve checkout session %s: %s", session_id, e)
            raise PaymentGatewayError("could not read payment session") from e
        return {
            "id": session.id,
            "payment_status": session.payment_status,
            "payment_intent": session.payment_intent,
            "metadata": dict(session.metadata or {}),
        }

    def create_payment_link(self, quote) -> str:
        self._require_key()
        description = f"DTF quote - {quote.estimated_meters}m - {quote.customer_name}"
        try:
            price = stripe.Price.create(
                currency=self.currency,
                unit_amount=to_cents(quote.estimated_total),
                product_data={"name": f"Quote {quote.quote_number}", "metadata": {"quoteId": str(quote.id)}},
            )
            link = stripe.PaymentLink.create(
                line_items=[{"price": price.id, "quantity": 1}],
                metadata={"quoteId": str(quote.id), "quoteNumber": quote.quote_number},
                payment_intent_data={"description": description, "metadata": {"quoteId": str(quote.id)}},
                after_completion={
                    "type": "redirect",
                    "redirect": {"url": f"{self.app_url}/presupuesto/{quote.id}/confirmacion"},
                },
            )
        except stripe.error.StripeError as e:
            logger.error("failed to create payment link for %s: %s", quote.quote_number, e)
            raise PaymentGatewayError("could not create payment link") from e
        return link.url
