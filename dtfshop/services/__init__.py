# dtfshop/services/__init__.py
from flask import current_app, g

from ..extensions import db
from .checkout import CheckoutService
from .gateway import StripeGateway
from .loyalty_service import LoyaltyService
from .notifications import InAppSender, LoggingEmailSender, NotificationDispatcher
from .pricing_service import PricingService
from .quotes import QuoteService
from .reconciliation import PaymentReconciler
from .settings_store import SettingsStore
from .voucher_ledger import VoucherLedger


class Services:
    """Everything a request needs, built around one explicit session."""

    def __init__(self, session, config, gateway=None, dispatcher=None):
        self.session = session
        self.settings = SettingsStore(session, config.get("SETTING_DEFAULTS"))
        self.ledger = VoucherLedger(session, lock_timeout_ms=config.get("VOUCHER_LOCK_TIMEOUT_MS", 3000))
        self.pricing = PricingService(self.ledger, self.settings)
        self.loyalty = LoyaltyService(session, self.settings)
        self.gateway = gateway or StripeGateway.from_config(config)
        self.dispatcher = dispatcher or NotificationDispatcher([InAppSender(session), LoggingEmailSender()])
        self.reconciler = PaymentReconciler(session, self.ledger, self.loyalty, self.settings, self.dispatcher)
        self.quotes = QuoteService(session, self.pricing, self.gateway,
                                   valid_days=config.get("QUOTE_VALID_DAYS", 15))
        self.checkout = CheckoutService(session, self.pricing, self.loyalty, self.reconciler, self.gateway)


def services() -> Services:
    if "services" not in g:
        g.services = Services(
            db.session,
            current_app.config,
            gateway=current_app.extensions.get("dtfshop.gateway"),
        )
    return g.services
