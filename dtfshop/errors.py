# dtfshop/errors.py
from decimal import InvalidOperation

from flask import jsonify

from .utils.api import api_error


class ShopError(Exception):
    status_code = 400

    def __init__(self, message, data=None):
        super().__init__(message)
        self.message = message
        self.data = data or {}


class PriceTierError(ShopError):
    """Quantity is not covered by any configured price tier."""
    status_code = 500


class InsufficientVoucherBalance(ShopError):
    status_code = 422


class BalanceChangedError(ShopError):
    """Voucher balance moved under us twice in a row."""
    status_code = 409


class InvalidTransition(ShopError):
    status_code = 409


class QuoteNotPriced(ShopError):
    status_code = 400


class WebhookSignatureError(ShopError):
    status_code = 400


class NotFound(ShopError):
    status_code = 404


class PaymentGatewayError(ShopError):
    status_code = 502


def register_error_handlers(app):
    @app.errorhandler(ShopError)
    def handle_shop_error(e):
        r = jsonify(api_error(e.message, e.data))
        r.status_code = e.status_code
        return r

    @app.errorhandler(ValueError)
    def handle_value_error(e):
        r = jsonify(api_error(str(e)))
        r.status_code = 422
        return r

    @app.errorhandler(InvalidOperation)
    def handle_bad_number(e):
        r = jsonify(api_error("invalid number"))
        r.status_code = 422
        return r
