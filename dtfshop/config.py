import os


def _env_int(name, default):
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


class Config:
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    JSON_SORT_KEYS = False
    ENV = os.getenv("FLASK_ENV", "development")
    JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY", "dev-secret-change-me")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Stripe
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    APP_URL = os.getenv("APP_URL", "http://localhost:3000")
    CURRENCY = os.getenv("CURRENCY", "eur")

    # row locks taken by the voucher ledger give up after this long
    VOUCHER_LOCK_TIMEOUT_MS = _env_int("VOUCHER_LOCK_TIMEOUT_MS", 3000)
    QUOTE_VALID_DAYS = _env_int("QUOTE_VALID_DAYS", 15)

    # defaults for the hot-reloadable settings table
    SETTING_DEFAULTS = {
        "tax_rate": "0.21",
        "professional_discount_pct": "0",
        "loyalty_points_per_euro": "1",
        "default_shipping_cost": "0",
        "free_shipping_threshold": "",
    }

    @staticmethod
    def init_app(app):
        if app.config.get("SQLALCHEMY_DATABASE_URI"):
            return
        if not os.getenv("DATABASE_URL"):
            os.makedirs(app.instance_path, exist_ok=True)
            app.config.setdefault(
                "SQLALCHEMY_DATABASE_URI",
                f"sqlite:///{os.path.join(app.instance_path, 'dtfshop.db')}",
            )
        else:
            app.config.setdefault("SQLALCHEMY_DATABASE_URI", os.getenv("DATABASE_URL"))
