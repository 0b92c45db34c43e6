# --- dtfshop/__init__.py ---
import logging
from datetime import timedelta

from flask import Flask, jsonify

from .config import Config
from .errors import register_error_handlers
from .extensions import cors, db, enable_sqlite_savepoints, jwt, migrate


def create_app(config_overrides=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(days=1)
    if config_overrides:
        app.config.update(config_overrides)
    Config.init_app(app)

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Init extensions
    db.init_app(app)
    jwt.init_app(app)
    cors.init_app(app, resources={r"/api/*": {"origins": "*"}})
    migrate.init_app(app, db)

    with app.app_context():
        if db.engine.dialect.name == "sqlite":
            enable_sqlite_savepoints(db.engine)

    register_error_handlers(app)

    # Register blueprints
    from .cart import bp as cart_bp; app.register_blueprint(cart_bp)
    from .quote import bp as quote_bp; app.register_blueprint(quote_bp)
    from .payment import bp as payment_bp; app.register_blueprint(payment_bp)
    from .order import bp as order_bp; app.register_blueprint(order_bp)
    from .voucher import bp as voucher_bp; app.register_blueprint(voucher_bp)
    from .settings import bp as settings_bp; app.register_blueprint(settings_bp)
    from .notification import bp as notification_bp; app.register_blueprint(notification_bp)

    from .cli import register_cli
    register_cli(app)

    @app.get("/")
    def health():
        return jsonify(ok=True, msg="API running")

    return app
