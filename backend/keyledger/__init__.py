# backend/keyledger/__init__.py
from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from .config import Config
from .errors import LedgerError
from .extensions import db, migrate



def create_app(config_object=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object or Config)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Pricing is loaded once and never mutated afterwards
    from .services.pricing import PricingCatalog
    app.extensions["pricing_catalog"] = PricingCatalog.from_config(app.config["KEY_PRICING"])

    # Register blueprints
    from .routes.system import system_bp
    from .routes.keys import keys_bp
    from .routes.codes import codes_bp
    from .routes.accounts import accounts_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(keys_bp)
    app.register_blueprint(codes_bp)
    app.register_blueprint(accounts_bp)

    @app.errorhandler(LedgerError)
    def handle_ledger_error(err: LedgerError):
        return jsonify({"error": err.to_dict()}), err.http_status

    @app.errorhandler(Exception)
    def handle_unexpected_error(err: Exception):
        if isinstance(err, HTTPException):
            kind = (err.name or "HTTP_ERROR").upper().replace(" ", "_")
            return jsonify({"error": {"kind": kind, "message": err.description}}), err.code
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": {"kind": "INTERNAL_ERROR", "message": "Internal server error"}}), 500

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
