# backend/slipsafe/__init__.py
from flask import Flask, request

from .config import Config
from .extensions import db, migrate
from .services.signing_service import ClaimSigner


def create_app(overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # One signer per app; nothing else holds the key
    app.extensions["claim_signer"] = ClaimSigner(
        app.config.get("CLAIM_SIGNING_KEY") or app.config["SECRET_KEY"],
        salt=app.config["CLAIM_SIGNING_SALT"],
    )

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.auth import auth_bp
    from .routes.claims import claims_bp  # Consumer claim issuance
    from .routes.merchant import merchant_bp  # Verification & redemption
    from .routes.fraud import fraud_bp  # Fraud review

    app.register_blueprint(system_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(claims_bp)
    app.register_blueprint(merchant_bp)
    app.register_blueprint(fraud_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type, X-Merchant-Session"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
