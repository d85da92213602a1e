"""Flask application factory for the recurring billing engine."""
import logging
import os

from flask import Flask
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import ArgumentError

from .config import DevelopmentConfig, ProductionConfig
from .extensions import db, init_db


def create_app(config_object=None):
    """Application factory to create configured Flask app instances."""
    app = Flask(__name__, instance_relative_config=True)

    os.makedirs(app.instance_path, exist_ok=True)

    _configure_app(app, config_object)
    _configure_logging(app)
    _register_extensions(app)
    _register_shellcontext(app)
    _setup_db(app)

    return app


def _configure_app(app, config_object=None):
    env = os.environ.get("FLASK_ENV") or os.environ.get("APP_ENV") or "development"
    if config_object:
        app.config.from_object(config_object)
    elif env.lower() == "production":
        app.config.from_object(ProductionConfig)
    else:
        app.config.from_object(DevelopmentConfig)


def _configure_logging(app):
    level = str(app.config.get("LOG_LEVEL") or "INFO").upper()
    app.logger.setLevel(getattr(logging, level, logging.INFO))


def _register_extensions(app):
    init_db(app)


def _register_shellcontext(app):
    @app.shell_context_processor
    def make_shell_context():
        from .models import (  # noqa: WPS433
            BillingDefinition,
            BillingStatus,
            CashFlowEntry,
            Client,
            Installment,
            InstallmentStatus,
            PaymentMethod,
        )
        from .services import billing_service  # noqa: WPS433

        return {
            "db": db,
            "Client": Client,
            "BillingDefinition": BillingDefinition,
            "BillingStatus": BillingStatus,
            "Installment": Installment,
            "InstallmentStatus": InstallmentStatus,
            "PaymentMethod": PaymentMethod,
            "CashFlowEntry": CashFlowEntry,
            "billing_service": billing_service,
        }


def _setup_db(app):
    with app.app_context():
        # Import models to ensure metadata is loaded before table creation
        from . import models  # noqa: WPS433

        database_uri = app.config.get("SQLALCHEMY_DATABASE_URI", "")
        try:
            url = make_url(database_uri)
        except ArgumentError:
            url = None

        if url and url.drivername.startswith("sqlite") and url.database and url.database != ":memory:":
            db_dir = os.path.dirname(url.database)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
            if not os.path.exists(url.database):
                app.logger.info("Initializing SQLite database at %s", url.database)

        db.create_all()
