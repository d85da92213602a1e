"""Application configuration module.

Provides environment-specific settings for the billing engine.
"""
import os
from pathlib import Path

from .utils import env_bool


BASE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = BASE_DIR.parent
INSTANCE_DIR = PROJECT_ROOT / "instance"
DEFAULT_DB_PATH = INSTANCE_DIR / "billing.sqlite"


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-change-me")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or f"sqlite:///{DEFAULT_DB_PATH}"
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    APP_NAME = "Billing Engine"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    BILLING_DEFAULT_PAYMENT_METHOD = os.environ.get("BILLING_DEFAULT_PAYMENT_METHOD", "pix")
    CASH_FLOW_SYNC_ENABLED = env_bool("CASH_FLOW_SYNC_ENABLED", True)
    # ISO date (YYYY-MM-DD) pinning "today" for recalculation and overdue sweeps
    BILLING_TODAY_OVERRIDE = os.environ.get("BILLING_TODAY_OVERRIDE")


class DevelopmentConfig(Config):
    DEBUG = True
    ENV = "development"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")


class ProductionConfig(Config):
    DEBUG = False
    ENV = "production"


class TestingConfig(Config):
    TESTING = True
    ENV = "testing"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    CASH_FLOW_SYNC_ENABLED = True
    BILLING_TODAY_OVERRIDE = None
