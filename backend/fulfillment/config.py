# backend/fulfillment/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/fulfillment.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///fulfillment.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Amounts are stored as integers in the currency's minor unit
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "VND")

    # Bounded retry for deadlocks / optimistic-lock conflicts
    CONCURRENCY_RETRY_ATTEMPTS = int(os.environ.get("CONCURRENCY_RETRY_ATTEMPTS", "3"))
    CONCURRENCY_RETRY_BACKOFF = float(os.environ.get("CONCURRENCY_RETRY_BACKOFF", "0.1"))

    ORDER_NUMBER_PREFIX = os.environ.get("ORDER_NUMBER_PREFIX", "ORD")
    RECEIPT_NUMBER_PREFIX = os.environ.get("RECEIPT_NUMBER_PREFIX", "SR")
