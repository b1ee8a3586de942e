"""
Shared fixtures: an in-memory payment store, settings and fake HTTP responses.
"""

import json
from typing import Any
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from qpay_bridge.core import models  # noqa: F401  registers the tables
from qpay_bridge.core.database import Base
from qpay_bridge.core.repository import SqlPaymentStore
from qpay_bridge.core.settings import QPaySettings, ShopifySettings

QPAY_URL = "https://merchant.qpay.test/v2"


def make_response(status_code: int = 200, payload: Any = None, text: str | None = None) -> MagicMock:
    """Build a ``requests.Response`` stand-in."""
    response = MagicMock()
    response.status_code = status_code
    if text is None:
        text = json.dumps(payload) if payload is not None else ""
    response.text = text
    response.content = text.encode()
    if payload is not None:
        response.json.return_value = payload
    else:
        response.json.side_effect = ValueError("No JSON object could be decoded")
    return response


def token_response(token: str = "token-1", expires_in: int = 3600) -> MagicMock:
    return make_response(
        200,
        {
            "token_type": "bearer",
            "access_token": token,
            "expires_in": expires_in,
            "refresh_token": "refresh-1",
        },
    )


@pytest.fixture
def qpay_settings() -> QPaySettings:
    return QPaySettings(
        username="TEST_MERCHANT",
        password="secret",
        invoice_code="TEST_INVOICE",
        api_url=f"{QPAY_URL}/",
        callback_url="https://bridge.test/api/v1/qpay/webhook",
        webhook_secret="",
    )


@pytest.fixture
def shopify_settings() -> ShopifySettings:
    return ShopifySettings(
        shop_domain="tea-shop.myshopify.com",
        access_token="shpat_test",
        webhook_secret="",
        environment="development",
    )


@pytest.fixture
def session_factory() -> sessionmaker:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def store(session_factory: sessionmaker) -> SqlPaymentStore:
    return SqlPaymentStore(session_factory)


@pytest.fixture
def orders() -> MagicMock:
    """Fake order updater."""
    return MagicMock(spec=["mark_order_paid", "annotate_payment_failure"])
