"""
FastAPI dependencies for the QPay bridge application.
"""

import logging
from datetime import timedelta
from functools import lru_cache
from typing import Union

from .database import SessionLocal
from .invoices import InvoiceWorkflow
from .reconciler import WebhookReconciler
from .repository import PaymentStore, SqlPaymentStore
from .settings import Provider, QPaySettings, ShopifySettings
from .tokens import TokenStore
from ..plugins.qpay import QPayClient
from ..plugins.shopify import ShopifyClient

# Setup logger
logger = logging.getLogger("dependencies")


@lru_cache()
def get_settings(provider: Provider) -> Union[QPaySettings, ShopifySettings]:
    """
    Get the settings for a provider.
    """
    if provider == Provider.QPAY:
        settings = QPaySettings()  # Reads QPAY_* vars from .env
        logger.info("get_settings returning QPaySettings with API URL: %s", settings.base_url)
        return settings
    elif provider == Provider.SHOPIFY:
        return ShopifySettings()  # Reads SHOPIFY_* vars from .env
    else:
        raise ValueError(f"Invalid provider: {provider}")


def _qpay_settings() -> QPaySettings:
    settings = get_settings(Provider.QPAY)
    if not isinstance(settings, QPaySettings):
        raise ValueError("Settings are not of type QPaySettings")
    return settings


def _shopify_settings() -> ShopifySettings:
    settings = get_settings(Provider.SHOPIFY)
    if not isinstance(settings, ShopifySettings):
        raise ValueError("Settings are not of type ShopifySettings")
    return settings


@lru_cache()
def get_token_store() -> TokenStore:
    """
    Process-wide QPay access token cache.
    """
    return TokenStore(safety_margin=timedelta(seconds=_qpay_settings().token_safety_margin))


@lru_cache()
def get_qpay_client() -> QPayClient:
    """
    Injection method to get the QPay client.
    """
    settings = _qpay_settings()
    logger.info("Creating QPay client for %s", settings.base_url)
    return QPayClient.from_settings(settings, get_token_store())


@lru_cache()
def get_shopify_client() -> ShopifyClient:
    """
    Injection method to get the Shopify client.
    """
    settings = _shopify_settings()
    logger.info("Creating Shopify client for shop %s", settings.shop_domain)
    return ShopifyClient(settings)


@lru_cache()
def get_payment_store() -> PaymentStore:
    return SqlPaymentStore(SessionLocal)


@lru_cache()
def get_invoice_workflow() -> InvoiceWorkflow:
    return InvoiceWorkflow(
        gateway=get_qpay_client(),
        store=get_payment_store(),
        orders=get_shopify_client(),
        settings=_qpay_settings(),
    )


@lru_cache()
def get_reconciler() -> WebhookReconciler:
    return WebhookReconciler(
        store=get_payment_store(),
        orders=get_shopify_client(),
        webhook_secret=_qpay_settings().webhook_secret,
        gateway=get_qpay_client(),
    )
