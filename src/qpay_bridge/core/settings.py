"""
Settings for the QPay bridge application.
"""

import os
from enum import Enum

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

QPAY_API_URL_PRODUCTION = "https://merchant.qpay.mn/v2"
QPAY_API_URL_SANDBOX = "https://merchant-sandbox.qpay.mn/v2"
SHOPIFY_API_VERSION = "2023-10"

load_dotenv()


QPAY_CALLBACK_URL = os.getenv(
    "QPAY_CALLBACK_URL", "http://localhost:8000/api/v1/qpay/webhook"
)


class Provider(Enum):
    """
    Provider for the bridge application.
    """

    QPAY = "QPAY"
    SHOPIFY = "SHOPIFY"


class QPaySettings(BaseSettings):
    """
    Settings for the QPay merchant API.
    """

    username: str = ""
    password: str = ""
    invoice_code: str = ""
    api_url: str = QPAY_API_URL_PRODUCTION
    callback_url: str = QPAY_CALLBACK_URL
    webhook_secret: str = ""
    request_timeout: float = 30.0
    token_safety_margin: int = 300
    max_auth_attempts: int = 2
    default_currency: str = "MNT"
    sender_branch_code: str = "ONLINE"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="QPAY_",
        extra="ignore",
    )

    @property
    def base_url(self) -> str:
        """API URL without a trailing slash."""
        return self.api_url.strip().rstrip("/")


class ShopifySettings(BaseSettings):
    """
    Settings for the Shopify Admin API.
    """

    shop_domain: str = ""
    access_token: str = ""
    api_version: str = SHOPIFY_API_VERSION
    webhook_secret: str = ""
    environment: str = "development"
    request_timeout: float = 30.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SHOPIFY_",
        extra="ignore",
    )

    @property
    def admin_api_url(self) -> str:
        """Base URL of the Admin REST API for the configured shop."""
        return f"https://{self.shop_domain}/admin/api/{self.api_version}"

    @property
    def is_test(self) -> bool:
        """Transactions outside production are flagged as test transactions."""
        return self.environment != "production"
