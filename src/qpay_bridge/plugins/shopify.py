"""Shopify plugin module.

Order updates sent back to Shopify once a QPay payment settles, and the
helpers used to turn an ``orders/create`` webhook into invoice parameters.
"""

import base64
import hashlib
import hmac
import logging
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

import requests

from qpay_bridge.core.models import LineItem, ReceiverInfo
from qpay_bridge.core.settings import ShopifySettings

# Setup module-level logger
logger = logging.getLogger("shopify")

QPAY_GATEWAY_NAME = "qpay"


class ShopifyError(RuntimeError):
    pass


class ShopifyClient:
    """Minimal Admin REST API client for the order operations the bridge needs."""

    def __init__(self, settings: ShopifySettings, session: requests.Session | None = None) -> None:
        self.settings = settings
        self._session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        return {
            "X-Shopify-Access-Token": self.settings.access_token,
            "Content-Type": "application/json",
        }

    def _request(
        self, method: str, path: str, json: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        url = f"{self.settings.admin_api_url}{path}"
        try:
            response = self._session.request(
                method,
                url,
                json=json,
                headers=self._headers(),
                timeout=self.settings.request_timeout,
            )
        except requests.RequestException as e:
            raise ShopifyError(f"Shopify {method} {path} failed: {e}") from e
        if response.status_code >= 400:
            logger.error(
                "Shopify API error %s %s: status=%s body=%s",
                method,
                path,
                response.status_code,
                response.text,
            )
            raise ShopifyError(f"Shopify {method} {path} failed: {response.status_code}")
        try:
            return response.json()
        except ValueError:
            return {}

    def get_order(self, order_id: str) -> dict[str, Any]:
        return self._request("GET", f"/orders/{order_id}.json").get("order", {})

    def create_transaction(
        self, order_id: str, amount: int, currency: str, transaction_id: str | None = None
    ) -> dict[str, Any]:
        """Record a successful ``capture`` transaction on the order."""
        transaction: dict[str, Any] = {
            "kind": "capture",
            "status": "success",
            "amount": str(amount),
            "currency": currency,
            "gateway": "QPay",
            "source_name": "web",
            "test": self.settings.is_test,
        }
        if transaction_id:
            transaction["authorization"] = transaction_id
        data = self._request(
            "POST", f"/orders/{order_id}/transactions.json", {"transaction": transaction}
        )
        return data.get("transaction", {})

    def update_financial_status(self, order_id: str, financial_status: str = "paid") -> None:
        self._request(
            "PUT",
            f"/orders/{order_id}.json",
            {"order": {"id": order_id, "financial_status": financial_status}},
        )

    def add_order_note(self, order_id: str, note: str) -> None:
        """Append ``note`` to the order's existing note."""
        existing = (self.get_order(order_id).get("note") or "").strip()
        combined = f"{existing}\n{note}" if existing else note
        self._request("PUT", f"/orders/{order_id}.json", {"order": {"id": order_id, "note": combined}})

    def mark_order_paid(
        self, order_id: str, amount: int, currency: str, transaction_id: str | None
    ) -> None:
        logger.info("Marking Shopify order %s as paid", order_id)
        self.create_transaction(order_id, amount, currency, transaction_id)
        self.update_financial_status(order_id, "paid")
        self.add_order_note(
            order_id,
            "QPay payment confirmed\n"
            f"Payment ID: {transaction_id or 'n/a'}\n"
            f"Amount: {amount} {currency}\n"
            f"Paid at: {datetime.now(UTC).isoformat()}",
        )

    def annotate_payment_failure(self, order_id: str, invoice_id: str, reason: str) -> None:
        logger.info("Annotating Shopify order %s with QPay %s", order_id, reason)
        self.add_order_note(
            order_id,
            f"QPay payment {reason}\n"
            f"Invoice ID: {invoice_id}\n"
            f"Status updated at: {datetime.now(UTC).isoformat()}",
        )


def verify_webhook(raw_body: bytes, hmac_header: str | None, secret: str) -> bool:
    """Check the base64 ``X-Shopify-Hmac-Sha256`` header against ``raw_body``."""
    if not hmac_header:
        return False
    digest = hmac.new(secret.encode(), raw_body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode()
    return hmac.compare_digest(expected, hmac_header.strip())


def is_qpay_order(order: dict[str, Any]) -> bool:
    """Whether the customer chose QPay at checkout."""
    names = order.get("payment_gateway_names") or []
    if order.get("gateway"):
        names = [*names, order["gateway"]]
    return any(QPAY_GATEWAY_NAME in str(name).lower() for name in names)


def to_whole_units(value: Any) -> int:
    """
    Convert a Shopify money string (``"1000.00"``) to whole currency units.

    Raises:
        ValueError: If the value is not a number or has a fractional part.
    """
    try:
        amount = Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {value!r}") from e
    if amount != amount.to_integral_value():
        raise ValueError(f"Amount {value!r} has a fractional part")
    return int(amount)


def invoice_args_from_order(order: dict[str, Any]) -> dict[str, Any]:
    """
    Build ``InvoiceWorkflow.create_invoice`` keyword arguments from a Shopify order.

    Line items are passed through only when every price is a whole amount and
    they add up to the order total; otherwise (shipping, discounts, fractional
    prices) a single line covering the total is used.

    Args:
        order (dict[str, Any]): Order payload from the ``orders/create`` webhook.

    Returns:
        dict[str, Any]: Keyword arguments for ``create_invoice``.

    Raises:
        ValueError: If the order has no id or its total is not a whole amount.
    """
    if not order.get("id"):
        raise ValueError("Order payload has no id")
    amount = to_whole_units(order.get("total_price", "0"))

    line_items: list[LineItem] | None = []
    try:
        for item in order.get("line_items") or []:
            line_items.append(
                LineItem(
                    description=item.get("title") or "Product",
                    quantity=int(item.get("quantity") or 1),
                    unit_price=to_whole_units(item.get("price", "0")),
                )
            )
    except ValueError as e:
        logger.warning("Using a single invoice line for order %s: %s", order["id"], e)
        line_items = None
    if not line_items or sum(line.total for line in line_items) != amount:
        line_items = None

    customer = order.get("customer") or {}
    name = " ".join(
        part for part in (customer.get("first_name"), customer.get("last_name")) if part
    )
    receiver = ReceiverInfo(
        name=name or "Customer",
        email=customer.get("email") or order.get("email") or "",
        phone=customer.get("phone") or order.get("phone") or "",
    )

    order_number = order.get("order_number")
    return {
        "order_id": str(order["id"]),
        "amount": amount,
        "currency": order.get("currency") or "MNT",
        "line_items": line_items,
        "receiver": receiver,
        "order_number": str(order_number) if order_number is not None else None,
    }
