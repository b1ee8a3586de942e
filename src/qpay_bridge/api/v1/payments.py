"""Payment endpoints.

Thin bindings over the invoice workflow and the webhook reconciler. The
workflows do blocking HTTP and database I/O, so they run in a worker thread.
"""

import json
import logging
from functools import partial
from typing import Any, Optional

import anyio
from fastapi import APIRouter, Depends, HTTPException, Request

from qpay_bridge.core.dependencies import get_invoice_workflow, get_reconciler, get_settings
from qpay_bridge.core.invoices import InvoiceWorkflow
from qpay_bridge.core.models import CreateInvoiceRequest, InvoiceResult, PaymentStatus
from qpay_bridge.core.reconciler import WebhookReconciler
from qpay_bridge.core.results import WorkflowError
from qpay_bridge.core.settings import Provider, ShopifySettings
from qpay_bridge.plugins.shopify import invoice_args_from_order, is_qpay_order, verify_webhook

# Setup module-level logger
logger = logging.getLogger("api")

SIGNATURE_HEADERS = ("X-QPay-Signature", "Signature", "X-Signature")

router = APIRouter(tags=["payments"])


def get_shopify_settings() -> ShopifySettings:
    settings = get_settings(Provider.SHOPIFY)
    if not isinstance(settings, ShopifySettings):
        raise ValueError("Settings are not of type ShopifySettings")
    return settings


def _raise_for(error: WorkflowError) -> None:
    raise HTTPException(status_code=error.http_status, detail=error.message)


@router.post("/invoices", response_model=InvoiceResult)
async def create_invoice(
    body: CreateInvoiceRequest,
    workflow: InvoiceWorkflow = Depends(get_invoice_workflow),
) -> InvoiceResult:
    """Create a QPay invoice for an order, or return the one already open."""
    result = await anyio.to_thread.run_sync(
        partial(
            workflow.create_invoice,
            body.order_id,
            body.amount,
            currency=body.currency,
            line_items=body.line_items,
            receiver=body.receiver,
            description=body.description,
            order_number=body.order_number,
        )
    )
    if not result.is_success():
        _raise_for(result.error)
    return result.unwrap()


@router.get("/invoices/status", response_model=PaymentStatus)
async def invoice_status(
    order_id: Optional[str] = None,
    invoice_id: Optional[str] = None,
    workflow: InvoiceWorkflow = Depends(get_invoice_workflow),
) -> PaymentStatus:
    """Payment status by order id or invoice id."""
    if not order_id and not invoice_id:
        raise HTTPException(status_code=400, detail="Either order_id or invoice_id is required")
    result = await anyio.to_thread.run_sync(
        partial(workflow.check_status, order_id=order_id, invoice_id=invoice_id)
    )
    if not result.is_success():
        _raise_for(result.error)
    return result.unwrap()


@router.post("/invoices/{order_id}/cancel", response_model=PaymentStatus)
async def cancel_invoice(
    order_id: str,
    workflow: InvoiceWorkflow = Depends(get_invoice_workflow),
) -> PaymentStatus:
    result = await anyio.to_thread.run_sync(partial(workflow.cancel_invoice, order_id=order_id))
    if not result.is_success():
        _raise_for(result.error)
    return result.unwrap()


@router.get("/qpay/webhook")
async def qpay_webhook_status() -> dict[str, str]:
    """Liveness check used when registering the callback URL."""
    return {"status": "ok", "message": "QPay webhook endpoint is active"}


@router.post("/qpay/webhook")
async def qpay_webhook(
    request: Request,
    reconciler: WebhookReconciler = Depends(get_reconciler),
) -> dict[str, Any]:
    """
    Receive a QPay payment notification.

    The signature is checked against the raw body, so the body is read as
    bytes before any parsing.

    Args:
        request (Request): The incoming request object.
        reconciler (WebhookReconciler): Notification handler.

    Returns:
        dict[str, Any]: Acknowledgement. Notifications for unknown invoices
        are acknowledged so the gateway stops retrying them.

    Raises:
        HTTPException: 401 on a bad signature, 400 on a malformed payload.
    """
    raw_body = await request.body()
    signature = next(
        (request.headers[name] for name in SIGNATURE_HEADERS if name in request.headers), None
    )
    result = await anyio.to_thread.run_sync(reconciler.handle_notification, raw_body, signature)
    if not result.is_success():
        error = result.error
        if error.acknowledge:
            return {"success": True, "message": error.message, "invoice_id": error.invoice_id}
        raise HTTPException(status_code=error.http_status, detail=error.message)

    ack = result.unwrap()
    return {
        "success": True,
        "message": ack.message,
        "invoice_id": ack.invoice_id,
        "status": ack.status.value,
        "changed": ack.changed,
    }


@router.post("/shopify/orders/create")
async def shopify_order_created(
    request: Request,
    workflow: InvoiceWorkflow = Depends(get_invoice_workflow),
    settings: ShopifySettings = Depends(get_shopify_settings),
) -> dict[str, Any]:
    """Issue a QPay invoice when a Shopify order is placed with QPay."""
    raw_body = await request.body()
    if settings.webhook_secret:
        if not verify_webhook(
            raw_body, request.headers.get("X-Shopify-Hmac-Sha256"), settings.webhook_secret
        ):
            logger.error("Invalid Shopify webhook signature")
            raise HTTPException(status_code=401, detail="Invalid webhook signature")
    else:
        logger.warning("No Shopify webhook secret configured, skipping verification")

    try:
        order = json.loads(raw_body)
    except ValueError as e:
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from e
    if not isinstance(order, dict):
        raise HTTPException(status_code=400, detail="Invalid order payload")

    logger.info(
        "Shopify order created: id=%s gateways=%s",
        order.get("id"),
        order.get("payment_gateway_names"),
    )
    if not is_qpay_order(order):
        return {"success": True, "message": "Not a QPay order, ignored"}

    try:
        invoice_args = invoice_args_from_order(order)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    result = await anyio.to_thread.run_sync(partial(workflow.create_invoice, **invoice_args))
    if not result.is_success():
        _raise_for(result.error)
    invoice = result.unwrap()
    return {
        "success": True,
        "message": "Invoice created" if invoice.created else "Invoice already exists",
        "order_id": invoice.order_id,
        "invoice_id": invoice.invoice_id,
    }
