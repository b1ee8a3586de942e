"""
Database models for payment tracking and the pydantic models exchanged with
the workflows and the HTTP layer.
"""

import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from qpay_bridge.core.database import Base


class PaymentState(str, Enum):
    """Lifecycle of a payment record. ``paid`` and ``failed`` are terminal."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentState.PENDING


class OrderPayment(Base):
    """
    Tracks the QPay invoice issued for a Shopify order.

    Attributes:
        order_id (str): Shopify order identifier.
        invoice_id (str): QPay invoice identifier, unique.
        amount (int): Invoice amount in whole currency units.
        status (str): One of ``pending``, ``paid``, ``failed``.
        paid_at (datetime): Set if and only if the status is ``paid``.

    At most one record per order may be in a state other than ``failed``;
    failed records are kept as an audit trail.
    """

    __tablename__ = "order_payments"
    __table_args__ = (
        Index(
            "uq_order_payments_open_order_id",
            "order_id",
            unique=True,
            sqlite_where=text("status != 'failed'"),
            postgresql_where=text("status != 'failed'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    order_number: Mapped[str | None] = mapped_column(String, nullable=True)
    invoice_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="MNT", nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=PaymentState.PENDING.value)
    qr_text: Mapped[str] = mapped_column(Text, default="", nullable=False)
    qr_image: Mapped[str | None] = mapped_column(Text, nullable=True)
    short_url: Mapped[str | None] = mapped_column(String, nullable=True)
    deeplinks: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    customer_email: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String, nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    paid_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    paid_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class WebhookEvent(Base):
    """Inbound notifications and downstream failures kept for manual follow-up."""

    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    reference: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    payload: Mapped[str] = mapped_column(Text, default="", nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=text("CURRENT_TIMESTAMP")
    )


class DeepLink(BaseModel):
    """Bank application link returned with a QPay invoice."""

    name: Optional[str] = None
    description: Optional[str] = None
    logo: Optional[str] = None
    link: Optional[str] = None


class PaymentRecord(BaseModel):
    """Immutable snapshot of an ``OrderPayment`` row."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    order_id: str
    order_number: Optional[str] = None
    invoice_id: str
    amount: int
    currency: str
    status: PaymentState
    qr_text: str = ""
    qr_image: Optional[str] = None
    short_url: Optional[str] = None
    deeplinks: List[DeepLink] = Field(default_factory=list)
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    transaction_id: Optional[str] = None
    paid_amount: Optional[int] = None
    created_at: Optional[datetime.datetime] = None
    paid_at: Optional[datetime.datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class LineItem(BaseModel):
    """One invoice line. Prices are whole currency units."""

    description: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)
    unit_price: int = Field(..., ge=0)

    @property
    def total(self) -> int:
        return self.quantity * self.unit_price


class ReceiverInfo(BaseModel):
    """Invoice receiver details; every field has an explicit default."""

    name: str = "Customer"
    email: str = ""
    phone: str = ""

    @property
    def receiver_code(self) -> str:
        return self.phone or "terminal"


class InvoiceRequest(BaseModel):
    """A validated invoice ready to be sent to the gateway."""

    order_id: str
    amount: int
    currency: str
    description: str
    callback_url: str
    receiver: ReceiverInfo
    lines: List[LineItem]

    def to_gateway_payload(self, sender_branch_code: str) -> dict[str, Any]:
        """Render the ``POST /invoice`` body expected by QPay."""
        return {
            "sender_invoice_no": self.order_id,
            "sender_branch_code": sender_branch_code,
            "invoice_receiver_code": self.receiver.receiver_code,
            "invoice_description": self.description,
            "amount": self.amount,
            "callback_url": self.callback_url,
            "allow_partial": False,
            "allow_exceed": False,
            "invoice_receiver_data": {
                "name": self.receiver.name,
                "email": self.receiver.email,
                "phone": self.receiver.phone,
            },
            "lines": [
                {
                    "line_description": line.description,
                    "line_quantity": str(line.quantity),
                    "line_unit_price": str(line.unit_price),
                }
                for line in self.lines
            ],
        }


class InvoiceResult(BaseModel):
    """What the caller needs to present an invoice to the customer."""

    order_id: str
    invoice_id: str
    amount: int
    currency: str
    status: PaymentState
    qr_text: str
    qr_image: Optional[str] = None
    short_url: Optional[str] = None
    deeplinks: List[DeepLink] = Field(default_factory=list)
    created: bool = Field(True, description="False when an existing invoice was returned")

    @classmethod
    def from_record(cls, record: PaymentRecord, created: bool) -> "InvoiceResult":
        return cls(
            order_id=record.order_id,
            invoice_id=record.invoice_id,
            amount=record.amount,
            currency=record.currency,
            status=record.status,
            qr_text=record.qr_text,
            qr_image=record.qr_image,
            short_url=record.short_url,
            deeplinks=record.deeplinks,
            created=created,
        )


class PaymentStatus(BaseModel):
    """Payment status as reported to callers of the status check."""

    order_id: str
    invoice_id: str
    status: PaymentState
    amount: int
    currency: str
    paid_at: Optional[datetime.datetime] = None
    transaction_id: Optional[str] = None
    gateway_status: Optional[str] = None
    warning: Optional[str] = None

    @classmethod
    def from_record(cls, record: PaymentRecord, **extra: Any) -> "PaymentStatus":
        return cls(
            order_id=record.order_id,
            invoice_id=record.invoice_id,
            status=record.status,
            amount=record.amount,
            currency=record.currency,
            paid_at=record.paid_at,
            transaction_id=record.transaction_id,
            **extra,
        )


class CreateInvoiceRequest(BaseModel):
    """Request body of the invoice creation endpoint."""

    order_id: str = Field(..., min_length=1)
    amount: int
    currency: str = "MNT"
    order_number: Optional[str] = None
    description: Optional[str] = None
    line_items: Optional[List[LineItem]] = None
    receiver: Optional[ReceiverInfo] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "order_id": "5403940602013",
                "amount": 1000,
                "currency": "MNT",
                "order_number": "1001",
                "line_items": [{"description": "Tea", "quantity": 2, "unit_price": 500}],
                "receiver": {"name": "Bat", "email": "bat@example.mn", "phone": "99112233"},
            }
        }
    }
