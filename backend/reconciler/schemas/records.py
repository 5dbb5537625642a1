"""Records written by the state machines and read by admin dashboards."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    # Provider states outside the core lifecycle, stored verbatim
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"
    PAUSED = "paused"


class SubscriptionRecord(BaseModel):
    """One per user; overwritten by every subscription event (last event wins)."""

    internal_user_id: str
    subscription_id: str
    customer_id: str | None = None
    status: SubscriptionStatus
    plan_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    trial_end: datetime | None = None
    updated_at: datetime


class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PaymentRecord(BaseModel):
    id: str
    user_id: str
    invoice_id: str
    subscription_id: str | None = None
    amount: int
    currency: str | None = None
    status: PaymentStatus
    attempt_count: int | None = None
    occurred_at: datetime | None = None
    created_at: datetime


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class MarketplaceTransaction(BaseModel):
    """Created upstream when the payment intent is created; finalized by webhooks."""

    id: str
    status: TransactionStatus = TransactionStatus.PENDING
    product_id: str
    buyer_id: str
    seller_id: str
    amount: int
    platform_fee: int = 0
    currency: str = "usd"
    payment_intent_id: str | None = None
    failure_reason: str | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    refunded_at: datetime | None = None
    transfer_id: str | None = None


class PayoutStatus(str, Enum):
    PENDING = "pending"
    IN_TRANSIT = "in_transit"
    PAID = "paid"
    FAILED = "failed"
    CANCELED = "canceled"


class PayoutRecord(BaseModel):
    provider_id: str
    status: PayoutStatus
    amount: int
    currency: str | None = None
    destination: str | None = None
    account_id: str | None = None
    arrival_date: datetime | None = None
    failure_code: str | None = None
    failure_message: str | None = None
    created_at: datetime
    updated_at: datetime


class TransferRecord(BaseModel):
    provider_id: str
    status: str = "created"
    amount: int
    currency: str | None = None
    destination: str | None = None
    transaction_id: str | None = None
    reversed: bool = False
    amount_reversed: int = 0
    reversals: list[dict] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class ExpertStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class ConnectedAccountStatus(BaseModel):
    """Mirror of a seller's connected account, patched field by field."""

    account_id: str
    charges_enabled: bool | None = None
    payouts_enabled: bool | None = None
    details_submitted: bool | None = None
    capabilities: dict[str, str] = Field(default_factory=dict)


class NotificationLedgerEntry(BaseModel):
    """Write-once marker that the notification for semantic_key was sent."""

    semantic_key: str
    recipient: str
    sent_at: datetime


class EventRecord(BaseModel):
    provider_id: str
    type: str
    livemode: bool = False
    received_at: datetime
    processed_at: datetime | None = None
    attempts: int = 1
    outcome: str | None = None
    last_error: str | None = None
