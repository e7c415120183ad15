"""PayPal webhook payloads as a tagged union, validated on ingestion.

Only the fields the handlers read are modelled; everything else is kept
(``extra="allow"``) and the raw payload is stored verbatim anyway.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter

CAPTURE_COMPLETED = "PAYMENT.CAPTURE.COMPLETED"
CAPTURE_DENIED = "PAYMENT.CAPTURE.DENIED"
CAPTURE_DECLINED = "PAYMENT.CAPTURE.DECLINED"

SUBSCRIPTION_CREATED = "BILLING.SUBSCRIPTION.CREATED"
SUBSCRIPTION_ACTIVATED = "BILLING.SUBSCRIPTION.ACTIVATED"
SUBSCRIPTION_CANCELLED = "BILLING.SUBSCRIPTION.CANCELLED"
SUBSCRIPTION_SUSPENDED = "BILLING.SUBSCRIPTION.SUSPENDED"
SUBSCRIPTION_EXPIRED = "BILLING.SUBSCRIPTION.EXPIRED"
SUBSCRIPTION_PAYMENT_FAILED = "BILLING.SUBSCRIPTION.PAYMENT.FAILED"

CAPTURE_EVENT_TYPES = frozenset({CAPTURE_COMPLETED, CAPTURE_DENIED, CAPTURE_DECLINED})
SUBSCRIPTION_EVENT_TYPES = frozenset({
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_ACTIVATED,
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_SUSPENDED,
    SUBSCRIPTION_EXPIRED,
    SUBSCRIPTION_PAYMENT_FAILED,
})


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")


class Money(_Payload):
    currency_code: str = "USD"
    value: str = "0"


class RelatedIds(_Payload):
    order_id: str | None = None


class SupplementaryData(_Payload):
    related_ids: RelatedIds = Field(default_factory=RelatedIds)


class CaptureResource(_Payload):
    id: str | None = None
    status: str | None = None
    amount: Money | None = None
    supplementary_data: SupplementaryData = Field(default_factory=SupplementaryData)

    @property
    def order_id(self) -> str | None:
        return self.supplementary_data.related_ids.order_id


class LastPayment(_Payload):
    amount: Money | None = None
    time: datetime | None = None


class BillingInfo(_Payload):
    last_payment: LastPayment | None = None


class Subscriber(_Payload):
    email_address: str | None = None


class SubscriptionResource(_Payload):
    id: str | None = None
    status: str | None = None
    plan_id: str | None = None
    subscriber: Subscriber | None = None
    billing_info: BillingInfo | None = None


class _Event(_Payload):
    id: str = Field(min_length=1)
    event_type: str = Field(min_length=1)
    resource_type: str | None = None
    summary: str | None = None
    create_time: datetime | None = None

    @property
    def resource_id(self) -> str | None:
        resource = self.resource
        if isinstance(resource, dict):
            return resource.get("id")
        return resource.id


class CaptureEvent(_Event):
    kind: Literal["capture"] = "capture"
    event_type: Literal["PAYMENT.CAPTURE.COMPLETED", "PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED"]
    resource: CaptureResource = Field(default_factory=CaptureResource)


class SubscriptionEvent(_Event):
    kind: Literal["subscription"] = "subscription"
    event_type: Literal[
        "BILLING.SUBSCRIPTION.CREATED",
        "BILLING.SUBSCRIPTION.ACTIVATED",
        "BILLING.SUBSCRIPTION.CANCELLED",
        "BILLING.SUBSCRIPTION.SUSPENDED",
        "BILLING.SUBSCRIPTION.EXPIRED",
        "BILLING.SUBSCRIPTION.PAYMENT.FAILED",
    ]
    resource: SubscriptionResource = Field(default_factory=SubscriptionResource)


class UnknownEvent(_Event):
    kind: Literal["unknown"] = "unknown"
    resource: dict[str, Any] = Field(default_factory=dict)


def _event_tag(value: Any) -> str:
    event_type = value.get("event_type") if isinstance(value, dict) else getattr(value, "event_type", None)
    if event_type in CAPTURE_EVENT_TYPES:
        return "capture"
    if event_type in SUBSCRIPTION_EVENT_TYPES:
        return "subscription"
    return "unknown"


WebhookEvent = Annotated[
    Union[
        Annotated[CaptureEvent, Tag("capture")],
        Annotated[SubscriptionEvent, Tag("subscription")],
        Annotated[UnknownEvent, Tag("unknown")],
    ],
    Discriminator(_event_tag),
]

_event_adapter = TypeAdapter(WebhookEvent)


def parse_event(payload: dict[str, Any]) -> CaptureEvent | SubscriptionEvent | UnknownEvent:
    """Validate a decoded webhook body. Raises ``pydantic.ValidationError``."""
    return _event_adapter.validate_python(payload)
