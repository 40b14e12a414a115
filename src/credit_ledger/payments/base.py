from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..models.api_models import PAYMENT_STATUS_PAID as PAID


class HostedCheckoutRequest(BaseModel):
    price_reference: str
    quantity: int = 1
    success_url: str
    cancel_url: str
    customer_email: Optional[str] = None
    client_reference_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class HostedCheckout(BaseModel):
    provider_session_id: str
    url: str


class ProviderCheckout(BaseModel):
    """State of a hosted session as reported by the provider on request."""

    provider_session_id: str
    payment_status: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PAID


class ProviderEvent(BaseModel):
    """A provider notification whose origin has been verified."""

    id: str
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)

    def to_completion_payload(self) -> Dict[str, Any]:
        return {
            "event_id": self.id,
            "type": self.type,
            "provider_session_id": self.data.get("id"),
            "payment_status": self.data.get("payment_status"),
            "metadata": self.data.get("metadata") or {},
        }


class PaymentProvider(ABC):
    """
    Hosted payment provider. Implementations must bound every network call
    and raise PaymentFailedError / ProviderTimeoutError on failure, and
    InvalidTokenError when a notification cannot be verified.
    """

    @abstractmethod
    async def create_hosted_checkout(self, request: HostedCheckoutRequest) -> HostedCheckout: ...

    @abstractmethod
    async def retrieve_checkout(self, provider_session_id: str) -> ProviderCheckout:
        """Fetch the current payment state of a hosted session."""
        ...

    @abstractmethod
    def verify_event(self, payload: bytes, signature: Optional[str]) -> ProviderEvent: ...
