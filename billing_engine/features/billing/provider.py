"""
Billing provider protocol.

Defines the interface the webhook path needs from a billing provider
(Stripe, etc.). Only inbound verification and subscription lookups are
required here; checkout and portal sessions live outside this service.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field

from billing_engine.core.errors import AppError


@dataclass(frozen=True)
class BillingEvent:
    """A verified provider event."""
    event_id: str
    event_type: str
    data: Dict[str, Any]  # the event's nested resource (data.object)
    created: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Webhook signature verification, before any parsing of the payload
    - Subscription retrieval for events that carry only a reference
    """

    def verify_event(self, headers: Dict[str, str], body: bytes) -> BillingEvent:
        """
        Verify webhook signature and parse the event envelope.

        Args:
            headers: HTTP headers (must include the signature header)
            body: Raw webhook body, exactly as received

        Returns:
            Verified event

        Raises:
            BillingWebhookError: If the signature is missing/invalid or parsing fails
        """
        ...

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """
        Fetch a subscription with line-item prices expanded.

        Raises:
            BillingProviderError: If the provider call fails
        """
        ...


class BillingProviderError(AppError):
    """Base exception for billing provider errors."""
    code = "billing_provider_error"
    status_code = 502


class BillingWebhookError(BillingProviderError):
    """Webhook could not be verified or parsed. Never retried with the same payload."""
    code = "invalid_webhook"
    status_code = 400
