"""
Stripe billing provider implementation.

Implements BillingProvider protocol using the Stripe SDK.
The signature is checked against the raw body before it is parsed.
"""
import json
from typing import Dict, Any, Optional
import stripe

from billing_engine.core.config import settings
from billing_engine.features.billing.provider import (
    BillingEvent,
    BillingProviderError,
    BillingWebhookError,
)


SIGNATURE_HEADER = "stripe-signature"


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        tolerance: Optional[int] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
            tolerance: Allowed signature timestamp age in seconds
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.tolerance = tolerance if tolerance is not None else settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS

        if self.secret_key:
            stripe.api_key = self.secret_key

    def verify_event(self, headers: Dict[str, str], body: bytes) -> BillingEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get(SIGNATURE_HEADER) or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            payload = body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise BillingWebhookError(f"Invalid payload encoding: {e}")

        try:
            stripe.WebhookSignature.verify_header(
                payload, sig_header, self.webhook_secret, self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")

        return self._parse_event(event)

    def _parse_event(self, event: Any) -> BillingEvent:
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise BillingWebhookError("Invalid payload: missing event id or type")
        data = (event.get("data") or {}).get("object") or {}
        return BillingEvent(
            event_id=event["id"],
            event_type=event["type"],
            data=data,
            created=event.get("created"),
            raw=event,
        )

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Fetch a Stripe subscription with prices and products expanded."""
        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")
        try:
            subscription = stripe.Subscription.retrieve(
                subscription_id,
                expand=["items.data.price.product"],
                api_key=self.secret_key,
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription retrieval failed: {e}")
        return json.loads(str(subscription))
