"""
Payment Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class CheckoutIntent:
    """
    Provider-agnostic checkout request.

    The account id and credit amount travel with the checkout so the payment
    confirmation can be reconciled without trusting client input.
    """

    account_id: str
    package_id: str
    package_name: str
    credits: int
    amount_minor: int
    currency: str
    customer_email: str | None
    success_url: str
    cancel_url: str
    tier: str | None = None


@dataclass(frozen=True)
class CheckoutSession:
    """Hosted checkout created by the provider."""

    session_id: str
    url: str
    amount_minor: int
    currency: str


@dataclass(frozen=True)
class WebhookEvent:
    """
    Provider-agnostic webhook event.

    external_transaction_id identifies the payment across deliveries; it is
    the idempotency key for reconciliation.
    """

    event_id: str
    event_type: str
    external_transaction_id: str | None
    payment_status: str | None
    payment_reference: str | None
    amount_minor: int | None
    currency: str | None
    account_id: str | None
    package_id: str | None
    credits: int | None
    tier: str | None


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Any payment provider must implement this interface so reconciliation
    stays provider-agnostic.
    """

    async def create_checkout_session(self, intent: CheckoutIntent) -> CheckoutSession:
        """
        Create a hosted checkout session.

        Raises:
            PaymentProviderError: If the provider call fails
        """
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Authenticate and parse a webhook delivery.

        Raises:
            WebhookVerificationError: If the signature does not verify
        """
        ...
