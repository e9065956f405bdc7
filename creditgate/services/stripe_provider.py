"""
Stripe Payment Provider Implementation.

Credits are sold through Stripe Checkout. The account id, package and credit
amount are attached to the session as client_reference_id and metadata and
come back on the signed checkout.session.* webhook events.

NO DICTIONARIES - All data uses strongly typed models.
"""

import json
from typing import Any

import stripe
from structlog import get_logger

from creditgate.exceptions import PaymentProviderError, WebhookVerificationError
from creditgate.services.payment_provider import (
    CheckoutIntent,
    CheckoutSession,
    WebhookEvent,
)

logger = get_logger(__name__)


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol for Stripe.
    """

    def __init__(self, api_key: str, webhook_secret: str) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        stripe.api_key = api_key

    async def create_checkout_session(self, intent: CheckoutIntent) -> CheckoutSession:
        """
        Create a Stripe Checkout Session for a credit package.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        metadata = {
            "account_id": intent.account_id,
            "package_id": intent.package_id,
            "credits": str(intent.credits),
        }
        if intent.tier is not None:
            metadata["tier"] = intent.tier

        try:
            logger.info(
                "creating_stripe_checkout_session",
                account_id=intent.account_id,
                package_id=intent.package_id,
                amount_minor=intent.amount_minor,
            )

            session = stripe.checkout.Session.create(
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": intent.currency.lower(),
                            "unit_amount": intent.amount_minor,
                            "product_data": {
                                "name": f"{intent.package_name} - {intent.credits:,} credits",
                            },
                        },
                        "quantity": 1,
                    }
                ],
                client_reference_id=intent.account_id,
                customer_email=intent.customer_email,
                metadata=metadata,
                success_url=intent.success_url,
                cancel_url=intent.cancel_url,
            )

            logger.info("stripe_checkout_session_created", session_id=session.id)

            return CheckoutSession(
                session_id=session.id,
                url=session.url or "",
                amount_minor=intent.amount_minor,
                currency=intent.currency.upper(),
            )

        except stripe.StripeError as exc:
            logger.error(
                "stripe_checkout_session_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe checkout failed: {exc}") from exc

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse Stripe webhook event.

        Args:
            payload: Raw webhook payload
            signature: Stripe-Signature header value

        Raises:
            WebhookVerificationError: If signature verification or parsing fails
        """
        try:
            stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            raise WebhookVerificationError("Malformed Stripe webhook payload") from exc

        try:
            event = json.loads(payload)
            obj = event["data"]["object"]
            metadata = obj.get("metadata") or {}

            webhook_event = WebhookEvent(
                event_id=event["id"],
                event_type=event["type"],
                external_transaction_id=obj.get("id"),
                payment_status=obj.get("payment_status") or obj.get("status"),
                payment_reference=obj.get("payment_intent"),
                amount_minor=_optional_int(obj.get("amount_total", obj.get("amount"))),
                currency=obj["currency"].upper() if obj.get("currency") else None,
                account_id=obj.get("client_reference_id") or metadata.get("account_id"),
                package_id=metadata.get("package_id"),
                credits=_optional_int(metadata.get("credits")),
                tier=metadata.get("tier"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("stripe_webhook_parsing_failed", error_type=type(exc).__name__)
            raise WebhookVerificationError("Malformed Stripe webhook payload") from exc

        logger.info(
            "stripe_webhook_verified",
            event_id=webhook_event.event_id,
            event_type=webhook_event.event_type,
        )
        return webhook_event
