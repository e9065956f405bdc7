"""
API Routes - Session exchange, account reads, credit purchases and health.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from creditgate.api.dependencies import (
    UserIdentity,
    get_current_account,
    get_payment_provider,
    get_usage_recorder,
    get_user_from_google_token,
)
from creditgate.config import settings
from creditgate.db.session import get_read_db, get_write_db, ping_database
from creditgate.exceptions import (
    InvalidWebhookEventError,
    ResourceNotFoundError,
    WebhookVerificationError,
)
from creditgate.models.api import (
    BalanceResponse,
    CheckoutRequest,
    CheckoutResponse,
    CreditPackageResponse,
    CreditTransactionResponse,
    HealthResponse,
    PackageListResponse,
    PurchaseListResponse,
    PurchaseResponse,
    SessionResponse,
    TransactionKind,
    TransactionListResponse,
    UsageStatsResponse,
    WebhookAckResponse,
)
from creditgate.models.domain import AccountData, PurchaseMetadata
from creditgate.observability.metrics import metrics
from creditgate.policy import GatewayPolicy, get_policy
from creditgate.services.accounts import AccountService
from creditgate.services.ledger import CreditLedger
from creditgate.services.payment_provider import CheckoutIntent, PaymentProvider
from creditgate.services.payment_reconciler import PaymentReconciler
from creditgate.services.usage_recorder import UsageRecorder

logger = get_logger(__name__)

router = APIRouter()

# Checkout events that may carry a completed payment
PAYMENT_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")


# =============================================================================
# Session / Account
# =============================================================================


@router.post("/v1/session", response_model=SessionResponse)
async def create_session(
    user: UserIdentity = Depends(get_user_from_google_token),
    db: AsyncSession = Depends(get_write_db),
) -> SessionResponse:
    """
    Exchange a Google ID token for an account.

    The first exchange creates the account and grants the signup bonus.
    """
    account, created = await AccountService(db).get_or_create_account(
        user.to_account_identity(), email=user.email, display_name=user.name
    )
    return SessionResponse(
        account_id=account.account_id,
        email=account.email,
        display_name=account.display_name,
        credit_balance=account.credit_balance,
        subscription_tier=account.subscription_tier,
        created=created,
    )


@router.get("/v1/account/balance", response_model=BalanceResponse)
async def get_balance(account: AccountData = Depends(get_current_account)) -> BalanceResponse:
    """Current balance and lifetime totals."""
    return BalanceResponse(
        account_id=account.account_id,
        credit_balance=account.credit_balance,
        total_purchased=account.total_purchased,
        total_requests=account.total_requests,
        subscription_tier=account.subscription_tier,
    )


@router.get("/v1/account/transactions", response_model=TransactionListResponse)
async def list_transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    account: AccountData = Depends(get_current_account),
    db: AsyncSession = Depends(get_read_db),
) -> TransactionListResponse:
    """Ledger entries, newest first."""
    rows, total = await CreditLedger(db).list_transactions(account.account_id, limit, offset)
    return TransactionListResponse(
        transactions=[
            CreditTransactionResponse(
                transaction_id=row.id,
                delta=row.delta,
                resulting_balance=row.resulting_balance,
                kind=TransactionKind(row.kind),
                reference=row.reference,
                description=row.description,
                created_at=row.created_at,
            )
            for row in rows
        ],
        total_count=total,
        has_more=offset + len(rows) < total,
    )


@router.get("/v1/account/purchases", response_model=PurchaseListResponse)
async def list_purchases(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    account: AccountData = Depends(get_current_account),
    db: AsyncSession = Depends(get_read_db),
) -> PurchaseListResponse:
    purchases, total = await AccountService(db).list_purchases(account.account_id, limit, offset)
    return PurchaseListResponse(
        purchases=[
            PurchaseResponse(
                purchase_id=p.purchase_id,
                package=p.package,
                amount_minor=p.amount_minor,
                currency=p.currency,
                credits_granted=p.credits_granted,
                status=p.status,
                created_at=p.created_at,
                completed_at=p.completed_at,
            )
            for p in purchases
        ],
        total_count=total,
    )


@router.get("/v1/account/usage", response_model=UsageStatsResponse)
async def get_usage(
    period_days: int = Query(30, ge=1, le=365),
    account: AccountData = Depends(get_current_account),
    db: AsyncSession = Depends(get_read_db),
) -> UsageStatsResponse:
    """Request totals per platform over the last period_days."""
    return await AccountService(db).get_usage_stats(account.account_id, period_days)


# =============================================================================
# Credits / Checkout
# =============================================================================


@router.get("/v1/credits/packages", response_model=PackageListResponse)
async def list_packages(policy: GatewayPolicy = Depends(get_policy)) -> PackageListResponse:
    return PackageListResponse(
        packages=[
            CreditPackageResponse(
                package_id=p.package_id,
                name=p.name,
                price_minor=p.price_minor,
                currency=p.currency,
                credits=p.credits,
                tier=p.tier,
            )
            for p in policy.packages
        ]
    )


@router.post("/v1/credits/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    account: AccountData = Depends(get_current_account),
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    policy: GatewayPolicy = Depends(get_policy),
) -> CheckoutResponse:
    """
    Start a hosted checkout for a credit package.

    A pending purchase is recorded under the checkout session id; the
    payment webhook completes it.
    """
    package = policy.package(body.package_id)
    if package is None:
        raise ResourceNotFoundError("Credit package", body.package_id)

    checkout = await provider.create_checkout_session(
        CheckoutIntent(
            account_id=str(account.account_id),
            package_id=package.package_id,
            package_name=package.name,
            credits=package.credits,
            amount_minor=package.price_minor,
            currency=package.currency,
            customer_email=account.email,
            success_url=settings.checkout_success_url,
            cancel_url=settings.checkout_cancel_url,
            tier=package.tier,
        )
    )

    purchase = await PaymentReconciler(db, policy=policy).create_pending(
        checkout.session_id,
        account.account_id,
        package.credits,
        PurchaseMetadata(
            package=package.package_id,
            amount_minor=package.price_minor,
            currency=package.currency,
            tier=package.tier,
        ),
    )

    return CheckoutResponse(
        purchase_id=purchase.purchase_id,
        checkout_session_id=checkout.session_id,
        checkout_url=checkout.url,
        package_id=package.package_id,
        credits=package.credits,
        price_minor=package.price_minor,
        currency=package.currency,
    )


@router.post("/v1/webhooks/stripe", response_model=WebhookAckResponse)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    policy: GatewayPolicy = Depends(get_policy),
) -> WebhookAckResponse:
    """
    Handle Stripe webhook events.

    A bad signature is rejected before anything is read or written. A
    payment that was already applied is acknowledged with applied=false so
    Stripe stops retrying.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    try:
        event = await provider.verify_webhook(payload, signature)
    except WebhookVerificationError:
        metrics.webhook_signature_failures_total.inc()
        logger.warning(
            "security_webhook_signature_rejected",
            provider="stripe",
            client_ip=request.client.host if request.client else None,
            signature_present=bool(signature),
        )
        raise

    if event.event_type not in PAYMENT_EVENTS:
        metrics.record_webhook_event(event.event_type, "ignored")
        logger.info("stripe_webhook_ignored", event_id=event.event_id, event_type=event.event_type)
        return WebhookAckResponse()

    if event.payment_status != "paid":
        metrics.record_webhook_event(event.event_type, "unpaid")
        logger.info(
            "stripe_checkout_not_paid",
            event_id=event.event_id,
            payment_status=event.payment_status,
        )
        return WebhookAckResponse(applied=False)

    if not event.external_transaction_id or not event.account_id or not event.credits:
        metrics.record_webhook_event(event.event_type, "invalid")
        logger.error("stripe_webhook_missing_metadata", event_id=event.event_id)
        raise InvalidWebhookEventError(event.event_id, "missing account metadata")

    try:
        account_id = UUID(event.account_id)
    except ValueError as exc:
        metrics.record_webhook_event(event.event_type, "invalid")
        logger.error("stripe_webhook_invalid_account", event_id=event.event_id)
        raise InvalidWebhookEventError(event.event_id, "invalid account reference") from exc

    result = await PaymentReconciler(db, policy=policy).apply(
        event.external_transaction_id,
        account_id,
        event.credits,
        PurchaseMetadata(
            package=event.package_id,
            amount_minor=event.amount_minor or 0,
            currency=event.currency or "USD",
            payment_reference=event.payment_reference,
            tier=event.tier,
        ),
    )

    metrics.record_webhook_event(event.event_type, "applied" if result.applied else "duplicate")
    logger.info(
        "stripe_webhook_processed",
        event_id=event.event_id,
        external_transaction_id=event.external_transaction_id,
        applied=result.applied,
    )
    return WebhookAckResponse(applied=result.applied)


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(
    recorder: UsageRecorder = Depends(get_usage_recorder),
) -> HealthResponse | JSONResponse:
    """
    Health check for load balancer.

    Verifies database connectivity and reports the usage recorder backlog.
    """
    try:
        await ping_database()
        database = "up"
    except Exception as exc:
        logger.warning("health_database_unreachable", error_type=type(exc).__name__)
        database = "down"

    response = HealthResponse(
        status="healthy" if database == "up" and recorder.running else "degraded",
        database=database,
        usage_recorder=recorder.status,
        version=settings.api_version,
    )
    if database == "down":
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=response.model_dump()
        )
    return response
