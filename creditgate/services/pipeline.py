"""
Gateway Pipeline - One metered request from receipt to usage log.

    RECEIVED -> RATE_CHECKED -> AUTHENTICATED -> EXECUTED -> DEBITED -> LOGGED

Any stage may end the request in REJECTED with the reason code of the
GatewayError that stopped it. Credits are debited only after the protected
handler returned a result; a handler failure, timeout or cancellation never
reaches the ledger. Billing and logging are ordinary steps here, and
post-handlers receive the final outcome once it is decided.

NO DICTIONARIES - Requests and outcomes are typed dataclasses.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Protocol
from uuid import UUID

from argon2 import PasswordHasher
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from creditgate.config import settings
from creditgate.db.models import utc_now
from creditgate.exceptions import (
    GatewayError,
    NoCreditError,
    ThrottleError,
    UnknownEndpointError,
    UpstreamError,
    UpstreamTimeoutError,
)
from creditgate.models.api import TransactionKind
from creditgate.models.domain import LedgerMetadata, UsageEntry, VerifiedKey
from creditgate.observability.logging import log_context
from creditgate.observability.metrics import metrics, track_duration
from creditgate.policy import EndpointPolicy, GatewayPolicy, get_policy
from creditgate.services.api_key import KeyFormat, KeyVerifier
from creditgate.services.extraction import ExtractionResult
from creditgate.services.ledger import CreditLedger
from creditgate.services.rate_limiter import RateLimitDecision, RateLimiter
from creditgate.services.usage_recorder import UsageRecorder

logger = get_logger(__name__)

SessionFactory = Callable[[], AsyncSession]


class RequestState(Enum):
    """Lifecycle of a single gateway request."""

    RECEIVED = "received"
    RATE_CHECKED = "rate_checked"
    AUTHENTICATED = "authenticated"
    EXECUTED = "executed"
    DEBITED = "debited"
    LOGGED = "logged"
    REJECTED = "rejected"


@dataclass(frozen=True)
class GatewayRequest:
    """Inbound metered request, as seen by the pipeline."""

    request_id: str
    platform: str
    operation: str
    presented_key: str | None
    client_ip: str | None = None
    params: dict[str, str] = field(default_factory=dict)

    @property
    def endpoint(self) -> str:
        return f"/v1/extract/{self.platform}/{self.operation}"


@dataclass(frozen=True)
class GatewayOutcome:
    """Final state of a request. error is set exactly when state is REJECTED."""

    request: GatewayRequest
    state: RequestState
    status_code: int
    reason: str | None = None
    stage: str | None = None
    error: GatewayError | None = None
    account_id: UUID | None = None
    key_id: UUID | None = None
    result: ExtractionResult | None = None
    credits_charged: int = 0
    credits_remaining: int | None = None
    latency_ms: int = 0
    rate_limit: RateLimitDecision | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


Handler = Callable[[GatewayRequest], Awaitable[ExtractionResult]]


class PostHandler(Protocol):
    """Extension point invoked with every decided outcome."""

    async def on_outcome(self, outcome: GatewayOutcome) -> None: ...


class UsageLoggingPostHandler:
    """Queues a request log entry for every outcome tied to an account."""

    def __init__(self, recorder: UsageRecorder) -> None:
        self.recorder = recorder

    async def on_outcome(self, outcome: GatewayOutcome) -> None:
        if outcome.account_id is None:
            return
        self.recorder.record(
            UsageEntry(
                account_id=outcome.account_id,
                api_key_id=outcome.key_id,
                endpoint=outcome.request.endpoint,
                platform=outcome.request.platform,
                operation=outcome.request.operation,
                outcome="success" if outcome.succeeded else (outcome.reason or "rejected"),
                status_code=outcome.status_code,
                latency_ms=outcome.latency_ms,
                credits_charged=outcome.credits_charged,
                request_id=outcome.request.request_id,
                created_at=utc_now(),
            )
        )


class _Rejected(Exception):
    """Carries a GatewayError out of a stage together with the stage name."""

    def __init__(self, stage: str, error: GatewayError) -> None:
        self.stage = stage
        self.error = error
        super().__init__(stage)


class GatewayPipeline:
    """
    Runs the metered request state machine.

    Each database stage opens its own short session from session_factory, so
    no connection is held while the upstream handler runs.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        rate_limiter: RateLimiter,
        policy: GatewayPolicy | None = None,
        recorder: UsageRecorder | None = None,
        post_handlers: Sequence[PostHandler] | None = None,
        upstream_timeout: float | None = None,
        key_format: KeyFormat | None = None,
        password_hasher: PasswordHasher | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.rate_limiter = rate_limiter
        self.policy = policy or get_policy()
        self.recorder = recorder
        self.post_handlers: list[PostHandler] = list(post_handlers or [])
        if recorder is not None and post_handlers is None:
            self.post_handlers.append(UsageLoggingPostHandler(recorder))
        self.upstream_timeout = upstream_timeout or settings.upstream_timeout_seconds
        self.key_format = key_format or KeyFormat()
        self.password_hasher = password_hasher or PasswordHasher()

    async def handle(self, request: GatewayRequest, handler: Handler) -> GatewayOutcome:
        """Run one request through every stage and the post-handlers."""
        with log_context(request_id=request.request_id):
            outcome = await self._run(request, handler)
            await self._run_post_handlers(outcome)

        if outcome.succeeded:
            outcome = replace(outcome, state=RequestState.LOGGED)
            metrics.record_gateway_outcome(request.platform, "success")
        else:
            metrics.record_gateway_outcome(request.platform, outcome.reason or "rejected")
        return outcome

    async def _run(self, request: GatewayRequest, handler: Handler) -> GatewayOutcome:
        start = time.perf_counter()
        state = RequestState.RECEIVED
        verified: VerifiedKey | None = None
        decision: RateLimitDecision | None = None

        def latency_ms() -> int:
            return int((time.perf_counter() - start) * 1000)

        try:
            endpoint = self.policy.endpoint(request.platform, request.operation)
            if endpoint is None:
                raise _Rejected(
                    "routing", UnknownEndpointError(request.platform, request.operation)
                )

            await self._pre_auth_throttle(request)
            state = RequestState.RATE_CHECKED

            verified = await self._authenticate(request)
            state = RequestState.AUTHENTICATED

            decision = await self._tier_throttle(verified)
            self._require_credit(verified, endpoint)

            result = await self._execute(request, handler)
            state = RequestState.EXECUTED

            remaining = await self._debit(request, verified, endpoint)
            state = RequestState.DEBITED

        except _Rejected as rejected:
            error = rejected.error
            metrics.record_rejection(error.reason_code, rejected.stage)
            logger.info(
                "gateway_request_rejected",
                platform=request.platform,
                operation=request.operation,
                stage=rejected.stage,
                last_state=state.value,
                reason=error.reason_code,
            )
            return GatewayOutcome(
                request=request,
                state=RequestState.REJECTED,
                status_code=error.status_code,
                reason=error.reason_code,
                stage=rejected.stage,
                error=error,
                account_id=verified.account.account_id if verified else None,
                key_id=verified.key.key_id if verified else None,
                latency_ms=latency_ms(),
                rate_limit=decision,
            )

        logger.info(
            "gateway_request_served",
            platform=request.platform,
            operation=request.operation,
            account_id=str(verified.account.account_id),
            credits_charged=endpoint.cost,
            credits_remaining=remaining,
        )
        return GatewayOutcome(
            request=request,
            state=state,
            status_code=200,
            account_id=verified.account.account_id,
            key_id=verified.key.key_id,
            result=result,
            credits_charged=endpoint.cost,
            credits_remaining=remaining,
            latency_ms=latency_ms(),
            rate_limit=decision,
        )

    # ========================================================================
    # Stages
    # ========================================================================

    async def _pre_auth_throttle(self, request: GatewayRequest) -> None:
        """Cheap throttle keyed by lookup prefix, or by client address."""
        presented = request.presented_key
        if presented and self.key_format.matches(presented):
            identity = f"prefix:{self.key_format.lookup_prefix(presented)}"
        else:
            identity = f"ip:{request.client_ip or 'unknown'}"

        limit = self.policy.pre_auth_requests_per_window
        decision = await self.rate_limiter.allow(identity, limit)
        metrics.record_rate_limit("pre_auth", decision.allowed)
        if not decision.allowed:
            raise _Rejected("rate_check", ThrottleError(decision.retry_after or 1, limit))

    async def _authenticate(self, request: GatewayRequest) -> VerifiedKey:
        try:
            async with self.session_factory() as session:
                verifier = KeyVerifier(
                    session,
                    recorder=self.recorder,
                    key_format=self.key_format,
                    password_hasher=self.password_hasher,
                )
                return await verifier.verify(request.presented_key)
        except GatewayError as exc:
            raise _Rejected("authentication", exc) from exc

    async def _tier_throttle(self, verified: VerifiedKey) -> RateLimitDecision:
        tier = verified.account.subscription_tier
        limit = self.policy.tier_limit(tier)
        decision = await self.rate_limiter.allow(f"account:{verified.account.account_id}", limit)
        metrics.record_rate_limit("tier", decision.allowed)
        if not decision.allowed:
            raise _Rejected("tier_throttle", ThrottleError(decision.retry_after or 1, limit))
        return decision

    def _require_credit(self, verified: VerifiedKey, endpoint: EndpointPolicy) -> None:
        balance = verified.account.credit_balance
        if not verified.has_credit or balance < endpoint.cost:
            logger.info(
                "request_rejected_no_credit",
                account_id=str(verified.account.account_id),
                balance=balance,
                cost=endpoint.cost,
            )
            raise _Rejected("authorization", NoCreditError(verified.account.account_id, balance))

    async def _execute(self, request: GatewayRequest, handler: Handler) -> ExtractionResult:
        with track_duration() as timer:
            try:
                result = await asyncio.wait_for(handler(request), timeout=self.upstream_timeout)
            except asyncio.TimeoutError as exc:
                metrics.record_upstream_call(request.platform, "timeout", timer.elapsed)
                raise _Rejected(
                    "execution",
                    UpstreamTimeoutError(f"Handler exceeded {self.upstream_timeout}s"),
                ) from exc
            except UpstreamError as exc:
                metrics.record_upstream_call(request.platform, "error", timer.elapsed)
                raise _Rejected("execution", exc) from exc
            except Exception as exc:
                metrics.record_upstream_call(request.platform, "error", timer.elapsed)
                logger.error(
                    "handler_failed",
                    platform=request.platform,
                    operation=request.operation,
                    error_type=type(exc).__name__,
                    exc_info=True,
                )
                raise _Rejected("execution", UpstreamError(str(exc))) from exc

        metrics.record_upstream_call(request.platform, "success", timer.elapsed)
        return result

    async def _debit(
        self, request: GatewayRequest, verified: VerifiedKey, endpoint: EndpointPolicy
    ) -> int:
        metadata = LedgerMetadata(
            kind=TransactionKind.USAGE,
            reference=f"request:{request.request_id}",
            description=f"{request.platform}/{request.operation}",
        )
        try:
            async with self.session_factory() as session:
                change = await CreditLedger(session).debit(
                    verified.account.account_id, endpoint.cost, metadata
                )
        except GatewayError as exc:
            raise _Rejected("debit", exc) from exc
        return change.new_balance

    async def _run_post_handlers(self, outcome: GatewayOutcome) -> None:
        for post_handler in self.post_handlers:
            try:
                await post_handler.on_outcome(outcome)
            except Exception:
                logger.error(
                    "post_handler_failed",
                    post_handler=type(post_handler).__name__,
                    exc_info=True,
                )
                metrics.record_error("PostHandlerError", "post_handler")
