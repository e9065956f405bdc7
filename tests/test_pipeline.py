"""
Tests for the gateway request pipeline.

The key verifier is replaced by a lookup over known keys; debits run through
the real CreditLedger against the in-memory ledger store.
"""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
import redis.asyncio as redis

from creditgate.exceptions import (
    InvalidCredentialError,
    KeyExpiredError,
    MalformedCredentialError,
    UpstreamError,
)
from creditgate.models.domain import AccountData, APIKeyData, VerifiedKey
from creditgate.policy import EndpointPolicy, GatewayPolicy, TierPolicy
from creditgate.services.extraction import ExtractionResult
from creditgate.services.ledger import CreditLedger
from creditgate.services.pipeline import (
    GatewayPipeline,
    GatewayRequest,
    RequestState,
    UsageLoggingPostHandler,
)
from creditgate.services.rate_limiter import InMemoryRateLimiter, RedisRateLimiter

VALID_KEY = "rsk_" + "a" * 32


def verified_for(account, key_id=None) -> VerifiedKey:
    now = datetime.now(UTC)
    return VerifiedKey(
        account=AccountData(
            account_id=account.id,
            oauth_provider="oauth:google",
            external_id="google-user-123",
            email=None,
            display_name=None,
            credit_balance=account.credit_balance,
            total_purchased=account.total_purchased,
            total_requests=account.total_requests,
            subscription_tier=account.subscription_tier,
            created_at=now,
        ),
        key=APIKeyData(
            key_id=key_id or uuid4(),
            account_id=account.id,
            name="prod",
            lookup_prefix=VALID_KEY[:12],
            is_active=True,
            created_at=now,
            expires_at=None,
            last_used_at=None,
            total_requests=0,
        ),
        has_credit=account.credit_balance > 0,
    )


def make_request(key=VALID_KEY, platform="tiktok", operation="profile", ip="10.0.0.1"):
    return GatewayRequest(
        request_id=uuid4().hex,
        platform=platform,
        operation=operation,
        presented_key=key,
        client_ip=ip,
        params={"handle": "someone"},
    )


async def ok_handler(request: GatewayRequest) -> ExtractionResult:
    return ExtractionResult(platform=request.platform, operation=request.operation, data={"ok": True})


class Harness:
    """A pipeline wired to the ledger store, with key verification stubbed."""

    def __init__(self, store, policy, **pipeline_kwargs) -> None:
        self.store = store
        self.verify = AsyncMock()
        self.pipeline = GatewayPipeline(
            store.session,
            pipeline_kwargs.pop("rate_limiter", InMemoryRateLimiter(window_seconds=60)),
            policy=policy,
            **pipeline_kwargs,
        )

    def authenticate_as(self, account) -> VerifiedKey:
        verified = verified_for(account)
        self.verify.side_effect = lambda *args, **kwargs: verified_for(
            self.store.accounts[account.id], verified.key.key_id
        )
        return verified

    async def handle(self, request, handler=ok_handler):
        verifier = MagicMock()
        verifier.verify = self.verify

        def ledger(session):
            instance = CreditLedger(session)
            instance._lock_account = session.lock_account
            return instance

        with (
            patch("creditgate.services.pipeline.KeyVerifier", return_value=verifier),
            patch("creditgate.services.pipeline.CreditLedger", side_effect=ledger),
        ):
            return await self.pipeline.handle(request, handler)


@pytest.fixture
def harness(ledger_store, policy) -> Harness:
    return Harness(ledger_store, policy, post_handlers=[])


class TestHappyPath:
    async def test_served_request_is_debited_and_logged(self, harness, ledger_store):
        account = ledger_store.add_account(balance=10)
        harness.authenticate_as(account)

        outcome = await harness.handle(make_request())

        assert outcome.succeeded
        assert outcome.state == RequestState.LOGGED
        assert outcome.status_code == 200
        assert outcome.credits_charged == 1
        assert outcome.credits_remaining == 9
        assert outcome.result.data == {"ok": True}
        assert outcome.rate_limit is not None and outcome.rate_limit.allowed
        assert account.credit_balance == 9
        assert ledger_store.transactions[-1].reference == f"request:{outcome.request.request_id}"

    async def test_endpoint_cost_is_charged(self, harness, ledger_store):
        account = ledger_store.add_account(balance=10)
        harness.authenticate_as(account)

        outcome = await harness.handle(make_request(platform="tiktok", operation="analytics"))

        assert outcome.credits_charged == 3
        assert account.credit_balance == 7


class TestRejections:
    """Each stage rejects with its own reason and never debits."""

    async def test_unknown_endpoint(self, harness, ledger_store):
        outcome = await harness.handle(make_request(platform="myspace"))

        assert outcome.state == RequestState.REJECTED
        assert outcome.reason == "unknown_endpoint"
        assert outcome.stage == "routing"
        harness.verify.assert_not_awaited()

    @pytest.mark.parametrize(
        "error,reason,status",
        [
            (MalformedCredentialError(), "malformed_credential", 401),
            (InvalidCredentialError(), "invalid_or_revoked", 401),
            (KeyExpiredError(uuid4()), "expired", 403),
        ],
    )
    async def test_authentication_failures(self, harness, error, reason, status):
        harness.verify.side_effect = error

        outcome = await harness.handle(make_request())

        assert outcome.reason == reason
        assert outcome.status_code == status
        assert outcome.stage == "authentication"
        assert outcome.account_id is None
        assert outcome.error is error

    async def test_zero_balance_rejected_before_execution(self, harness, ledger_store):
        account = ledger_store.add_account(balance=0)
        harness.authenticate_as(account)
        handler = AsyncMock(side_effect=ok_handler)

        outcome = await harness.handle(make_request(), handler)

        assert outcome.reason == "insufficient_credit"
        assert outcome.status_code == 402
        assert outcome.stage == "authorization"
        handler.assert_not_awaited()

    async def test_balance_below_cost_rejected_before_execution(self, harness, ledger_store):
        account = ledger_store.add_account(balance=2)
        harness.authenticate_as(account)
        handler = AsyncMock(side_effect=ok_handler)

        outcome = await harness.handle(make_request(operation="analytics"), handler)

        assert outcome.reason == "insufficient_credit"
        handler.assert_not_awaited()
        assert account.credit_balance == 2

    async def test_upstream_error_is_not_charged(self, harness, ledger_store):
        account = ledger_store.add_account(balance=10)
        harness.authenticate_as(account)

        async def failing(request):
            raise UpstreamError("500 from extractor")

        outcome = await harness.handle(make_request(), failing)

        assert outcome.reason == "upstream_error"
        assert outcome.status_code == 502
        assert outcome.stage == "execution"
        assert outcome.credits_charged == 0
        assert account.credit_balance == 10

    async def test_unexpected_handler_exception_is_upstream_error(self, harness, ledger_store):
        account = ledger_store.add_account(balance=10)
        harness.authenticate_as(account)

        async def broken(request):
            raise KeyError("data")

        outcome = await harness.handle(make_request(), broken)

        assert outcome.reason == "upstream_error"
        assert outcome.error.public_message == UpstreamError.public_message
        assert account.credit_balance == 10

    async def test_timeout_is_not_charged(self, ledger_store, policy):
        harness = Harness(ledger_store, policy, post_handlers=[], upstream_timeout=0.01)
        account = ledger_store.add_account(balance=10)
        harness.authenticate_as(account)

        async def slow(request):
            await asyncio.sleep(1)

        outcome = await harness.handle(make_request(), slow)

        assert outcome.status_code == 504
        assert outcome.reason == "upstream_error"
        assert account.credit_balance == 10


class TestThrottling:
    async def test_pre_auth_throttle_by_lookup_prefix(self, ledger_store, policy):
        policy = policy.model_copy(update={"pre_auth_requests_per_window": 2})
        harness = Harness(ledger_store, policy, post_handlers=[])
        account = ledger_store.add_account(balance=10)
        harness.authenticate_as(account)

        outcomes = [await harness.handle(make_request()) for _ in range(3)]

        assert [o.succeeded for o in outcomes] == [True, True, False]
        assert outcomes[2].reason == "rate_limited"
        assert outcomes[2].stage == "rate_check"
        assert outcomes[2].error.retry_after >= 1
        assert account.credit_balance == 8

    async def test_pre_auth_throttle_by_ip_for_garbage_keys(self, ledger_store, policy):
        policy = policy.model_copy(update={"pre_auth_requests_per_window": 1})
        limiter = InMemoryRateLimiter(window_seconds=60)
        harness = Harness(ledger_store, policy, post_handlers=[], rate_limiter=limiter)
        harness.verify.side_effect = MalformedCredentialError()

        first = await harness.handle(make_request(key="junk-1"))
        second = await harness.handle(make_request(key="junk-2"))
        other_ip = await harness.handle(make_request(key="junk-3", ip="10.0.0.2"))

        assert first.reason == "malformed_credential"
        assert second.reason == "rate_limited"
        assert other_ip.reason == "malformed_credential"

    async def test_redis_outage_does_not_fail_metered_requests(self, ledger_store, policy):
        failing = MagicMock()
        failing.pipeline = MagicMock(side_effect=redis.ConnectionError("Connection refused"))
        limiter = RedisRateLimiter(failing, window_seconds=60)
        harness = Harness(ledger_store, policy, post_handlers=[], rate_limiter=limiter)
        account = ledger_store.add_account(balance=10)
        harness.authenticate_as(account)

        outcome = await harness.handle(make_request())

        assert outcome.succeeded
        assert account.credit_balance == 9

    async def test_tier_ceiling(self, ledger_store):
        policy = GatewayPolicy(
            tiers=[TierPolicy(name="free", requests_per_window=1)],
            endpoints=[EndpointPolicy(platform="tiktok", operation="profile")],
            packages=[],
        )
        harness = Harness(ledger_store, policy, post_handlers=[])
        account = ledger_store.add_account(balance=10)
        harness.authenticate_as(account)

        first = await harness.handle(make_request())
        second = await harness.handle(make_request())

        assert first.succeeded
        assert second.reason == "rate_limited"
        assert second.stage == "tier_throttle"
        assert second.account_id == account.id
        assert account.credit_balance == 9


class TestConcurrentRequests:
    async def test_three_requests_of_forty_against_one_hundred(self, ledger_store):
        """Exactly two are served; the third is insufficient_credit and balance ends at 20."""
        policy = GatewayPolicy(
            tiers=[TierPolicy(name="free", requests_per_window=100)],
            endpoints=[EndpointPolicy(platform="tiktok", operation="profile", cost=40)],
            packages=[],
        )
        harness = Harness(ledger_store, policy, post_handlers=[])
        account = ledger_store.add_account(balance=100)
        harness.authenticate_as(account)

        async def yielding_handler(request):
            await asyncio.sleep(0)
            return await ok_handler(request)

        outcomes = await asyncio.gather(
            *(harness.handle(make_request(), yielding_handler) for _ in range(3))
        )

        served = [o for o in outcomes if o.succeeded]
        rejected = [o for o in outcomes if not o.succeeded]
        assert len(served) == 2
        assert len(rejected) == 1
        assert rejected[0].reason == "insufficient_credit"
        assert account.credit_balance == 20
        assert ledger_store.ledger_sum(account.id) == 20


class TestPostHandlers:
    async def test_usage_logged_for_served_and_rejected(self, ledger_store, policy):
        recorder = MagicMock()
        harness = Harness(ledger_store, policy, recorder=recorder)
        account = ledger_store.add_account(balance=10)
        harness.authenticate_as(account)

        async def failing(request):
            raise UpstreamError("boom")

        await harness.handle(make_request())
        await harness.handle(make_request(), failing)

        entries = [call.args[0] for call in recorder.record.call_args_list]
        assert [e.outcome for e in entries] == ["success", "upstream_error"]
        assert [e.credits_charged for e in entries] == [1, 0]
        assert all(e.account_id == account.id for e in entries)

    async def test_unauthenticated_rejections_are_not_logged(self, ledger_store, policy):
        recorder = MagicMock()
        harness = Harness(ledger_store, policy, recorder=recorder)
        harness.verify.side_effect = InvalidCredentialError()

        await harness.handle(make_request())

        recorder.record.assert_not_called()

    async def test_failing_post_handler_does_not_change_outcome(self, ledger_store, policy):
        broken = MagicMock()
        broken.on_outcome = AsyncMock(side_effect=RuntimeError("post handler bug"))
        after = MagicMock()
        after.on_outcome = AsyncMock()
        harness = Harness(ledger_store, policy, post_handlers=[broken, after])
        account = ledger_store.add_account(balance=10)
        harness.authenticate_as(account)

        outcome = await harness.handle(make_request())

        assert outcome.succeeded
        after.on_outcome.assert_awaited_once()
        assert account.credit_balance == 9

    async def test_post_handlers_see_final_outcome(self, ledger_store, policy):
        seen = []

        class Collector:
            async def on_outcome(self, outcome):
                seen.append(outcome)

        harness = Harness(ledger_store, policy, post_handlers=[Collector()])
        account = ledger_store.add_account(balance=10)
        harness.authenticate_as(account)

        await harness.handle(make_request())

        assert seen[0].state == RequestState.DEBITED
        assert seen[0].credits_remaining == 9


class TestUsageLoggingPostHandler:
    async def test_skips_outcomes_without_account(self):
        recorder = MagicMock()
        handler = UsageLoggingPostHandler(recorder)
        outcome = MagicMock(account_id=None)

        await handler.on_outcome(outcome)

        recorder.record.assert_not_called()
