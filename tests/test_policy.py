"""
Tests for gateway policy loading and lookups.
"""

import json

import pytest
from pydantic import ValidationError

from creditgate.policy import (
    CreditPackage,
    EndpointPolicy,
    GatewayPolicy,
    TierPolicy,
    default_policy,
    load_policy,
)


def _policy_dict(**overrides):
    data = {
        "tiers": [
            {"name": "free", "requests_per_window": 10},
            {"name": "pro", "requests_per_window": 100},
        ],
        "default_tier": "free",
        "endpoints": [{"platform": "tiktok", "operation": "profile", "cost": 1}],
        "packages": [
            {
                "package_id": "starter",
                "name": "Starter",
                "price_minor": 500,
                "credits": 1000,
                "tier": "pro",
            }
        ],
    }
    data.update(overrides)
    return data


class TestDefaultPolicy:
    """Built-in defaults."""

    def test_is_valid(self, policy: GatewayPolicy):
        assert policy.default_tier == "free"
        assert policy.signup_bonus_credits == 100

    def test_tier_limits(self, policy: GatewayPolicy):
        assert policy.tier_limit("free") == 60
        assert policy.tier_limit("premium") == 3000

    def test_unknown_tier_falls_back_to_default(self, policy: GatewayPolicy):
        assert policy.tier_limit("platinum") == policy.tier_limit("free")

    def test_tier_rank_follows_order(self, policy: GatewayPolicy):
        assert policy.tier_rank("free") < policy.tier_rank("standard") < policy.tier_rank("premium")
        assert policy.tier_rank("platinum") == -1

    def test_endpoint_lookup(self, policy: GatewayPolicy):
        endpoint = policy.endpoint("tiktok", "profile")
        assert endpoint is not None
        assert endpoint.cost == 1
        assert policy.endpoint("myspace", "profile") is None

    def test_heavier_operations_cost_more(self, policy: GatewayPolicy):
        assert policy.endpoint("youtube", "transcript").cost == 2
        assert policy.endpoint("tiktok", "analytics").cost == 3

    def test_platforms_are_distinct_and_ordered(self, policy: GatewayPolicy):
        platforms = policy.platforms
        assert platforms[0] == "tiktok"
        assert len(platforms) == len(set(platforms))
        assert "bluesky" in platforms

    def test_packages(self, policy: GatewayPolicy):
        package = policy.package("freelance")
        assert package is not None
        assert package.credits == 25000
        assert package.tier == "standard"
        assert policy.package("nope") is None


class TestPolicyValidation:
    """Cross-reference checks."""

    def test_default_tier_must_exist(self):
        with pytest.raises(ValidationError, match="default_tier"):
            GatewayPolicy.model_validate(_policy_dict(default_tier="gold"))

    def test_duplicate_tiers_rejected(self):
        tiers = [{"name": "free", "requests_per_window": 1}] * 2
        with pytest.raises(ValidationError, match="Duplicate tier"):
            GatewayPolicy.model_validate(_policy_dict(tiers=tiers))

    def test_duplicate_endpoints_rejected(self):
        endpoints = [{"platform": "x", "operation": "y"}] * 2
        with pytest.raises(ValidationError, match="Duplicate platform/operation"):
            GatewayPolicy.model_validate(_policy_dict(endpoints=endpoints))

    def test_package_tier_must_exist(self):
        packages = [
            {"package_id": "p", "name": "P", "price_minor": 1, "credits": 1, "tier": "gold"}
        ]
        with pytest.raises(ValidationError, match="unknown tier"):
            GatewayPolicy.model_validate(_policy_dict(packages=packages))

    def test_non_positive_cost_rejected(self):
        with pytest.raises(ValidationError):
            EndpointPolicy(platform="x", operation="y", cost=0)

    def test_non_positive_ceiling_rejected(self):
        with pytest.raises(ValidationError):
            TierPolicy(name="free", requests_per_window=0)

    def test_package_credits_positive(self):
        with pytest.raises(ValidationError):
            CreditPackage(package_id="p", name="P", price_minor=100, credits=0)


class TestLoadPolicy:
    def test_no_path_returns_defaults(self):
        assert load_policy(None) == default_policy()

    def test_loads_json_file(self, tmp_path):
        path = tmp_path / "policy.json"
        path.write_text(json.dumps(_policy_dict()), encoding="utf-8")

        policy = load_policy(str(path))

        assert policy.tier_limit("pro") == 100
        assert policy.endpoint("tiktok", "profile") is not None
        assert policy.endpoint("youtube", "channel") is None

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_policy(str(tmp_path / "missing.json"))

    def test_invalid_file_raises(self, tmp_path):
        path = tmp_path / "policy.json"
        path.write_text(json.dumps({"tiers": []}), encoding="utf-8")
        with pytest.raises(ValidationError):
            load_policy(str(path))
