"""
Gateway Policy - Business configuration for rate tiers, endpoint costs and packages.

Rate ceilings, per-endpoint credit costs and purchasable credit packages are
policy data, not gateway logic. They load from POLICY_FILE (JSON) when set and
fall back to the built-in defaults below.

NO DICTIONARIES - Policy is a validated Pydantic model.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, model_validator
from structlog import get_logger

from creditgate.config import settings

logger = get_logger(__name__)


class TierPolicy(BaseModel):
    """Request ceiling for one subscription tier."""

    name: str = Field(..., min_length=1, max_length=50)
    requests_per_window: int = Field(..., gt=0)


class EndpointPolicy(BaseModel):
    """A billable platform/operation pair and its credit cost."""

    platform: str = Field(..., min_length=1, max_length=50)
    operation: str = Field(..., min_length=1, max_length=50)
    cost: int = Field(default=1, gt=0)


class CreditPackage(BaseModel):
    """A purchasable bundle of credits."""

    package_id: str = Field(..., min_length=1, max_length=50)
    name: str
    price_minor: int = Field(..., gt=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    credits: int = Field(..., gt=0)
    tier: str | None = None  # Subscription tier granted on purchase


class GatewayPolicy(BaseModel):
    """Complete gateway policy."""

    tiers: list[TierPolicy]
    default_tier: str = "free"
    pre_auth_requests_per_window: int = Field(default=120, gt=0)
    endpoints: list[EndpointPolicy]
    packages: list[CreditPackage]
    signup_bonus_credits: int = Field(default=100, ge=0)

    @model_validator(mode="after")
    def validate_references(self) -> "GatewayPolicy":
        """Ensure tier references resolve and keys are unique."""
        tier_names = [t.name for t in self.tiers]
        if len(set(tier_names)) != len(tier_names):
            raise ValueError("Duplicate tier names in policy")
        if self.default_tier not in tier_names:
            raise ValueError(f"default_tier '{self.default_tier}' is not a defined tier")

        endpoint_keys = [(e.platform, e.operation) for e in self.endpoints]
        if len(set(endpoint_keys)) != len(endpoint_keys):
            raise ValueError("Duplicate platform/operation pairs in policy")

        package_ids = [p.package_id for p in self.packages]
        if len(set(package_ids)) != len(package_ids):
            raise ValueError("Duplicate package ids in policy")
        for package in self.packages:
            if package.tier is not None and package.tier not in tier_names:
                raise ValueError(
                    f"Package '{package.package_id}' grants unknown tier '{package.tier}'"
                )
        return self

    def tier_limit(self, tier: str) -> int:
        """Request ceiling for a tier. Unknown tiers get the default tier's ceiling."""
        for t in self.tiers:
            if t.name == tier:
                return t.requests_per_window
        return self.tier_limit(self.default_tier)

    def tier_rank(self, tier: str) -> int:
        """Position of a tier in policy order; unknown tiers rank lowest."""
        for index, t in enumerate(self.tiers):
            if t.name == tier:
                return index
        return -1

    def endpoint(self, platform: str, operation: str) -> EndpointPolicy | None:
        """Look up a catalog endpoint."""
        for e in self.endpoints:
            if e.platform == platform and e.operation == operation:
                return e
        return None

    def package(self, package_id: str) -> CreditPackage | None:
        """Look up a credit package."""
        for p in self.packages:
            if p.package_id == package_id:
                return p
        return None

    @property
    def platforms(self) -> list[str]:
        """Distinct platforms in catalog order."""
        seen: list[str] = []
        for e in self.endpoints:
            if e.platform not in seen:
                seen.append(e.platform)
        return seen


_DEFAULT_OPERATIONS: list[tuple[str, list[str]]] = [
    (
        "tiktok",
        [
            "profile", "video", "feed", "comments", "followers", "following",
            "hashtag", "search", "search-users", "search-keywords", "sound",
            "song-details", "song-videos", "trending", "trending-songs",
            "shop-product", "shop-reviews", "shop-search", "transcript",
            "analytics", "demographics",
        ],
    ),
    (
        "instagram",
        [
            "profile", "post", "posts", "reels", "comments", "hashtag",
            "highlights", "stories", "search", "video",
        ],
    ),
    (
        "youtube",
        [
            "channel", "comments", "playlist", "search", "search-hashtag",
            "shorts", "shorts-paginated", "stats", "transcript",
        ],
    ),
    ("twitter", ["profile", "feed", "search"]),
    ("linkedin", ["profile", "company"]),
    ("reddit", ["posts", "comments"]),
    ("threads", ["profile", "post", "posts", "search", "search-users"]),
    ("facebook", ["profile", "posts"]),
    ("pinterest", ["pin", "board", "boards", "search"]),
    ("bluesky", ["profile", "post", "posts"]),
]

# Heavier operations cost more than the 1-credit baseline
_OPERATION_COSTS: list[tuple[str, int]] = [
    ("transcript", 2),
    ("analytics", 3),
    ("demographics", 3),
]


def _default_cost(operation: str) -> int:
    for name, cost in _OPERATION_COSTS:
        if name == operation:
            return cost
    return 1


def default_policy() -> GatewayPolicy:
    """Built-in policy used when no POLICY_FILE is configured."""
    return GatewayPolicy(
        tiers=[
            TierPolicy(name="free", requests_per_window=60),
            TierPolicy(name="standard", requests_per_window=600),
            TierPolicy(name="premium", requests_per_window=3000),
        ],
        default_tier="free",
        pre_auth_requests_per_window=120,
        endpoints=[
            EndpointPolicy(platform=platform, operation=operation, cost=_default_cost(operation))
            for platform, operations in _DEFAULT_OPERATIONS
            for operation in operations
        ],
        packages=[
            CreditPackage(
                package_id="freelance",
                name="Freelance",
                price_minor=4700,
                credits=25000,
                tier="standard",
            ),
            CreditPackage(
                package_id="business",
                name="Business",
                price_minor=49700,
                credits=500000,
                tier="premium",
            ),
        ],
        signup_bonus_credits=100,
    )


def load_policy(path: str | None) -> GatewayPolicy:
    """
    Load gateway policy from a JSON file.

    Raises:
        FileNotFoundError: path is set but missing
        pydantic.ValidationError: file content is not a valid policy
    """
    if not path:
        return default_policy()

    raw = Path(path).read_text(encoding="utf-8")
    policy = GatewayPolicy.model_validate_json(raw)
    logger.info(
        "gateway_policy_loaded",
        path=path,
        tiers=len(policy.tiers),
        endpoints=len(policy.endpoints),
        packages=len(policy.packages),
    )
    return policy


@lru_cache(maxsize=1)
def get_policy() -> GatewayPolicy:
    """Process-wide policy instance."""
    return load_policy(settings.policy_file)
