from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from credit_ledger.services.errors import UnknownTierError


class Tier(str, Enum):
    FREE = "free"
    MAKER = "maker"
    PRO = "pro"
    AGENCY = "agency"
    ADMIN = "admin"


# Per-use surcharge for workflow steps that call paid upstream services.
PREMIUM_NODE_COSTS: Mapping[str, int] = MappingProxyType(
    {
        # AI / LLM
        "ai-completion": 3,
        "ai-embeddings": 2,
        "synthstack-agent": 3,
        "synthstack-openai": 2,
        "synthstack-anthropic": 2,
        "synthstack-gemini": 2,
        # External integrations
        "synthstack-slack": 1,
        "synthstack-discord": 1,
        "synthstack-twilio": 2,
        "synthstack-gmail": 1,
        "synthstack-notion": 1,
        "synthstack-github": 1,
        "synthstack-jira": 1,
        "synthstack-sheets": 1,
        "synthstack-drive": 1,
        # Payments
        "synthstack-stripe": 2,
        # Vector search
        "synthstack-kb": 1,
        # Included in the base cost
        "synthstack-directus": 0,
    }
)


@dataclass(frozen=True)
class TierPolicy:
    tier: Tier
    multiplier: Decimal
    free_executions_per_day: int
    daily_credit_limit: int
    starting_credits: int
    workflows_enabled: bool
    premium_node_costs: Mapping[str, int] = field(default_factory=lambda: PREMIUM_NODE_COSTS)

    def premium_node_cost(self, node_type: str) -> int | None:
        return self.premium_node_costs.get(node_type)


TIER_POLICIES: Mapping[Tier, TierPolicy] = MappingProxyType(
    {
        Tier.FREE: TierPolicy(
            tier=Tier.FREE,
            multiplier=Decimal("2.0"),
            free_executions_per_day=0,
            daily_credit_limit=10,
            starting_credits=100,
            workflows_enabled=False,
        ),
        Tier.MAKER: TierPolicy(
            tier=Tier.MAKER,
            multiplier=Decimal("1.5"),
            free_executions_per_day=5,
            daily_credit_limit=30,
            starting_credits=250,
            workflows_enabled=True,
        ),
        Tier.PRO: TierPolicy(
            tier=Tier.PRO,
            multiplier=Decimal("1.0"),
            free_executions_per_day=20,
            daily_credit_limit=100,
            starting_credits=500,
            workflows_enabled=True,
        ),
        Tier.AGENCY: TierPolicy(
            tier=Tier.AGENCY,
            multiplier=Decimal("0.5"),
            free_executions_per_day=100,
            daily_credit_limit=500,
            starting_credits=5000,
            workflows_enabled=True,
        ),
        Tier.ADMIN: TierPolicy(
            tier=Tier.ADMIN,
            multiplier=Decimal("1.0"),
            free_executions_per_day=500,
            daily_credit_limit=1000,
            starting_credits=1000,
            workflows_enabled=True,
        ),
    }
)


def normalize_tier(value: Tier | str | None) -> Tier:
    """
    Parse a stored or user-supplied tier (case/whitespace-insensitive).
    Unknown values raise UnknownTierError; there is no default tier.
    """
    if isinstance(value, Tier):
        return value
    if not isinstance(value, str):
        raise UnknownTierError(value)
    try:
        return Tier(value.strip().lower())
    except ValueError:
        raise UnknownTierError(value) from None


def policy_for(tier: Tier | str | None) -> TierPolicy:
    return TIER_POLICIES[normalize_tier(tier)]
