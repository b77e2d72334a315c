from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING
from typing import Iterable, Mapping, Sequence

from credit_ledger.services.errors import InvalidEstimateError, UnknownPremiumNodeError
from credit_ledger.services.tiers import Tier, TierPolicy, policy_for

BASE_COST = 1
DURATION_UNIT_SECONDS = 30
NODES_PER_COMPLEXITY_UNIT = 10
MAX_CREDITS_PER_EXECUTION = 100


@dataclass(frozen=True)
class PremiumNodeUsage:
    type: str
    count: int


@dataclass(frozen=True)
class CostEstimate:
    tier: Tier
    base_cost: int
    duration_cost: int
    complexity_cost: int
    premium_cost: int
    tier_multiplier: Decimal
    estimated_total: int
    capped: bool
    breakdown: str


def _require_non_negative_int(name: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidEstimateError(f"{name} must be an integer", field=name)
    if value < 0:
        raise InvalidEstimateError(f"{name} must be non-negative", field=name)
    return value


def _coerce_premium_nodes(
    premium_nodes: Iterable[PremiumNodeUsage | Mapping[str, object]] | None,
) -> list[PremiumNodeUsage]:
    usages: list[PremiumNodeUsage] = []
    for item in premium_nodes or []:
        if isinstance(item, PremiumNodeUsage):
            usage = item
        else:
            node_type = item.get("type")
            if not isinstance(node_type, str) or not node_type.strip():
                raise InvalidEstimateError("premium node type is required", field="premiumNodes")
            usage = PremiumNodeUsage(type=node_type.strip(), count=item.get("count", 1))  # type: ignore[arg-type]
        _require_non_negative_int("premium node count", usage.count)
        usages.append(usage)
    return usages


def premium_cost_for(policy: TierPolicy, premium_nodes: Sequence[PremiumNodeUsage]) -> int:
    total = 0
    for usage in premium_nodes:
        unit_cost = policy.premium_node_cost(usage.type)
        if unit_cost is None:
            raise UnknownPremiumNodeError(usage.type)
        total += usage.count * unit_cost
    return total


def apply_multiplier(subtotal: int, multiplier: Decimal) -> int:
    # Ledger amounts are whole credits; fractional totals round up.
    return int((Decimal(subtotal) * multiplier).to_integral_value(rounding=ROUND_CEILING))


def estimate_workflow_cost(
    *,
    node_count: int,
    estimated_duration_seconds: int,
    premium_nodes: Iterable[PremiumNodeUsage | Mapping[str, object]] | None = None,
    tier: Tier | str,
) -> CostEstimate:
    """
    Credit cost of one workflow execution:

        min(ceil((base + duration + complexity + premium) * multiplier), 100)

    Pure function of its inputs. Unknown tiers and premium node types raise
    rather than pricing at zero.
    """
    policy = policy_for(tier)
    nodes = _require_non_negative_int("nodeCount", node_count)
    duration = _require_non_negative_int("estimatedDuration", estimated_duration_seconds)
    usages = _coerce_premium_nodes(premium_nodes)

    duration_cost = duration // DURATION_UNIT_SECONDS
    complexity_cost = nodes // NODES_PER_COMPLEXITY_UNIT
    premium_cost = premium_cost_for(policy, usages)
    subtotal = BASE_COST + duration_cost + complexity_cost + premium_cost

    raw_total = apply_multiplier(subtotal, policy.multiplier)
    estimated_total = min(raw_total, MAX_CREDITS_PER_EXECUTION)

    parts = [f"Base: {BASE_COST}"]
    if duration_cost:
        parts.append(f"Duration ({duration}s): +{duration_cost}")
    if complexity_cost:
        parts.append(f"Complexity ({nodes} nodes): +{complexity_cost}")
    if premium_cost:
        premium_count = sum(u.count for u in usages)
        parts.append(f"Premium nodes ({premium_count}): +{premium_cost}")
    if policy.multiplier != Decimal("1"):
        parts.append(f"Tier multiplier ({policy.tier.value}): x{policy.multiplier.normalize()}")
    breakdown = " | ".join(parts) + f" = {estimated_total} credits"
    if raw_total > MAX_CREDITS_PER_EXECUTION:
        breakdown += f" (capped from {raw_total})"

    return CostEstimate(
        tier=policy.tier,
        base_cost=BASE_COST,
        duration_cost=duration_cost,
        complexity_cost=complexity_cost,
        premium_cost=premium_cost,
        tier_multiplier=policy.multiplier,
        estimated_total=estimated_total,
        capped=raw_total > MAX_CREDITS_PER_EXECUTION,
        breakdown=breakdown,
    )


def _premium_types_in_flow(node_types: Iterable[str], policy: TierPolicy) -> list[str]:
    return [t for t in node_types if (policy.premium_node_cost(t) or 0) > 0]


def _usages(node_types: Iterable[str]) -> list[PremiumNodeUsage]:
    return [PremiumNodeUsage(type=t, count=c) for t, c in sorted(Counter(node_types).items())]


def extract_premium_nodes(node_types: Iterable[str], tier: Tier | str) -> list[PremiumNodeUsage]:
    """
    Collapse a flow's node types into premium usages, keeping only types priced
    above zero. Ordinary (unpriced) node types are skipped here; they are not
    premium nodes.
    """
    return _usages(_premium_types_in_flow(node_types, policy_for(tier)))


def free_executions_remaining(tier: Tier | str, executions_today: int) -> int:
    return max(0, policy_for(tier).free_executions_per_day - max(0, executions_today))


def is_execution_free(tier: Tier | str, executions_today: int) -> bool:
    return free_executions_remaining(tier, executions_today) > 0


# Pre-flight range: a fast partial run versus a slow run of every node.
MIN_ESTIMATE_DURATION_SECONDS = 1
MAX_ESTIMATE_DURATION_SECONDS = 120


@dataclass(frozen=True)
class CostRange:
    estimated_min_cost: int
    estimated_max_cost: int
    premium_node_count: int
    can_afford: bool
    credits_remaining: int
    breakdown: str


def estimate_workflow_cost_range(
    node_count: int,
    node_types: Iterable[str],
    tier: Tier | str,
    credits_remaining: int,
) -> CostRange:
    """
    Bound the cost of running a flow before it runs.

    The low end assumes 30% of the nodes execute (rounded up), half of the
    premium nodes in flow order, and a 1s run. The high end assumes every node
    and premium node execute over 120s. `can_afford` is judged against the low
    end.
    """
    policy = policy_for(tier)
    nodes = _require_non_negative_int("nodeCount", node_count)
    remaining = _require_non_negative_int("creditsRemaining", credits_remaining)
    premium_in_flow = _premium_types_in_flow(node_types, policy)

    low = estimate_workflow_cost(
        node_count=-(-nodes * 3 // 10),
        estimated_duration_seconds=MIN_ESTIMATE_DURATION_SECONDS,
        premium_nodes=_usages(premium_in_flow[: (len(premium_in_flow) + 1) // 2]),
        tier=policy.tier,
    )
    high = estimate_workflow_cost(
        node_count=nodes,
        estimated_duration_seconds=MAX_ESTIMATE_DURATION_SECONDS,
        premium_nodes=_usages(premium_in_flow),
        tier=policy.tier,
    )
    return CostRange(
        estimated_min_cost=low.estimated_total,
        estimated_max_cost=high.estimated_total,
        premium_node_count=len(premium_in_flow),
        can_afford=remaining >= low.estimated_total,
        credits_remaining=remaining,
        breakdown=(
            f"Estimated {low.estimated_total}-{high.estimated_total} credits "
            f"({nodes} nodes, {len(premium_in_flow)} premium)"
        ),
    )
