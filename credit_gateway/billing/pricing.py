"""Cost estimation and pricing for proxied requests."""
import json
import math
import re
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Sequence

from sqlalchemy import select

from credit_gateway.billing.database import Database
from credit_gateway.billing.models import PricingRule
from credit_gateway.config import Settings, settings as default_settings

MILLION = Decimal(1_000_000)
MICRO_USD = Decimal("0.000001")

# Approximate upstream pricing in USD per 1M tokens, matched by substring in
# insertion order ("gpt-4-turbo" must precede "gpt-4").
BASE_RATES: Dict[str, Dict[str, Decimal]] = {
    "gpt-4-turbo": {"prompt": Decimal("10"), "completion": Decimal("30")},
    "gpt-4": {"prompt": Decimal("30"), "completion": Decimal("60")},
    "gpt-3.5-turbo": {"prompt": Decimal("0.5"), "completion": Decimal("1.5")},
    "claude-3-opus": {"prompt": Decimal("15"), "completion": Decimal("75")},
    "claude-3-sonnet": {"prompt": Decimal("3"), "completion": Decimal("15")},
    "claude-3-haiku": {"prompt": Decimal("0.25"), "completion": Decimal("1.25")},
}

# Used when no table entry matches the model
GENERIC_RATES = BASE_RATES["gpt-3.5-turbo"]


@dataclass(frozen=True)
class TokenEstimate:
    """Token counts, either estimated pre-flight or reported by upstream."""

    prompt_tokens: int
    completion_tokens: int
    # Total as reported by upstream; may include tokens billed outside the two counts
    reported_total: Optional[int] = field(default=None, compare=False)

    @property
    def total_tokens(self) -> int:
        if self.reported_total is not None:
            return self.reported_total
        return self.prompt_tokens + self.completion_tokens


def matches_pattern(model: str, pattern: str) -> bool:
    """
    Case-insensitive wildcard match anchored at both ends.

    Only `*` (any run, including `/`) and `?` (one character) are special;
    everything else, brackets included, matches literally.
    """
    if pattern == "*":
        return True
    regex = "".join(
        ".*" if char == "*" else "." if char == "?" else re.escape(char) for char in pattern
    )
    return re.fullmatch(regex, model, re.IGNORECASE | re.DOTALL) is not None


def base_rates(model: str) -> Dict[str, Decimal]:
    """Per-1M-token rates for a model, falling back to the generic tier."""
    model_lower = model.lower()
    for key, rates in BASE_RATES.items():
        if key in model_lower:
            return rates
    return GENERIC_RATES


def match_rule(model: str, rules: Sequence[PricingRule]) -> Optional[PricingRule]:
    """First active rule, by descending priority, whose pattern matches."""
    active = [rule for rule in rules if rule.is_active is not False]
    # sorted() is stable, so equal priorities keep their stored order
    for rule in sorted(active, key=lambda r: r.priority or 0, reverse=True):
        if matches_pattern(model, rule.model_pattern):
            return rule
    return None


def calculate_cost(
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
    rules: Sequence[PricingRule] = (),
    default_markup: Decimal = Decimal("20"),
    min_cost: Decimal = MICRO_USD,
) -> Decimal:
    """
    Calculate the resale price in USD for a request.

    Args:
        model: Model id as sent to (or reported by) upstream
        prompt_tokens: Input tokens
        completion_tokens: Output tokens
        rules: Pricing rules; the first match supplies markup and floor
        default_markup: Markup percentage when no rule matches
        min_cost: Floor when no rule matches

    Returns:
        Cost in USD, strictly positive, rounded to 6 decimal places
    """
    rates = base_rates(model)
    prompt_cost = (Decimal(prompt_tokens) / MILLION) * rates["prompt"]
    completion_cost = (Decimal(completion_tokens) / MILLION) * rates["completion"]
    base_cost = prompt_cost + completion_cost

    rule = match_rule(model, rules)
    if rule is not None:
        markup = Decimal(rule.markup_percentage)
        floor = max(Decimal(rule.min_cost_usd or 0), MICRO_USD)
    else:
        markup = Decimal(default_markup)
        floor = max(Decimal(min_cost), MICRO_USD)

    cost = max(base_cost * (1 + markup / 100), floor)
    return cost.quantize(MICRO_USD, rounding=ROUND_HALF_UP)


class CostEstimator:
    """Pre-flight token estimation and pricing against the rule table."""

    def __init__(self, db: Database, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or default_settings

    def estimate(self, model: str, payload: Dict[str, Any]) -> TokenEstimate:
        """
        Conservative token estimate for a request that has not run yet.

        Prompt tokens are approximated as serialized input characters / 4,
        rounded up. Completion tokens are the caller's output cap, or the
        configured default when none is given. This is a heuristic upper
        bound; upstream-reported usage replaces it after the call.
        """
        source = payload.get("messages")
        if source is None:
            source = payload.get("prompt", "")
        prompt_text = json.dumps(source, separators=(",", ":"), ensure_ascii=False)
        prompt_tokens = math.ceil(len(prompt_text) / 4)

        completion_tokens = (
            payload.get("max_tokens")
            or payload.get("max_completion_tokens")
            or self.settings.default_completion_tokens
        )
        return TokenEstimate(prompt_tokens=prompt_tokens, completion_tokens=int(completion_tokens))

    async def load_rules(self) -> Sequence[PricingRule]:
        """Active pricing rules ordered by descending priority."""
        async with self.db.session() as session:
            result = await session.execute(
                select(PricingRule)
                .where(PricingRule.is_active.is_(True))
                .order_by(PricingRule.priority.desc())
            )
            return list(result.scalars().all())

    def price(
        self,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        rules: Sequence[PricingRule] = (),
    ) -> Decimal:
        """Price token counts with configured defaults."""
        return calculate_cost(
            model,
            prompt_tokens,
            completion_tokens,
            rules=rules,
            default_markup=self.settings.markup_percentage,
            min_cost=self.settings.min_cost_usd,
        )
