"""Tests for cost estimation and pricing."""
import math
from decimal import Decimal

import pytest

from credit_gateway.billing.models import PricingRule
from credit_gateway.billing.pricing import (
    GENERIC_RATES,
    CostEstimator,
    TokenEstimate,
    base_rates,
    calculate_cost,
    match_rule,
    matches_pattern,
)


def rule(pattern, markup, min_cost="0", priority=0, active=True):
    return PricingRule(
        model_pattern=pattern,
        markup_percentage=Decimal(markup),
        min_cost_usd=Decimal(min_cost),
        priority=priority,
        is_active=active,
    )


def test_calculate_cost_gpt4_turbo_default_markup():
    """Test 1M prompt tokens of gpt-4-turbo at 20% markup costs $12."""
    cost = calculate_cost("openai/gpt-4-turbo", 1_000_000, 0, default_markup=Decimal("20"))
    assert cost == Decimal("12.0")


def test_calculate_cost_unknown_model_uses_generic_tier():
    """Test unknown models fall back to the generic rates."""
    cost = calculate_cost("acme/unknown-model", 1_000_000, 1_000_000, default_markup=Decimal("20"))
    expected = (GENERIC_RATES["prompt"] + GENERIC_RATES["completion"]) * Decimal("1.2")
    assert cost == expected == Decimal("2.4")


def test_calculate_cost_gpt4_mixed_tokens():
    """Test prompt and completion rates are applied separately."""
    cost = calculate_cost("gpt-4", 1000, 500, default_markup=Decimal("0"))
    # 1K * $30/1M + 0.5K * $60/1M = $0.03 + $0.03 = $0.06
    assert cost == Decimal("0.06")


def test_base_rates_prefers_longer_key_first():
    """Test gpt-4-turbo does not match the gpt-4 entry."""
    assert base_rates("openai/gpt-4-turbo")["prompt"] == Decimal("10")
    assert base_rates("openai/gpt-4")["prompt"] == Decimal("30")
    assert base_rates("anthropic/Claude-3-Haiku")["completion"] == Decimal("1.25")
    assert base_rates("mistralai/mistral-large") is GENERIC_RATES


def test_zero_tokens_costs_epsilon():
    """Test the floor keeps every request strictly positive."""
    cost = calculate_cost("gpt-3.5-turbo", 0, 0)
    assert cost == Decimal("0.000001")
    assert calculate_cost("gpt-3.5-turbo", 1, 0) > 0


def test_matching_rule_overrides_markup():
    """Test a matching rule's markup replaces the default."""
    rules = [rule("openai/*", "50")]
    cost = calculate_cost("openai/gpt-4-turbo", 1_000_000, 0, rules=rules, default_markup=Decimal("20"))
    assert cost == Decimal("15")


def test_zero_markup_rule_is_honoured():
    """Test a 0% rule does not fall back to the default markup."""
    rules = [rule("openai/*", "0")]
    cost = calculate_cost("openai/gpt-4-turbo", 1_000_000, 0, rules=rules, default_markup=Decimal("20"))
    assert cost == Decimal("10")


def test_rule_minimum_cost_floor():
    """Test a rule's minimum cost applies to tiny requests."""
    rules = [rule("*", "20", min_cost="0.01")]
    assert calculate_cost("gpt-3.5-turbo", 10, 10, rules=rules) == Decimal("0.01")


def test_highest_priority_rule_wins():
    """Test rules are tried by descending priority."""
    rules = [rule("*", "10", priority=0), rule("openai/*", "50", priority=5), rule("openai/gpt-4*", "100", priority=1)]
    assert match_rule("openai/gpt-4-turbo", rules).markup_percentage == Decimal("50")
    assert match_rule("anthropic/claude-3-opus", rules).markup_percentage == Decimal("10")


def test_inactive_rules_are_ignored():
    rules = [rule("openai/*", "50", priority=5, active=False)]
    assert match_rule("openai/gpt-4", rules) is None


def test_no_match_returns_none():
    assert match_rule("openai/gpt-4", [rule("anthropic/*", "30")]) is None


@pytest.mark.parametrize(
    "model,pattern,expected",
    [
        ("openai/gpt-4-turbo", "*", True),
        ("openai/gpt-4-turbo", "openai/*", True),
        ("OpenAI/GPT-4-Turbo", "openai/gpt-4*", True),
        ("openai/gpt-4-turbo", "OPENAI/GPT-4-TURBO", True),
        ("openai/gpt-4", "openai/gpt-?", True),
        ("openai/gpt-4o", "openai/gpt-?", False),
        ("anthropic/claude-3-opus", "*claude*", True),
        ("anthropic/claude-3-opus", "openai/*", False),
        ("openai/gpt-4", "gpt-4", False),
        ("openai/gpt-4[x]", "openai/gpt-4[x]", True),
        ("openai/gpt-4x", "openai/gpt-4[x]", False),
        ("openai/gpt-4.5", "openai/gpt-4.5", True),
        ("openai/gpt-4x5", "openai/gpt-4.5", False),
    ],
)
def test_matches_pattern(model, pattern, expected):
    """Test wildcard matching is anchored, case-insensitive and treats brackets literally."""
    assert matches_pattern(model, pattern) is expected


def test_estimate_from_messages(settings):
    """Test prompt tokens are serialized characters / 4 rounded up."""
    estimator = CostEstimator(db=None, settings=settings)
    payload = {"model": "gpt-4", "messages": [{"role": "user", "content": "Hello"}]}

    estimate = estimator.estimate("gpt-4", payload)

    serialized = '[{"role":"user","content":"Hello"}]'
    assert estimate.prompt_tokens == math.ceil(len(serialized) / 4)
    assert estimate.completion_tokens == 1000


def test_estimate_uses_max_tokens(settings):
    """Test the caller's output cap replaces the default."""
    estimator = CostEstimator(db=None, settings=settings)
    estimate = estimator.estimate("gpt-4", {"messages": [], "max_tokens": 50})
    assert estimate.completion_tokens == 50
    assert estimate.prompt_tokens == 1
    assert estimate.total_tokens == 51


def test_estimate_from_prompt_field(settings):
    """Test completion-style bodies are estimated from `prompt`."""
    estimator = CostEstimator(db=None, settings=settings)
    estimate = estimator.estimate("gpt-3.5-turbo-instruct", {"prompt": "x" * 38})
    # '"' + 38 chars + '"' = 40 characters
    assert estimate.prompt_tokens == 10


def test_estimator_price_uses_configured_markup(settings):
    settings.markup_percentage = Decimal("50")
    estimator = CostEstimator(db=None, settings=settings)
    assert estimator.price("openai/gpt-4-turbo", 1_000_000, 0) == Decimal("15")


@pytest.mark.asyncio
async def test_load_rules_orders_by_priority(db, seed, settings):
    """Test only active rules are loaded, highest priority first."""
    await seed.rule("*", "10", priority=0)
    await seed.rule("openai/*", "50", priority=10)
    await seed.rule("anthropic/*", "30", priority=20, active=False)
    estimator = CostEstimator(db, settings)

    rules = await estimator.load_rules()

    assert [r.model_pattern for r in rules] == ["openai/*", "*"]
    assert estimator.price("openai/gpt-4-turbo", 1_000_000, 0, rules) == Decimal("15")


def test_total_tokens_prefers_reported_total():
    """Test an upstream total that counts extra tokens is kept as reported."""
    assert TokenEstimate(prompt_tokens=10, completion_tokens=5).total_tokens == 15
    assert TokenEstimate(prompt_tokens=10, completion_tokens=5, reported_total=40).total_tokens == 40
