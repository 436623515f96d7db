"""
Tests unitaires pour guards.py
"""

import sys
from dataclasses import replace
from datetime import date, timedelta
from pathlib import Path

import pytest

# Ajouter la racine du projet au path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from sku_optimizer.exceptions import ConfigurationError
from sku_optimizer.guards import (
    GUARD_NAMES,
    GuardEngine,
    evaluate_guards,
    get_blocking_guards,
)
from sku_optimizer.records import GuardSeverity, Mode, ModeResult, PriceAction, ProposedAction
from sku_optimizer.thresholds import ManualLock


COW = ModeResult(Mode.COW, "cow-default", "Stable performer")
INCREASE = ProposedAction(PriceAction.INCREASE, 0.03, 0.8)
DECREASE = ProposedAction(PriceAction.DECREASE, -0.05, 0.8)
HOLD = ProposedAction(PriceAction.HOLD, 0.0, 0.8)


def _by_name(results):
    return {r.guard: r for r in results}


class TestEvaluateGuards:
    """Tests pour evaluate_guards."""

    def test_all_guards_evaluated_in_order(self, make_snapshot, thresholds, as_of):
        results = evaluate_guards(make_snapshot(), COW, INCREASE, thresholds, as_of)

        assert tuple(r.guard for r in results) == GUARD_NAMES
        assert not any(r.blocked for r in results)
        assert all(r.reason for r in results)

    def test_no_short_circuit_after_block(self, make_snapshot, thresholds, as_of):
        lock = ManualLock(sku="SKU-1", until=as_of, reason="Promo")
        snapshot = make_snapshot(stock_on_hand=50.0, last_price_change=as_of - timedelta(days=1))

        results = evaluate_guards(snapshot, COW, INCREASE, thresholds, as_of, manual_lock=lock)

        assert len(results) == len(GUARD_NAMES)
        assert [r.guard for r in get_blocking_guards(results)] == ["manual-lock", "cooldown", "stock-for-increase"]

    def test_manual_lock_blocks_everything(self, make_snapshot, thresholds, as_of):
        lock = ManualLock(sku="SKU-1", until=date(2026, 12, 31), reason="Negotiated price")

        result = _by_name(evaluate_guards(make_snapshot(), COW, HOLD, thresholds, as_of, manual_lock=lock))["manual-lock"]

        assert result.blocked
        assert "Negotiated price" in result.reason


class TestMarginFloor:
    """Tests du garde-fou de marge minimale."""

    def test_blocks_decrease_below_floor(self, make_snapshot, thresholds, as_of):
        # 1000 -> 950 avec un coût de 900 : marge 5.3 % < 10 %
        snapshot = make_snapshot(cost_price=900.0)

        result = _by_name(evaluate_guards(snapshot, COW, DECREASE, thresholds, as_of))["margin-floor"]

        assert result.blocked
        assert "below the 10% floor" in result.reason

    def test_allows_decrease_with_room(self, make_snapshot, thresholds, as_of):
        result = _by_name(evaluate_guards(make_snapshot(), COW, DECREASE, thresholds, as_of))["margin-floor"]

        assert not result.blocked

    def test_uses_margin_when_cost_unknown(self, make_snapshot, thresholds, as_of):
        # marge actuelle 12 % -> ~7.4 % après -5 %
        snapshot = make_snapshot(cost_price=None, margin_pct=0.12)

        result = _by_name(evaluate_guards(snapshot, COW, DECREASE, thresholds, as_of))["margin-floor"]

        assert result.blocked

    def test_passes_when_cost_and_margin_unknown(self, make_snapshot, thresholds, as_of):
        snapshot = make_snapshot(cost_price=None, margin_pct=None)

        result = _by_name(evaluate_guards(snapshot, COW, DECREASE, thresholds, as_of))["margin-floor"]

        assert not result.blocked
        assert "unknown" in result.reason

    def test_ignores_increase(self, make_snapshot, thresholds, as_of):
        snapshot = make_snapshot(cost_price=990.0)

        result = _by_name(evaluate_guards(snapshot, COW, INCREASE, thresholds, as_of))["margin-floor"]

        assert not result.blocked


class TestCooldown:
    """Tests du garde-fou anti-oscillation."""

    def test_blocks_recent_change(self, make_snapshot, thresholds, as_of):
        snapshot = make_snapshot(last_price_change=as_of - timedelta(days=2))

        result = _by_name(evaluate_guards(snapshot, COW, INCREASE, thresholds, as_of))["cooldown"]

        assert result.blocked
        assert "2 days ago" in result.reason

    def test_allows_after_cooldown(self, make_snapshot, thresholds, as_of):
        snapshot = make_snapshot(last_price_change=as_of - timedelta(days=5))

        assert not _by_name(evaluate_guards(snapshot, COW, INCREASE, thresholds, as_of))["cooldown"].blocked

    def test_gold_sku_has_longer_cooldown(self, make_snapshot, thresholds, as_of):
        snapshot = make_snapshot(last_price_change=as_of - timedelta(days=5))

        result = _by_name(evaluate_guards(snapshot, COW, INCREASE, thresholds, as_of, is_gold=True))["cooldown"]

        assert result.blocked
        assert "gold" in result.reason

    def test_uses_days_since_price_change(self, make_snapshot, thresholds, as_of):
        snapshot = make_snapshot(days_since_price_change=1)

        assert _by_name(evaluate_guards(snapshot, COW, DECREASE, thresholds, as_of))["cooldown"].blocked

    def test_hold_is_never_blocked(self, make_snapshot, thresholds, as_of):
        snapshot = make_snapshot(last_price_change=as_of)

        assert not _by_name(evaluate_guards(snapshot, COW, HOLD, thresholds, as_of))["cooldown"].blocked


class TestStockAndConfidence:
    """Tests des garde-fous stock et confiance."""

    def test_blocks_increase_on_critical_stock(self, make_snapshot, thresholds, as_of):
        snapshot = make_snapshot(stock_on_hand=50.0)

        result = _by_name(evaluate_guards(snapshot, COW, INCREASE, thresholds, as_of))["stock-for-increase"]

        assert result.blocked
        assert "restock" in result.reason

    def test_allows_decrease_on_critical_stock(self, make_snapshot, thresholds, as_of):
        snapshot = make_snapshot(stock_on_hand=50.0)

        assert not _by_name(evaluate_guards(snapshot, COW, DECREASE, thresholds, as_of))["stock-for-increase"].blocked

    def test_blocks_low_confidence(self, make_snapshot, thresholds, as_of):
        proposal = ProposedAction(PriceAction.INCREASE, 0.02, 0.2)

        result = _by_name(evaluate_guards(make_snapshot(), COW, proposal, thresholds, as_of))["confidence-floor"]

        assert result.blocked
        assert "manual review" in result.reason

    def test_low_confidence_hold_is_not_blocked(self, make_snapshot, thresholds, as_of):
        proposal = ProposedAction(PriceAction.HOLD, 0.0, 0.1)

        assert not _by_name(evaluate_guards(make_snapshot(), COW, proposal, thresholds, as_of))["confidence-floor"].blocked


class TestDataSufficiency:
    """Tests du garde-fou d'échantillon minimal."""

    @pytest.mark.parametrize("overrides", [{"card_views": 40}, {"orders": 3}])
    def test_blocks_change_on_thin_sample(self, make_snapshot, thresholds, as_of, overrides):
        snapshot = make_snapshot(**overrides)

        for proposal in (INCREASE, DECREASE):
            result = _by_name(evaluate_guards(snapshot, COW, proposal, thresholds, as_of))["data-sufficiency"]
            assert result.blocked
            assert "needed before changing the price" in result.reason

    def test_hold_is_not_blocked(self, make_snapshot, thresholds, as_of):
        snapshot = make_snapshot(card_views=0, orders=0)

        assert not _by_name(evaluate_guards(snapshot, COW, HOLD, thresholds, as_of))["data-sufficiency"].blocked


class TestGoldStepCap:
    """Tests du plafond de pas des SKU gold."""

    def test_blocks_large_step_on_gold(self, make_snapshot, thresholds, as_of):
        results = evaluate_guards(make_snapshot(), COW, DECREASE, thresholds, as_of, is_gold=True)

        result = _by_name(results)["gold-step-cap"]
        assert result.blocked
        assert "gold" in result.reason

    def test_allows_step_within_gold_limit(self, make_snapshot, thresholds, as_of):
        proposal = ProposedAction(PriceAction.INCREASE, 0.02, 0.8)

        results = evaluate_guards(make_snapshot(), COW, proposal, thresholds, as_of, is_gold=True)

        assert not _by_name(results)["gold-step-cap"].blocked

    def test_ignores_regular_sku(self, make_snapshot, thresholds, as_of):
        result = _by_name(evaluate_guards(make_snapshot(), COW, DECREASE, thresholds, as_of))["gold-step-cap"]

        assert not result.blocked
        assert result.reason == "Not a gold SKU"


class TestRankDrop:
    """Tests du garde-fou de chute des ventes."""

    def test_blocks_increase_when_sales_collapse(self, make_snapshot, thresholds, as_of):
        snapshot = make_snapshot(sales_trend_pct=-35.0)

        result = _by_name(evaluate_guards(snapshot, COW, INCREASE, thresholds, as_of))["rank-drop"]

        assert result.blocked
        assert "fell 35%" in result.reason

    def test_allows_decrease_when_sales_collapse(self, make_snapshot, thresholds, as_of):
        snapshot = make_snapshot(sales_trend_pct=-35.0)

        assert not _by_name(evaluate_guards(snapshot, COW, DECREASE, thresholds, as_of))["rank-drop"].blocked

    @pytest.mark.parametrize("trend", [None, -30.0, 10.0])
    def test_passes_within_limit(self, make_snapshot, thresholds, as_of, trend):
        snapshot = make_snapshot(sales_trend_pct=trend)

        assert not _by_name(evaluate_guards(snapshot, COW, INCREASE, thresholds, as_of))["rank-drop"].blocked


class TestSpendLeak:
    """Tests du garde-fou de dépense pub sans commande."""

    def test_blocks_both_directions(self, make_snapshot, thresholds, as_of):
        snapshot = make_snapshot(ad_spend=2500.0, ad_orders=0)

        for proposal in (INCREASE, DECREASE):
            result = _by_name(evaluate_guards(snapshot, COW, proposal, thresholds, as_of))["spend-leak"]
            assert result.blocked
            assert "brought no orders" in result.reason

    @pytest.mark.parametrize("overrides", [
        {"ad_spend": 2500.0, "ad_orders": None},
        {"ad_spend": 2500.0, "ad_orders": 4},
        {"ad_spend": 800.0, "ad_orders": 0},
    ])
    def test_passes_otherwise(self, make_snapshot, thresholds, as_of, overrides):
        snapshot = make_snapshot(**overrides)

        assert not _by_name(evaluate_guards(snapshot, COW, DECREASE, thresholds, as_of))["spend-leak"].blocked

    def test_custom_spend_limit(self, make_snapshot, thresholds, as_of):
        snapshot = make_snapshot(ad_spend=800.0, ad_orders=0)
        strict = replace(thresholds, spend_leak_min_spend=500.0)

        assert _by_name(evaluate_guards(snapshot, COW, DECREASE, strict, as_of))["spend-leak"].blocked


class TestGuardEngine:
    """Tests pour la sévérité des garde-fous."""

    def test_all_hard_by_default(self, make_snapshot, thresholds, as_of):
        results = GuardEngine().evaluate_guards(make_snapshot(), COW, INCREASE, thresholds, as_of)

        assert all(r.severity is GuardSeverity.HARD for r in results)

    def test_soft_guard(self, make_snapshot, thresholds, as_of):
        engine = GuardEngine(soft_guards=["cooldown"])
        snapshot = make_snapshot(last_price_change=as_of - timedelta(days=1))

        result = _by_name(engine.evaluate_guards(snapshot, COW, INCREASE, thresholds, as_of))["cooldown"]

        assert result.blocked
        assert result.severity is GuardSeverity.SOFT
        assert not result.is_hard_block

    def test_unknown_soft_guard_rejected(self):
        with pytest.raises(ConfigurationError):
            GuardEngine(soft_guards=["family"])


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
