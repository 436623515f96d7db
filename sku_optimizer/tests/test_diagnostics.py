"""
Tests unitaires pour diagnostics.py
"""

import sys
from pathlib import Path

import pytest

# Ajouter la racine du projet au path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from sku_optimizer.diagnostics import (
    DATA_QUALITY_CODE,
    DIAGNOSTIC_CHECKS,
    DiagnosticCheck,
    diagnose,
    get_diagnoses_by_action,
    get_most_critical_diagnosis,
    has_action_hint,
)
from sku_optimizer.records import ActionHint, DiagnosisBlock, sanitize_snapshot


def _codes(diagnoses):
    return [d.code for d in diagnoses]


def _find(diagnoses, code):
    return next(d for d in diagnoses if d.code == code)


class TestRegistry:
    """Tests pour le registre de contrôles."""

    def test_stable_codes(self):
        assert [c.code for c in DIAGNOSTIC_CHECKS] == [
            "out-of-stock-now",
            "stock-depletes-soon",
            "overstock",
            "low-cart-conversion",
            "low-order-conversion",
            "high-cost-of-sale-ratio",
            "low-buyout-rate",
            "sales-trend-falling",
            "above-market-performance",
        ]

    def test_healthy_sku_has_no_diagnosis(self, make_snapshot, thresholds):
        assert diagnose(make_snapshot(), thresholds) == ()


class TestStockChecks:
    """Tests des contrôles de stock."""

    def test_out_of_stock_now(self, make_snapshot, thresholds):
        diagnoses = diagnose(make_snapshot(stock_on_hand=0.0, orders_per_day=5.0), thresholds)

        diagnosis = _find(diagnoses, "out-of-stock-now")
        assert diagnosis.block is DiagnosisBlock.STOCK
        assert diagnosis.action_hint is ActionHint.RESTOCK
        assert diagnosis.delta_contribution == 0

    def test_no_out_of_stock_without_demand(self, make_snapshot, thresholds):
        diagnoses = diagnose(make_snapshot(stock_on_hand=0.0, orders_per_day=0.0), thresholds)

        assert "out-of-stock-now" not in _codes(diagnoses)

    def test_stock_depletes_soon_warning(self, make_snapshot, thresholds):
        # 100 / 10 = 10 jours : sous le seuil d'alerte (14), au-dessus du critique (7)
        diagnoses = diagnose(make_snapshot(stock_on_hand=100.0), thresholds)

        diagnosis = _find(diagnoses, "stock-depletes-soon")
        assert diagnosis.action_hint is ActionHint.PRICE_UP
        assert diagnosis.delta_contribution > 0
        assert diagnosis.confidence == 0.7
        assert diagnosis.metrics["critical"] is False

    def test_stock_depletes_soon_critical(self, make_snapshot, thresholds):
        diagnoses = diagnose(make_snapshot(stock_on_hand=50.0), thresholds)

        diagnosis = _find(diagnoses, "stock-depletes-soon")
        assert diagnosis.confidence == 0.85
        assert diagnosis.metrics["critical"] is True

    def test_overstock(self, make_snapshot, thresholds):
        diagnoses = diagnose(make_snapshot(stock_on_hand=1500.0), thresholds)

        diagnosis = _find(diagnoses, "overstock")
        assert diagnosis.action_hint is ActionHint.PRICE_DOWN
        assert diagnosis.delta_contribution < 0
        assert diagnosis.metrics["stock_cover_days"] == 150.0

    def test_overstock_without_sales(self, make_snapshot, thresholds):
        diagnoses = diagnose(make_snapshot(stock_on_hand=40.0, orders_per_day=0.0, orders=0), thresholds)

        assert "no sales" in _find(diagnoses, "overstock").reason


class TestConversionChecks:
    """Tests des contrôles de conversion."""

    def test_low_cart_conversion(self, make_snapshot, thresholds):
        diagnoses = diagnose(make_snapshot(cr_cart=2.0), thresholds)

        diagnosis = _find(diagnoses, "low-cart-conversion")
        assert diagnosis.block is DiagnosisBlock.CONVERSION
        assert diagnosis.action_hint is ActionHint.PRICE_DOWN

    def test_low_cart_conversion_needs_traffic(self, make_snapshot, thresholds):
        diagnoses = diagnose(make_snapshot(cr_cart=2.0, card_views=50), thresholds)

        assert "low-cart-conversion" not in _codes(diagnoses)

    def test_low_order_conversion(self, make_snapshot, thresholds):
        diagnoses = diagnose(make_snapshot(cart_adds=100, cr_order=1.0), thresholds)

        assert _find(diagnoses, "low-order-conversion").delta_contribution == -0.01

    def test_low_order_conversion_needs_cart_adds(self, make_snapshot, thresholds):
        diagnoses = diagnose(make_snapshot(cart_adds=10, cr_order=1.0), thresholds)

        assert "low-order-conversion" not in _codes(diagnoses)

    def test_above_market_performance(self, make_snapshot, thresholds):
        diagnoses = diagnose(make_snapshot(cr_cart=12.0), thresholds)

        diagnosis = _find(diagnoses, "above-market-performance")
        assert diagnosis.action_hint is ActionHint.PRICE_UP
        assert diagnosis.delta_contribution > 0

    def test_above_market_needs_traffic(self, make_snapshot, thresholds):
        diagnoses = diagnose(make_snapshot(cr_cart=12.0, card_views=20), thresholds)

        assert "above-market-performance" not in _codes(diagnoses)


class TestAdvertisingAndSalesChecks:
    """Tests des contrôles publicité, rachat et tendance."""

    def test_high_cost_of_sale(self, make_snapshot, thresholds):
        diagnosis = _find(diagnose(make_snapshot(cost_of_sale_pct=35.0), thresholds), "high-cost-of-sale-ratio")

        assert diagnosis.block is DiagnosisBlock.ADVERTISING
        assert diagnosis.action_hint is ActionHint.ADS_DOWN
        assert diagnosis.confidence == 0.8
        assert diagnosis.metrics["critical"] is False

    def test_critical_cost_of_sale(self, make_snapshot, thresholds):
        diagnosis = _find(diagnose(make_snapshot(cost_of_sale_pct=60.0), thresholds), "high-cost-of-sale-ratio")

        assert diagnosis.confidence == 0.9
        assert diagnosis.metrics["critical"] is True

    def test_cost_of_sale_needs_orders(self, make_snapshot, thresholds):
        diagnoses = diagnose(make_snapshot(cost_of_sale_pct=60.0, orders=5), thresholds)

        assert "high-cost-of-sale-ratio" not in _codes(diagnoses)

    def test_low_buyout(self, make_snapshot, thresholds):
        diagnosis = _find(diagnose(make_snapshot(buyout_pct=30.0), thresholds), "low-buyout-rate")

        assert diagnosis.block is DiagnosisBlock.FULFILMENT
        assert diagnosis.action_hint is ActionHint.FIX_CARD

    def test_sales_trend_falling(self, make_snapshot, thresholds):
        diagnosis = _find(diagnose(make_snapshot(sales_trend_pct=-25.0), thresholds), "sales-trend-falling")

        assert diagnosis.delta_contribution == -0.01
        assert diagnosis.metrics["critical"] is False

    def test_sales_trend_falling_critical(self, make_snapshot, thresholds):
        diagnosis = _find(diagnose(make_snapshot(sales_trend_pct=-45.0), thresholds), "sales-trend-falling")

        assert diagnosis.delta_contribution == -0.02
        assert diagnosis.metrics["critical"] is True

    def test_small_drop_ignored(self, make_snapshot, thresholds):
        diagnoses = diagnose(make_snapshot(sales_trend_pct=-10.0), thresholds)

        assert "sales-trend-falling" not in _codes(diagnoses)


class TestCoFiringAndDataQuality:
    """Tests du cumul et des problèmes de données."""

    def test_multiple_diagnoses_co_fire(self, make_snapshot, thresholds):
        snapshot = make_snapshot(stock_on_hand=1500.0, cr_cart=2.0, cost_of_sale_pct=40.0, sales_trend_pct=-30.0)

        codes = _codes(diagnose(snapshot, thresholds))

        assert {"overstock", "low-cart-conversion", "high-cost-of-sale-ratio", "sales-trend-falling"} <= set(codes)

    def test_data_issues_become_data_quality(self, make_snapshot, thresholds):
        snapshot = make_snapshot(data_issues=("missing orders_per_day", "malformed cr_cart: 'n/a'"))

        diagnoses = diagnose(snapshot, thresholds)

        diagnosis = _find(diagnoses, DATA_QUALITY_CODE)
        assert diagnosis.block is DiagnosisBlock.DATA
        assert diagnosis.action_hint is ActionHint.REVIEW_DATA
        assert "missing orders_per_day" in diagnosis.reason
        assert diagnosis.metrics["issues"] == ["missing orders_per_day", "malformed cr_cart: 'n/a'"]

    def test_failing_check_becomes_data_quality(self, make_snapshot, thresholds):
        def broken_check(snapshot, thresholds):
            raise ValueError("cannot convert 'abc'")

        checks = DIAGNOSTIC_CHECKS + (DiagnosticCheck("broken", DiagnosisBlock.SALES, broken_check),)

        diagnoses = diagnose(make_snapshot(), thresholds, checks=checks)

        assert len(diagnoses) == 1
        assert diagnoses[0].code == DATA_QUALITY_CODE
        assert diagnoses[0].metrics["check"] == "broken"

    def test_malformed_value_does_not_raise(self, make_snapshot, thresholds):
        # Une valeur non numérique glissée dans le snapshot
        snapshot = make_snapshot(cost_of_sale_pct="high")

        diagnoses = diagnose(snapshot, thresholds)

        assert DATA_QUALITY_CODE in _codes(diagnoses)

    def test_non_finite_velocity_becomes_data_quality(self, make_snapshot, thresholds):
        snapshot = make_snapshot(orders_per_day=float("nan"))

        diagnoses = diagnose(snapshot, thresholds)
        codes = _codes(diagnoses)

        assert DATA_QUALITY_CODE in codes
        assert "invalid orders_per_day: nan" in _find(diagnoses, DATA_QUALITY_CODE).metrics["issues"]
        # Une vélocité inconnue ne peut pas donner à la fois rupture proche et surstock
        assert not {"stock-depletes-soon", "overstock"} <= set(codes)

    def test_infinite_stock_becomes_data_quality(self, make_snapshot, thresholds):
        snapshot = make_snapshot(stock_on_hand=float("inf"))

        diagnoses = diagnose(snapshot, thresholds)

        issues = _find(diagnoses, DATA_QUALITY_CODE).metrics["issues"]
        assert "invalid stock_on_hand: inf" in issues
        assert "stock-depletes-soon" not in _codes(diagnoses)


class TestSanitizeSnapshot:
    """Tests pour sanitize_snapshot."""

    def test_clean_snapshot_unchanged(self, make_snapshot):
        snapshot = make_snapshot()

        assert sanitize_snapshot(snapshot) is snapshot

    def test_invalid_values_replaced(self, make_snapshot):
        snapshot = make_snapshot(
            orders_per_day=float("nan"),
            current_price=-5.0,
            sales_trend_pct=float("-inf"),
            stock_in_transit=20.0,
        )

        cleaned = sanitize_snapshot(snapshot)

        assert cleaned.orders_per_day == 0
        assert cleaned.current_price == 0
        assert cleaned.sales_trend_pct is None
        assert cleaned.effective_stock == 320.0
        assert cleaned.revenue_at_stake == 0
        assert cleaned.data_issues == (
            "invalid orders_per_day: nan",
            "negative current_price: -5",
            "invalid sales_trend_pct: -inf",
        )

    def test_non_finite_stock_recomputes_effective_stock(self, make_snapshot):
        cleaned = sanitize_snapshot(make_snapshot(stock_on_hand=float("nan"), stock_in_transit=40.0))

        assert cleaned.stock_on_hand == 0
        assert cleaned.effective_stock == 40.0
        assert "invalid stock_on_hand: nan" in cleaned.data_issues

    def test_existing_issues_kept(self, make_snapshot):
        cleaned = sanitize_snapshot(make_snapshot(ad_spend=float("nan"), data_issues=("missing sku",)))

        assert cleaned.data_issues == ("missing sku", "invalid ad_spend: nan")


class TestHelpers:
    """Tests des helpers d'analyse."""

    def test_most_critical_prefers_data_then_stock(self, make_snapshot, thresholds):
        snapshot = make_snapshot(stock_on_hand=1500.0, cr_cart=2.0, data_issues=("missing stock",))
        diagnoses = diagnose(snapshot, thresholds)

        assert get_most_critical_diagnosis(diagnoses).code == DATA_QUALITY_CODE
        without_data = [d for d in diagnoses if d.code != DATA_QUALITY_CODE]
        assert get_most_critical_diagnosis(without_data).code == "overstock"

    def test_most_critical_of_nothing(self):
        assert get_most_critical_diagnosis([]) is None

    def test_action_hint_helpers(self, make_snapshot, thresholds):
        diagnoses = diagnose(make_snapshot(stock_on_hand=1500.0, cr_cart=2.0, buyout_pct=20.0), thresholds)

        assert has_action_hint(diagnoses, ActionHint.FIX_CARD)
        assert not has_action_hint(diagnoses, ActionHint.RESTOCK)
        assert _codes(get_diagnoses_by_action(diagnoses, ActionHint.PRICE_DOWN)) == ["overstock", "low-cart-conversion"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
