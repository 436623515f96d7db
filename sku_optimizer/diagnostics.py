"""
Moteur de diagnostic : contrôles indépendants et sans état.

Chaque contrôle a un code stable et ne se déclenche que si sa condition est
vraie ET que l'échantillon est suffisant (vues, paniers ou commandes selon le
contrôle). Les diagnostics peuvent se cumuler : aucune suppression ici, c'est
le moteur de décision qui arbitre.

Un contrôle qui échoue sur une valeur malformée ne lève pas : il produit un
diagnostic `data-quality`.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from .records import ActionHint, Diagnosis, DiagnosisBlock, NO_SALES_COVER_DAYS, SKUSnapshot, sanitize_snapshot
from .thresholds import CategoryThresholds

logger = logging.getLogger(__name__)


DATA_QUALITY_CODE = "data-quality"
DATA_QUALITY_WEIGHT = 0.5

# Ordre de criticité des familles (le premier est le plus critique)
BLOCK_PRIORITY: Tuple[DiagnosisBlock, ...] = (
    DiagnosisBlock.DATA,
    DiagnosisBlock.STOCK,
    DiagnosisBlock.ADVERTISING,
    DiagnosisBlock.SALES,
    DiagnosisBlock.CONVERSION,
    DiagnosisBlock.FULFILMENT,
)


CheckFunction = Callable[[SKUSnapshot, CategoryThresholds], Optional[Diagnosis]]


@dataclass(frozen=True)
class DiagnosticCheck:
    code: str
    block: DiagnosisBlock
    check: CheckFunction


# ─── Stock ──────────────────────────────────────────────────────────────

def check_out_of_stock(snapshot: SKUSnapshot, thresholds: CategoryThresholds) -> Optional[Diagnosis]:
    if snapshot.effective_stock > 0 or snapshot.orders_per_day <= 0:
        return None

    return Diagnosis(
        block=DiagnosisBlock.STOCK,
        code="out-of-stock-now",
        action_hint=ActionHint.RESTOCK,
        reason=f"No stock left while demand is {snapshot.orders_per_day:.1f} orders/day; restock first",
        confidence=0.95,
        metrics={"effective_stock": snapshot.effective_stock, "orders_per_day": snapshot.orders_per_day},
    )


def check_stock_depletes_soon(snapshot: SKUSnapshot, thresholds: CategoryThresholds) -> Optional[Diagnosis]:
    if snapshot.effective_stock <= 0 or snapshot.orders_per_day <= 0:
        return None

    cover = snapshot.stock_cover_days
    if cover >= thresholds.stock_warning_days:
        return None

    critical = cover < thresholds.stock_critical_days
    level, limit = ("critical", thresholds.stock_critical_days) if critical else ("warning", thresholds.stock_warning_days)
    return Diagnosis(
        block=DiagnosisBlock.STOCK,
        code="stock-depletes-soon",
        action_hint=ActionHint.PRICE_UP,
        reason=(
            f"Stock runs out in {cover:.1f} days ({level} threshold {limit:g} days); "
            f"slow demand with a higher price"
        ),
        confidence=0.85 if critical else 0.7,
        delta_contribution=0.02,
        metrics={"stock_cover_days": round(cover, 2), "critical": critical},
    )


def check_overstock(snapshot: SKUSnapshot, thresholds: CategoryThresholds) -> Optional[Diagnosis]:
    if snapshot.effective_stock <= 0:
        return None

    cover = snapshot.stock_cover_days
    if cover <= thresholds.stock_overstock_days:
        return None

    if cover >= NO_SALES_COVER_DAYS:
        detail = f"{snapshot.effective_stock:.0f} units in stock with no sales"
    else:
        detail = f"stock covers {cover:.0f} days (threshold {thresholds.stock_overstock_days:g})"

    return Diagnosis(
        block=DiagnosisBlock.STOCK,
        code="overstock",
        action_hint=ActionHint.PRICE_DOWN,
        reason=f"Overstock: {detail}; capital is tied up",
        confidence=0.8,
        delta_contribution=-0.02,
        metrics={"stock_cover_days": round(cover, 2), "effective_stock": snapshot.effective_stock},
    )


# ─── Conversion ─────────────────────────────────────────────────────────

def check_low_cart_conversion(snapshot: SKUSnapshot, thresholds: CategoryThresholds) -> Optional[Diagnosis]:
    if snapshot.card_views < thresholds.min_card_views:
        return None

    conversion = snapshot.cart_conversion
    if conversion is None or conversion >= thresholds.cr_cart_low:
        return None

    return Diagnosis(
        block=DiagnosisBlock.CONVERSION,
        code="low-cart-conversion",
        action_hint=ActionHint.PRICE_DOWN,
        reason=(
            f"Cart conversion {conversion:.1f}% below {thresholds.cr_cart_low:g}% "
            f"on {snapshot.card_views} views; the card or the price does not convince"
        ),
        confidence=0.7,
        delta_contribution=-0.02,
        metrics={"cart_conversion": round(conversion, 2), "card_views": snapshot.card_views},
    )


def check_low_order_conversion(snapshot: SKUSnapshot, thresholds: CategoryThresholds) -> Optional[Diagnosis]:
    if snapshot.cart_adds < thresholds.min_cart_adds:
        return None

    conversion = snapshot.order_conversion
    if conversion is None or conversion >= thresholds.cr_order_low:
        return None

    return Diagnosis(
        block=DiagnosisBlock.CONVERSION,
        code="low-order-conversion",
        action_hint=ActionHint.PRICE_DOWN,
        reason=(
            f"Order conversion {conversion:.1f}% below {thresholds.cr_order_low:g}% "
            f"on {snapshot.cart_adds} cart adds; buyers drop after the cart"
        ),
        confidence=0.6,
        delta_contribution=-0.01,
        metrics={"order_conversion": round(conversion, 2), "cart_adds": snapshot.cart_adds},
    )


def check_above_market_performance(snapshot: SKUSnapshot, thresholds: CategoryThresholds) -> Optional[Diagnosis]:
    if snapshot.card_views < thresholds.min_card_views:
        return None

    conversion = snapshot.cart_conversion
    if conversion is None or conversion <= thresholds.cr_cart_high:
        return None

    return Diagnosis(
        block=DiagnosisBlock.CONVERSION,
        code="above-market-performance",
        action_hint=ActionHint.PRICE_UP,
        reason=(
            f"Cart conversion {conversion:.1f}% above {thresholds.cr_cart_high:g}%; "
            f"demand supports a higher price"
        ),
        confidence=0.8,
        delta_contribution=0.02,
        metrics={"cart_conversion": round(conversion, 2), "card_views": snapshot.card_views},
    )


# ─── Publicité / fulfilment / ventes ────────────────────────────────────

def check_high_cost_of_sale(snapshot: SKUSnapshot, thresholds: CategoryThresholds) -> Optional[Diagnosis]:
    ratio = snapshot.cost_of_sale_pct
    if ratio is None or snapshot.orders < thresholds.min_orders:
        return None
    if ratio <= thresholds.cost_of_sale_high:
        return None

    critical = ratio > thresholds.cost_of_sale_critical
    limit = thresholds.cost_of_sale_critical if critical else thresholds.cost_of_sale_high
    return Diagnosis(
        block=DiagnosisBlock.ADVERTISING,
        code="high-cost-of-sale-ratio",
        action_hint=ActionHint.ADS_DOWN,
        reason=f"Ad cost of sale {ratio:.1f}% above {limit:g}%; cut advertising before touching price",
        confidence=0.9 if critical else 0.8,
        metrics={"cost_of_sale_pct": ratio, "ad_spend": snapshot.ad_spend, "critical": critical},
    )


def check_low_buyout(snapshot: SKUSnapshot, thresholds: CategoryThresholds) -> Optional[Diagnosis]:
    buyout = snapshot.buyout_pct
    if buyout is None or snapshot.orders < thresholds.min_orders:
        return None
    if buyout >= thresholds.buyout_low:
        return None

    return Diagnosis(
        block=DiagnosisBlock.FULFILMENT,
        code="low-buyout-rate",
        action_hint=ActionHint.FIX_CARD,
        reason=f"Buyout rate {buyout:.0f}% below {thresholds.buyout_low:g}%; check card accuracy and quality",
        confidence=0.7,
        metrics={"buyout_pct": buyout, "orders": snapshot.orders},
    )


def check_sales_trend_falling(snapshot: SKUSnapshot, thresholds: CategoryThresholds) -> Optional[Diagnosis]:
    trend = snapshot.sales_trend_pct
    if trend is None or snapshot.orders < thresholds.min_orders:
        return None
    if trend > -thresholds.sales_drop:
        return None

    critical = trend <= -thresholds.sales_drop_critical
    return Diagnosis(
        block=DiagnosisBlock.SALES,
        code="sales-trend-falling",
        action_hint=ActionHint.PRICE_DOWN,
        reason=f"Sales down {abs(trend):.0f}% vs previous period{' (critical)' if critical else ''}",
        confidence=0.85 if critical else 0.75,
        delta_contribution=-0.02 if critical else -0.01,
        metrics={"sales_trend_pct": trend, "critical": critical},
    )


DIAGNOSTIC_CHECKS: Tuple[DiagnosticCheck, ...] = (
    DiagnosticCheck("out-of-stock-now", DiagnosisBlock.STOCK, check_out_of_stock),
    DiagnosticCheck("stock-depletes-soon", DiagnosisBlock.STOCK, check_stock_depletes_soon),
    DiagnosticCheck("overstock", DiagnosisBlock.STOCK, check_overstock),
    DiagnosticCheck("low-cart-conversion", DiagnosisBlock.CONVERSION, check_low_cart_conversion),
    DiagnosticCheck("low-order-conversion", DiagnosisBlock.CONVERSION, check_low_order_conversion),
    DiagnosticCheck("high-cost-of-sale-ratio", DiagnosisBlock.ADVERTISING, check_high_cost_of_sale),
    DiagnosticCheck("low-buyout-rate", DiagnosisBlock.FULFILMENT, check_low_buyout),
    DiagnosticCheck("sales-trend-falling", DiagnosisBlock.SALES, check_sales_trend_falling),
    DiagnosticCheck("above-market-performance", DiagnosisBlock.CONVERSION, check_above_market_performance),
)


def _data_quality(reason: str, **metrics) -> Diagnosis:
    return Diagnosis(
        block=DiagnosisBlock.DATA,
        code=DATA_QUALITY_CODE,
        action_hint=ActionHint.REVIEW_DATA,
        reason=reason,
        confidence=DATA_QUALITY_WEIGHT,
        metrics=metrics,
    )


def diagnose(
    snapshot: SKUSnapshot,
    thresholds: CategoryThresholds,
    checks: Sequence[DiagnosticCheck] = DIAGNOSTIC_CHECKS,
) -> Tuple[Diagnosis, ...]:
    """
    Exécute tous les contrôles sur un SKU.

    Args:
        snapshot: Télémétrie du SKU
        thresholds: Seuils effectifs
        checks: Registre de contrôles (par défaut DIAGNOSTIC_CHECKS)

    Returns:
        Diagnostics déclenchés (vide si le SKU est sain)
    """
    results: List[Diagnosis] = []
    snapshot = sanitize_snapshot(snapshot)

    if snapshot.data_issues:
        results.append(_data_quality(
            "Incomplete telemetry: " + "; ".join(snapshot.data_issues),
            issues=list(snapshot.data_issues),
        ))

    for entry in checks:
        try:
            diagnosis = entry.check(snapshot, thresholds)
        except (ValueError, TypeError, ArithmeticError) as e:
            logger.warning(f"{snapshot.sku}: check {entry.code} failed on malformed data: {e}")
            results.append(_data_quality(f"Check {entry.code} skipped: malformed input ({e})", check=entry.code))
            continue

        if diagnosis is not None:
            results.append(diagnosis)

    return tuple(results)


def _block_rank(block: DiagnosisBlock) -> int:
    try:
        return BLOCK_PRIORITY.index(block)
    except ValueError:
        return len(BLOCK_PRIORITY)


def get_most_critical_diagnosis(diagnoses: Iterable[Diagnosis]) -> Optional[Diagnosis]:
    """Diagnostic le plus critique : famille prioritaire, puis confiance la plus haute."""
    ranked = sorted(diagnoses, key=lambda d: (_block_rank(d.block), -d.confidence))
    return ranked[0] if ranked else None


def has_action_hint(diagnoses: Iterable[Diagnosis], hint: ActionHint) -> bool:
    return any(d.action_hint is hint for d in diagnoses)


def get_diagnoses_by_action(diagnoses: Iterable[Diagnosis], hint: ActionHint) -> List[Diagnosis]:
    return [d for d in diagnoses if d.action_hint is hint]


def is_data_quality(diagnosis: Diagnosis) -> bool:
    return diagnosis.code == DATA_QUALITY_CODE
