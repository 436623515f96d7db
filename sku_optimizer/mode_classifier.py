"""
Classification des SKU en modes de fonctionnement.

L'ordre de priorité est déclaré explicitement dans `MODE_RULES` :
STOP > CLEAR > GROWTH > COW. La première règle qui s'applique gagne ;
un SKU en rupture qui convertit très bien reste donc en STOP.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .exceptions import InvariantViolation
from .records import Mode, ModeResult, PriceAction, SKUSnapshot
from .thresholds import CategoryThresholds

logger = logging.getLogger(__name__)


RuleCheck = Callable[[SKUSnapshot, CategoryThresholds], Optional[str]]


@dataclass(frozen=True)
class ModeRule:
    """Règle de classification : `check` renvoie la raison si elle s'applique, sinon None."""
    mode: Mode
    rule: str
    check: RuleCheck


@dataclass(frozen=True)
class ModePolicy:
    """
    Comportement par défaut d'un mode pour le moteur de décision.

    `step_field` désigne le champ de seuil donnant le pas par défaut
    (None = pas de mouvement par défaut).
    """
    default_action: PriceAction
    step_field: Optional[str]
    base_confidence: float
    severity: int
    freezes_price: bool = False

    def default_step(self, thresholds: CategoryThresholds) -> float:
        """Pas signé appliqué avant contribution des diagnostics."""
        if self.step_field is None:
            return 0.0
        step = float(getattr(thresholds, self.step_field))
        if self.default_action is PriceAction.DECREASE:
            return -step
        return step


MODE_POLICIES: Dict[Mode, ModePolicy] = {
    Mode.STOP: ModePolicy(PriceAction.HOLD, None, base_confidence=0.9, severity=4, freezes_price=True),
    Mode.CLEAR: ModePolicy(PriceAction.DECREASE, "clear_step_pct", base_confidence=0.8, severity=3),
    Mode.GROWTH: ModePolicy(PriceAction.INCREASE, "growth_step_pct", base_confidence=0.75, severity=2),
    Mode.COW: ModePolicy(PriceAction.HOLD, None, base_confidence=0.7, severity=1),
}

# Sévérité maximale, sert à normaliser le score de priorité
MAX_MODE_SEVERITY = max(policy.severity for policy in MODE_POLICIES.values())


def _check_stop(snapshot: SKUSnapshot, thresholds: CategoryThresholds) -> Optional[str]:
    if snapshot.orders_per_day <= 0:
        return None
    if snapshot.effective_stock <= 0:
        return f"Out of stock while selling {snapshot.orders_per_day:.1f} units/day"
    cover = snapshot.stock_cover_days
    if cover < thresholds.stock_critical_days:
        return (
            f"Stock covers {cover:.1f} days, below critical threshold "
            f"of {thresholds.stock_critical_days:g} days"
        )
    return None


def _check_clear(snapshot: SKUSnapshot, thresholds: CategoryThresholds) -> Optional[str]:
    cover = snapshot.stock_cover_days
    if cover > thresholds.stock_overstock_days:
        return (
            f"Stock covers {cover:.0f} days, above overstock threshold "
            f"of {thresholds.stock_overstock_days:g} days"
        )
    return None


def _check_growth(snapshot: SKUSnapshot, thresholds: CategoryThresholds) -> Optional[str]:
    conversion = snapshot.cart_conversion
    if conversion is None or conversion <= thresholds.cr_cart_high:
        return None
    if snapshot.card_views < thresholds.min_card_views or snapshot.orders < thresholds.min_orders:
        return None
    # Tendance absente = stable
    trend = snapshot.sales_trend_pct
    if trend is not None and trend < 0:
        return None
    return (
        f"Cart conversion {conversion:.1f}% above high threshold of {thresholds.cr_cart_high:g}% "
        f"on {snapshot.card_views} views"
    )


def _check_cow(snapshot: SKUSnapshot, thresholds: CategoryThresholds) -> Optional[str]:
    return "Stable performer, no stock or conversion signal"


# Ordre = priorité
MODE_RULES: Tuple[ModeRule, ...] = (
    ModeRule(Mode.STOP, "stop-no-stock", _check_stop),
    ModeRule(Mode.CLEAR, "clear-overstock", _check_clear),
    ModeRule(Mode.GROWTH, "growth-high-conversion", _check_growth),
    ModeRule(Mode.COW, "cow-default", _check_cow),
)


def classify_mode(
    snapshot: SKUSnapshot,
    thresholds: CategoryThresholds,
    rules: Tuple[ModeRule, ...] = MODE_RULES,
) -> ModeResult:
    """
    Détermine le mode d'un SKU.

    Args:
        snapshot: Télémétrie du SKU
        thresholds: Seuils effectifs (catégorie + surcharges)
        rules: Table de priorité (par défaut MODE_RULES)

    Returns:
        ModeResult de la première règle applicable

    Raises:
        InvariantViolation: si aucune règle ne s'applique
    """
    for rule in rules:
        reason = rule.check(snapshot, thresholds)
        if reason is not None:
            logger.debug(f"{snapshot.sku}: mode {rule.mode.value} ({rule.rule})")
            return ModeResult(mode=rule.mode, rule=rule.rule, reason=reason)

    raise InvariantViolation(f"No mode rule matched SKU {snapshot.sku}")


MODE_LABELS: Dict[Mode, str] = {
    Mode.STOP: "STOP (no stock)",
    Mode.CLEAR: "CLEAR (overstock)",
    Mode.COW: "COW (stable)",
    Mode.GROWTH: "GROWTH (strong demand)",
}


def get_mode_label(mode: Mode) -> str:
    return MODE_LABELS.get(mode, mode.value)


def get_mode_policy(mode: Mode) -> ModePolicy:
    return MODE_POLICIES[mode]


def get_mode_priority(mode: Mode) -> int:
    """Rang du mode dans la table (0 = le plus urgent)."""
    for index, rule in enumerate(MODE_RULES):
        if rule.mode is mode:
            return index
    return len(MODE_RULES)
