"""
Garde-fous appliqués à une action prix envisagée.

Tous les garde-fous sont évalués pour chaque SKU, sans court-circuit, pour
conserver une trace d'audit complète. Un garde-fou qui ne concerne pas
l'action proposée renvoie simplement `blocked=False`.
"""

import logging
from datetime import date
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .exceptions import ConfigurationError
from .records import GuardResult, GuardSeverity, ModeResult, PriceAction, ProposedAction, SKUSnapshot
from .thresholds import CategoryThresholds, ManualLock

logger = logging.getLogger(__name__)


MANUAL_LOCK = "manual-lock"
DATA_SUFFICIENCY = "data-sufficiency"
MARGIN_FLOOR = "margin-floor"
COOLDOWN = "cooldown"
GOLD_STEP_CAP = "gold-step-cap"
RANK_DROP = "rank-drop"
STOCK_FOR_INCREASE = "stock-for-increase"
SPEND_LEAK = "spend-leak"
CONFIDENCE_FLOOR = "confidence-floor"

# Ordre d'évaluation
GUARD_NAMES: Tuple[str, ...] = (
    MANUAL_LOCK,
    DATA_SUFFICIENCY,
    MARGIN_FLOOR,
    COOLDOWN,
    GOLD_STEP_CAP,
    RANK_DROP,
    STOCK_FOR_INCREASE,
    SPEND_LEAK,
    CONFIDENCE_FLOOR,
)


def check_manual_lock(snapshot: SKUSnapshot, proposed: ProposedAction, manual_lock: Optional[ManualLock]) -> Tuple[bool, str]:
    if manual_lock is None:
        return False, "No manual lock"
    detail = f": {manual_lock.reason}" if manual_lock.reason else ""
    return True, f"Manual lock active until {manual_lock.until.isoformat()}{detail}"


def check_data_sufficiency(snapshot: SKUSnapshot, proposed: ProposedAction, thresholds: CategoryThresholds) -> Tuple[bool, str]:
    """Bloque tout changement de prix décidé sur trop peu de vues ou de commandes."""
    if proposed.action is PriceAction.HOLD:
        return False, "No price change proposed"

    if snapshot.card_views < thresholds.min_card_views:
        return True, (
            f"Only {snapshot.card_views} card views, {thresholds.min_card_views:g} needed "
            f"before changing the price"
        )
    if snapshot.orders < thresholds.min_orders:
        return True, f"Only {snapshot.orders} orders, {thresholds.min_orders:g} needed before changing the price"

    return False, f"{snapshot.card_views} views and {snapshot.orders} orders support a decision"


def check_margin_floor(snapshot: SKUSnapshot, proposed: ProposedAction, thresholds: CategoryThresholds) -> Tuple[bool, str]:
    """
    Bloque une baisse qui ferait passer la marge sous `min_margin_pct`.

    La marge après baisse est calculée depuis le coût unitaire s'il est connu,
    sinon estimée depuis la marge actuelle. Sans l'un ni l'autre, le
    garde-fou laisse passer.
    """
    if proposed.action is not PriceAction.DECREASE:
        return False, "Not a price decrease"

    price = snapshot.current_price
    if price <= 0:
        return False, "Current price unknown, margin not checked"

    new_price = price * (1 + proposed.delta_pct)
    if new_price <= 0:
        return True, f"Decrease of {proposed.delta_pct * 100:.1f}% gives a non-positive price"

    if snapshot.cost_price is not None and snapshot.cost_price > 0:
        unit_cost = snapshot.cost_price
    elif snapshot.margin_pct is not None:
        unit_cost = price * (1 - snapshot.margin_pct)
    else:
        return False, "Cost and margin unknown, margin not checked"

    new_margin = (new_price - unit_cost) / new_price
    floor = thresholds.min_margin_pct
    if new_margin < floor:
        return True, f"Margin after decrease would be {new_margin * 100:.1f}%, below the {floor * 100:.0f}% floor"

    return False, f"Margin after decrease {new_margin * 100:.1f}% stays above the {floor * 100:.0f}% floor"


def check_cooldown(
    snapshot: SKUSnapshot,
    proposed: ProposedAction,
    thresholds: CategoryThresholds,
    as_of: date,
    is_gold: bool,
) -> Tuple[bool, str]:
    if proposed.action is PriceAction.HOLD:
        return False, "No price change proposed"

    days = snapshot.days_since_last_change(as_of)
    if days is None:
        return False, "No previous price change recorded"

    cooldown = thresholds.cooldown_days_gold if is_gold else thresholds.cooldown_days
    if days < cooldown:
        label = "gold SKU cooldown" if is_gold else "cooldown"
        return True, f"Price changed {days} days ago, {label} is {cooldown:g} days"

    return False, f"Last change {days} days ago, cooldown of {cooldown:g} days elapsed"


def check_gold_step_cap(snapshot: SKUSnapshot, proposed: ProposedAction, thresholds: CategoryThresholds, is_gold: bool) -> Tuple[bool, str]:
    if not is_gold:
        return False, "Not a gold SKU"
    if proposed.action is PriceAction.HOLD:
        return False, "No price change proposed"

    cap = thresholds.max_step_pct_gold
    if abs(proposed.delta_pct) > cap:
        return True, (
            f"Step of {proposed.delta_pct * 100:+.1f}% exceeds the {cap * 100:.1f}% limit for gold SKUs"
        )

    return False, f"Step of {proposed.delta_pct * 100:+.1f}% within the {cap * 100:.1f}% gold limit"


def check_rank_drop(snapshot: SKUSnapshot, proposed: ProposedAction, thresholds: CategoryThresholds) -> Tuple[bool, str]:
    """Interdit une hausse quand les ventes s'effondrent par rapport à la période précédente."""
    if proposed.action is not PriceAction.INCREASE:
        return False, "Not a price increase"

    trend = snapshot.sales_trend_pct
    if trend is None:
        return False, "Sales trend unknown"

    if trend < -thresholds.rank_drop_pct:
        return True, (
            f"Sales fell {abs(trend):.0f}% vs previous period (limit {thresholds.rank_drop_pct:g}%); "
            f"do not raise the price while ranking drops"
        )

    return False, f"Sales trend {trend:+.0f}%"


def check_stock_for_increase(snapshot: SKUSnapshot, proposed: ProposedAction, thresholds: CategoryThresholds) -> Tuple[bool, str]:
    """
    Bloque une hausse quand la couverture est sous `stock_critical_days`.

    Via run_optimizer, un tel SKU est déjà classé STOP et propose hold : ce
    garde-fou ne bloque que les propositions fournies par l'appelant
    (`decide(..., proposal=...)` ou un GuardEngine appelé directement).
    """
    if proposed.action is not PriceAction.INCREASE:
        return False, "Not a price increase"

    cover = snapshot.stock_cover_days
    if cover < thresholds.stock_critical_days:
        return True, (
            f"Stock covers {cover:.1f} days, below {thresholds.stock_critical_days:g}; "
            f"restock before raising the price"
        )

    return False, f"Stock covers {cover:.1f} days"


def check_spend_leak(snapshot: SKUSnapshot, proposed: ProposedAction, thresholds: CategoryThresholds) -> Tuple[bool, str]:
    """Gèle le prix quand la publicité dépense sans produire de commande."""
    if proposed.action is PriceAction.HOLD:
        return False, "No price change proposed"

    if snapshot.ad_orders is None:
        return False, "Ad-attributed orders unknown"

    limit = thresholds.spend_leak_min_spend
    if snapshot.ad_spend > limit and snapshot.ad_orders == 0:
        return True, (
            f"Ad spend of {snapshot.ad_spend:.0f} brought no orders (limit {limit:g}); "
            f"fix the campaign before touching the price"
        )

    return False, f"Ad spend {snapshot.ad_spend:.0f} for {snapshot.ad_orders} orders"


def check_confidence_floor(snapshot: SKUSnapshot, proposed: ProposedAction, thresholds: CategoryThresholds) -> Tuple[bool, str]:
    if proposed.action is PriceAction.HOLD:
        return False, "No price change proposed"

    floor = thresholds.confidence_floor
    if proposed.confidence < floor:
        return True, f"Confidence {proposed.confidence:.2f} below {floor:.2f}; send to manual review"

    return False, f"Confidence {proposed.confidence:.2f} meets the {floor:.2f} floor"


class GuardEngine:
    """
    Évalue les garde-fous dans l'ordre fixe de GUARD_NAMES.

    Par défaut tous les garde-fous sont bloquants (HARD). Ceux listés dans
    `soft_guards` ne font que réduire l'amplitude et la confiance.
    """

    def __init__(self, soft_guards: Iterable[str] = ()):
        soft = frozenset(soft_guards)
        unknown = soft - set(GUARD_NAMES)
        if unknown:
            raise ConfigurationError(f"Unknown guards declared soft: {sorted(unknown)}")
        self.soft_guards = soft

    def severity_for(self, guard: str) -> GuardSeverity:
        return GuardSeverity.SOFT if guard in self.soft_guards else GuardSeverity.HARD

    def evaluate_guards(
        self,
        snapshot: SKUSnapshot,
        mode: ModeResult,
        proposed: ProposedAction,
        thresholds: CategoryThresholds,
        as_of: date,
        is_gold: bool = False,
        manual_lock: Optional[ManualLock] = None,
    ) -> Tuple[GuardResult, ...]:
        """
        Évalue tous les garde-fous pour une action proposée.

        Args:
            snapshot: Télémétrie du SKU
            mode: Mode attribué au SKU
            proposed: Action envisagée (avant garde-fous)
            thresholds: Seuils effectifs
            as_of: Date du run (référence du cooldown et des verrous)
            is_gold: SKU de la liste gold (cooldown allongé, pas plafonné)
            manual_lock: Verrou opérateur actif, le cas échéant

        Returns:
            Un GuardResult par garde-fou, dans l'ordre de GUARD_NAMES
        """
        checks: Dict[str, Callable[[], Tuple[bool, str]]] = {
            MANUAL_LOCK: lambda: check_manual_lock(snapshot, proposed, manual_lock),
            DATA_SUFFICIENCY: lambda: check_data_sufficiency(snapshot, proposed, thresholds),
            MARGIN_FLOOR: lambda: check_margin_floor(snapshot, proposed, thresholds),
            COOLDOWN: lambda: check_cooldown(snapshot, proposed, thresholds, as_of, is_gold),
            GOLD_STEP_CAP: lambda: check_gold_step_cap(snapshot, proposed, thresholds, is_gold),
            RANK_DROP: lambda: check_rank_drop(snapshot, proposed, thresholds),
            STOCK_FOR_INCREASE: lambda: check_stock_for_increase(snapshot, proposed, thresholds),
            SPEND_LEAK: lambda: check_spend_leak(snapshot, proposed, thresholds),
            CONFIDENCE_FLOOR: lambda: check_confidence_floor(snapshot, proposed, thresholds),
        }

        results = []
        for name in GUARD_NAMES:
            blocked, reason = checks[name]()
            results.append(GuardResult(guard=name, blocked=blocked, reason=reason, severity=self.severity_for(name)))
            if blocked:
                logger.debug(f"{snapshot.sku}: guard {name} blocked {proposed.action.value} ({mode.mode.value})")

        return tuple(results)


_default_engine = GuardEngine()


def evaluate_guards(
    snapshot: SKUSnapshot,
    mode: ModeResult,
    proposed: ProposedAction,
    thresholds: CategoryThresholds,
    as_of: date,
    is_gold: bool = False,
    manual_lock: Optional[ManualLock] = None,
) -> Tuple[GuardResult, ...]:
    """Évalue les garde-fous avec le moteur par défaut (tous bloquants)."""
    return _default_engine.evaluate_guards(snapshot, mode, proposed, thresholds, as_of, is_gold, manual_lock)


def get_blocking_guards(results: Iterable[GuardResult]) -> List[GuardResult]:
    return [r for r in results if r.blocked]
