"""
Moteur de décision : combine mode, diagnostics et garde-fous en une décision
explicable.

Étapes :
1. biais par défaut du mode (STOP/COW -> hold, CLEAR -> baisse, GROWTH -> hausse),
2. contributions signées des diagnostics pondérées par leur poids, somme
   bornée au pas maximal de la catégorie (réduit pour les SKU gold),
3. confiance = base du mode x poids des diagnostics x suffisance de l'échantillon,
4. un garde-fou bloquant force hold ; un garde-fou souple divise le pas par deux,
5. niveau de priorité 0-100 (classement uniquement, jamais de filtrage),
6. chaîne de raisons typée : mode -> diagnostics -> garde-fous -> action.
"""

import logging
import math
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from .diagnostics import is_data_quality
from .exceptions import InvariantViolation
from .mode_classifier import MAX_MODE_SEVERITY, get_mode_policy
from .records import (
    REVENUE_HORIZON_DAYS,
    Decision,
    Diagnosis,
    GuardResult,
    GuardSeverity,
    Mode,
    ModeResult,
    PriceAction,
    ProposedAction,
    ReasonEntry,
    ReasonKind,
    SKUSnapshot,
    Urgency,
)
from .thresholds import CategoryThresholds

logger = logging.getLogger(__name__)


DEFAULT_ELASTICITY = -1.5

# Variations simulées pour la grille de scénarios
SCENARIO_STEPS = (-0.10, -0.05, 0.0, 0.03, 0.05)

# Effet d'un garde-fou souple
SOFT_STEP_FACTOR = 0.5
SOFT_CONFIDENCE_FACTOR = 0.8

# Priorité à partir de laquelle une décision est urgente
URGENT_PRIORITY = 75


def get_max_step(thresholds: CategoryThresholds, is_gold: bool = False) -> float:
    return thresholds.max_step_pct_gold if is_gold else thresholds.max_step_pct


def sample_sufficiency(snapshot: SKUSnapshot, thresholds: CategoryThresholds) -> float:
    """Part de l'échantillon minimal atteinte (0 à 1), sur les vues et les commandes."""
    ratios = [1.0]
    if thresholds.min_card_views > 0:
        ratios.append(snapshot.card_views / thresholds.min_card_views)
    if thresholds.min_orders > 0:
        ratios.append(snapshot.orders / thresholds.min_orders)
    return max(0.0, min(ratios))


def _clip_confidence(value: float) -> float:
    if math.isnan(value):
        raise InvariantViolation("Confidence is NaN")
    return round(float(np.clip(value, 0.0, 1.0)), 4)


def _action_for_delta(delta_pct: float) -> PriceAction:
    if delta_pct > 0:
        return PriceAction.INCREASE
    if delta_pct < 0:
        return PriceAction.DECREASE
    return PriceAction.HOLD


def propose_action(
    snapshot: SKUSnapshot,
    mode: ModeResult,
    diagnoses: Sequence[Diagnosis],
    thresholds: CategoryThresholds,
    is_gold: bool = False,
) -> ProposedAction:
    """
    Action envisagée avant garde-fous (étapes 1 à 3).

    Un mode qui gèle le prix (STOP) propose toujours hold.
    """
    policy = get_mode_policy(mode.mode)

    contributing = [d for d in diagnoses if d.delta_contribution != 0]
    weighted = [d for d in diagnoses if d.delta_contribution != 0 or is_data_quality(d)]

    support = float(np.prod([d.confidence for d in weighted])) if weighted else 1.0
    sufficiency = sample_sufficiency(snapshot, thresholds)
    confidence = _clip_confidence(policy.base_confidence * support * (0.5 + 0.5 * sufficiency))

    if policy.freezes_price:
        return ProposedAction(PriceAction.HOLD, 0.0, confidence)

    max_step = get_max_step(thresholds, is_gold)
    raw_delta = policy.default_step(thresholds) + sum(d.delta_contribution * d.confidence for d in contributing)
    delta_pct = round(float(np.clip(raw_delta, -max_step, max_step)), 4)

    if abs(delta_pct) < thresholds.min_step_pct:
        return ProposedAction(PriceAction.HOLD, 0.0, confidence)

    return ProposedAction(_action_for_delta(delta_pct), delta_pct, confidence)


def calculate_priority_level(
    snapshot: SKUSnapshot,
    mode: Mode,
    delta_pct: float,
    confidence: float,
    thresholds: CategoryThresholds,
    is_gold: bool = False,
) -> int:
    """
    Niveau de priorité 0-100, à part égale entre sévérité du mode, confiance,
    amplitude du pas et chiffre d'affaires en jeu (échelle logarithmique).
    """
    severity = get_mode_policy(mode).severity / MAX_MODE_SEVERITY

    max_step = get_max_step(thresholds, is_gold)
    magnitude = min(abs(delta_pct) / max_step, 1.0) if max_step > 0 else 0.0

    revenue = snapshot.revenue_at_stake
    revenue_score = min(1.0, math.log1p(revenue) / math.log1p(thresholds.revenue_reference))

    score = 25 * (severity + confidence + magnitude + revenue_score)
    return int(np.clip(round(score), 0, 100))


def format_price_delta(delta_pct: float) -> str:
    """0.035 -> '+3.5%', -0.02 -> '-2.0%', 0 -> '0%'."""
    if delta_pct == 0:
        return "0%"
    return f"{delta_pct * 100:+.1f}%"


def format_decision(
    action: PriceAction,
    delta_pct: float,
    confidence: float,
    blocked_by: Sequence[str] = (),
) -> str:
    """Résumé d'une ligne de la décision."""
    if action is PriceAction.HOLD:
        if blocked_by:
            return f"Hold price: blocked by {', '.join(blocked_by)}"
        return f"Hold price (confidence {confidence:.0%})"

    verb = "Raise" if action is PriceAction.INCREASE else "Lower"
    return f"{verb} price {format_price_delta(delta_pct)} (confidence {confidence:.0%})"


def decide(
    snapshot: SKUSnapshot,
    mode: ModeResult,
    diagnoses: Sequence[Diagnosis],
    guard_results: Sequence[GuardResult],
    thresholds: CategoryThresholds,
    is_gold: bool = False,
    proposal: Optional[ProposedAction] = None,
) -> Decision:
    """
    Produit la décision finale d'un SKU.

    Args:
        snapshot: Télémétrie du SKU
        mode: Mode attribué
        diagnoses: Diagnostics déclenchés
        guard_results: Résultats de tous les garde-fous
        thresholds: Seuils effectifs
        is_gold: SKU de la liste gold
        proposal: Action envisagée déjà calculée (sinon recalculée)

    Returns:
        Decision immuable

    Raises:
        InvariantViolation: si la décision produite est incohérente
    """
    if proposal is None:
        proposal = propose_action(snapshot, mode, diagnoses, thresholds, is_gold)

    hard_blocks = [g for g in guard_results if g.is_hard_block]
    soft_blocks = [g for g in guard_results if g.blocked and g.severity is GuardSeverity.SOFT]

    delta_pct = proposal.delta_pct
    confidence = proposal.confidence
    dampened_by = ()

    if hard_blocks:
        if proposal.delta_pct != 0:
            logger.debug(
                f"{snapshot.sku}: {proposal.action.value} {format_price_delta(proposal.delta_pct)} "
                f"vetoed by {', '.join(g.guard for g in hard_blocks)}"
            )
        delta_pct = 0.0
    elif soft_blocks and delta_pct != 0:
        delta_pct = round(delta_pct * SOFT_STEP_FACTOR, 4)
        confidence = _clip_confidence(confidence * SOFT_CONFIDENCE_FACTOR)
        dampened_by = tuple(g.guard for g in soft_blocks)
        if abs(delta_pct) < thresholds.min_step_pct:
            delta_pct = 0.0

    action = _action_for_delta(delta_pct)
    blocked_by = tuple(g.guard for g in hard_blocks)

    if not 0.0 <= confidence <= 1.0:
        raise InvariantViolation(f"Confidence {confidence} out of range for {snapshot.sku}")

    priority_level = calculate_priority_level(snapshot, mode.mode, delta_pct, confidence, thresholds, is_gold)

    chain = [ReasonEntry(ReasonKind.MODE, mode.rule, mode.reason)]
    chain.extend(ReasonEntry(ReasonKind.DIAGNOSIS, d.code, d.reason) for d in diagnoses)
    chain.extend(ReasonEntry(ReasonKind.GUARD, g.guard, g.reason) for g in guard_results if g.blocked)
    chain.append(ReasonEntry(ReasonKind.ACTION, action.value, format_decision(action, delta_pct, confidence, blocked_by)))

    return Decision(
        action=action,
        delta_pct=delta_pct,
        confidence=confidence,
        priority_level=priority_level,
        blocked_by=blocked_by,
        reason_chain=tuple(chain),
        dampened_by=dampened_by,
        revenue_at_stake=round(snapshot.revenue_at_stake, 2),
    )


def estimate_revenue_impact(
    snapshot: SKUSnapshot,
    delta_pct: float,
    elasticity: float = DEFAULT_ELASTICITY,
) -> Dict[str, float]:
    """
    Estime l'effet d'une variation de prix sur l'horizon de référence.

    La demande varie de `delta_pct * elasticity` ; le chiffre d'affaires est
    comparé à celui du prix actuel sur REVENUE_HORIZON_DAYS jours.
    """
    new_price = snapshot.current_price * (1 + delta_pct)
    new_orders_per_day = max(snapshot.orders_per_day * (1 + delta_pct * elasticity), 0.0)

    current_revenue = snapshot.revenue_at_stake
    new_revenue = max(new_price, 0.0) * new_orders_per_day * REVENUE_HORIZON_DAYS

    return {
        "new_price": round(new_price, 2),
        "expected_orders_delta": round(new_orders_per_day - snapshot.orders_per_day, 4),
        "expected_revenue_delta": round(new_revenue - current_revenue, 2),
    }


def generate_price_scenarios(
    snapshot: SKUSnapshot,
    steps: Sequence[float] = SCENARIO_STEPS,
    elasticity: float = DEFAULT_ELASTICITY,
) -> List[Dict[str, Any]]:
    """
    Simule chaque variation de prix de `steps`.

    Pour chaque pas : nouveau prix, commandes/jour attendues, chiffre
    d'affaires et (si le coût unitaire est connu) profit sur l'horizon de
    référence.
    """
    scenarios: List[Dict[str, Any]] = []
    for step in steps:
        impact = estimate_revenue_impact(snapshot, step, elasticity)
        orders_per_day = max(snapshot.orders_per_day + impact["expected_orders_delta"], 0.0)
        new_price = max(impact["new_price"], 0.0)

        expected_profit = None
        if snapshot.cost_price is not None and snapshot.cost_price > 0:
            expected_profit = round((new_price - snapshot.cost_price) * orders_per_day * REVENUE_HORIZON_DAYS, 2)

        scenarios.append({
            "delta_pct": step,
            "new_price": new_price,
            "expected_orders_per_day": round(orders_per_day, 4),
            "expected_revenue": round(new_price * orders_per_day * REVENUE_HORIZON_DAYS, 2),
            "expected_profit": expected_profit,
        })
    return scenarios


def find_optimal_scenario(scenarios: Sequence[Dict[str, Any]], current_price: float = 0.0) -> Dict[str, Any]:
    """
    Scénario au meilleur profit attendu (chiffre d'affaires si le coût est inconnu).

    Sans scénario exploitable, renvoie le statu quo au prix actuel.
    """
    if not scenarios:
        return {
            "delta_pct": 0.0,
            "new_price": current_price,
            "expected_orders_per_day": 0.0,
            "expected_revenue": 0.0,
            "expected_profit": None,
        }

    with_profit = [s for s in scenarios if s.get("expected_profit") is not None]
    if with_profit:
        return max(with_profit, key=lambda s: s["expected_profit"])
    return max(scenarios, key=lambda s: s["expected_revenue"])


def get_urgency(decision: Decision) -> Urgency:
    if decision.priority_level >= URGENT_PRIORITY:
        return Urgency.WARNING if decision.action is PriceAction.HOLD else Urgency.CRITICAL
    if decision.action is PriceAction.HOLD:
        return Urgency.INFO
    if decision.action is PriceAction.INCREASE:
        return Urgency.SUCCESS
    return Urgency.WARNING


def is_actionable(decision: Decision) -> bool:
    return decision.is_actionable

