"""
Orchestration du moteur de décision prix.

Ce module est responsable de :
- enchaîner mode -> diagnostics -> proposition -> garde-fous -> décision
  pour un SKU,
- exécuter un batch de SKU avec un seul snapshot de seuils,
- fournir les vues agrégées (par mode, statistiques, top priorités).

Un SKU ne fait jamais échouer le batch : une erreur interne produit un
résultat de repli (hold, confiance 0).
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import pandas as pd

from .config import get_default_settings, get_run_date
from .decision import decide, estimate_revenue_impact, format_decision, format_price_delta, get_urgency, propose_action
from .diagnostics import diagnose, get_most_critical_diagnosis
from .exceptions import InvariantViolation
from .guards import GuardEngine
from .interfaces.data_access import snapshot_from_dict
from .mode_classifier import classify_mode, get_mode_label
from .records import (
    ActionHint,
    Decision,
    Diagnosis,
    Mode,
    ModeResult,
    OptimizerResult,
    PriceAction,
    ReasonEntry,
    ReasonKind,
    SKUSnapshot,
    Urgency,
    sanitize_snapshot,
)
from .thresholds import ThresholdConfig, ThresholdConfigProvider, get_threshold_provider

logger = logging.getLogger(__name__)


INTERNAL_ERROR_CODE = "internal-error"

# Consignes hors prix associées aux diagnostics
HINT_ADVICE: Dict[ActionHint, str] = {
    ActionHint.RESTOCK: "restock",
    ActionHint.ADS_DOWN: "reduce advertising spend",
    ActionHint.FIX_CARD: "review the product card",
    ActionHint.REVIEW_DATA: "check the telemetry",
}

_default_guard_engine = GuardEngine()


def build_summary(mode: ModeResult, decision: Decision, diagnoses: Sequence[Diagnosis]) -> str:
    """Résumé court : mode -> action | diagnostic principal [blocages]."""
    summary = get_mode_label(mode.mode)

    if decision.action is not PriceAction.HOLD:
        summary += f" -> {decision.action.value} {format_price_delta(decision.delta_pct)}"

    main_diagnosis = get_most_critical_diagnosis(diagnoses)
    if main_diagnosis:
        summary += f" | {main_diagnosis.reason.split(';')[0]}"

    if decision.blocked_by:
        summary += f" [{len(decision.blocked_by)} blocked]"

    return summary


def build_recommendation(decision: Decision, diagnoses: Sequence[Diagnosis]) -> str:
    """Recommandation lisible : décision prix puis actions hors prix."""
    text = format_decision(decision.action, decision.delta_pct, decision.confidence, decision.blocked_by)

    advice = []
    for diagnosis in diagnoses:
        item = HINT_ADVICE.get(diagnosis.action_hint)
        if item and item not in advice:
            advice.append(item)

    if advice:
        text += ". Also: " + ", ".join(advice)
    return text


def _fallback_result(snapshot: SKUSnapshot, error: Exception) -> OptimizerResult:
    message = f"Internal error while optimizing: {type(error).__name__}: {error}"
    decision = Decision(
        action=PriceAction.HOLD,
        delta_pct=0.0,
        confidence=0.0,
        priority_level=0,
        blocked_by=(),
        reason_chain=(
            ReasonEntry(ReasonKind.ERROR, INTERNAL_ERROR_CODE, message),
            ReasonEntry(ReasonKind.ACTION, PriceAction.HOLD.value, "Hold price: manual review required"),
        ),
    )
    return OptimizerResult(
        sku=snapshot.sku,
        nm_id=snapshot.nm_id,
        category=snapshot.category,
        mode=ModeResult(mode=Mode.COW, rule=INTERNAL_ERROR_CODE, reason="Mode unavailable after internal error"),
        diagnoses=(),
        guards=(),
        decision=decision,
        recommendation="Hold price: internal error, manual review required",
        summary=f"{get_mode_label(Mode.COW)} | internal error",
        urgency=Urgency.WARNING,
    )


def _run_pipeline(
    snapshot: SKUSnapshot,
    config: ThresholdConfig,
    as_of: date,
    guard_engine: GuardEngine,
) -> OptimizerResult:
    # Les valeurs NaN ou négatives ne doivent atteindre ni le mode ni le score
    snapshot = sanitize_snapshot(snapshot)
    thresholds = config.get_thresholds(snapshot.category, snapshot.sku)
    is_gold = config.is_gold_sku(snapshot.sku)
    manual_lock = config.get_manual_lock(snapshot.sku, as_of)

    mode = classify_mode(snapshot, thresholds)
    diagnoses = diagnose(snapshot, thresholds)
    proposal = propose_action(snapshot, mode, diagnoses, thresholds, is_gold)
    guards = guard_engine.evaluate_guards(snapshot, mode, proposal, thresholds, as_of, is_gold, manual_lock)
    decision = decide(snapshot, mode, diagnoses, guards, thresholds, is_gold, proposal=proposal)

    expected_revenue_delta = 0.0
    if decision.is_actionable:
        expected_revenue_delta = estimate_revenue_impact(snapshot, decision.delta_pct)["expected_revenue_delta"]

    return OptimizerResult(
        sku=snapshot.sku,
        nm_id=snapshot.nm_id,
        category=snapshot.category,
        mode=mode,
        diagnoses=diagnoses,
        guards=guards,
        decision=decision,
        recommendation=build_recommendation(decision, diagnoses),
        summary=build_summary(mode, decision, diagnoses),
        urgency=get_urgency(decision),
        expected_revenue_delta=expected_revenue_delta,
    )


def run_optimizer(
    snapshot: SKUSnapshot,
    config: ThresholdConfig,
    as_of: date,
    guard_engine: Optional[GuardEngine] = None,
) -> OptimizerResult:
    """
    Exécute le pipeline complet pour un SKU.

    Args:
        snapshot: Télémétrie du SKU
        config: Snapshot de seuils (fixé pour tout le batch)
        as_of: Date du run
        guard_engine: Moteur de garde-fous (par défaut : tous bloquants)

    Returns:
        OptimizerResult ; en cas d'erreur interne, un résultat de repli
        (hold, confiance 0, raison `internal-error`)
    """
    try:
        return _run_pipeline(snapshot, config, as_of, guard_engine or _default_guard_engine)
    except (InvariantViolation, ValueError, TypeError, ArithmeticError) as e:
        logger.exception(f"Optimizer failed for SKU {snapshot.sku!r}, returning safe fallback")
        return _fallback_result(snapshot, e)


def run_optimizer_batch(
    snapshots: Iterable[Union[SKUSnapshot, Dict[str, Any]]],
    provider: Optional[ThresholdConfigProvider] = None,
    as_of: Optional[date] = None,
    max_workers: Optional[int] = None,
    guard_engine: Optional[GuardEngine] = None,
) -> List[OptimizerResult]:
    """
    Exécute le pipeline sur un batch de SKU.

    Le snapshot de seuils est lu une seule fois : un rechargement pendant le
    batch n'a pas d'effet sur celui-ci. L'ordre des résultats suit l'ordre
    des entrées.

    Args:
        snapshots: SKUSnapshot ou lignes brutes (dict)
        provider: Fournisseur de seuils (par défaut : singleton)
        as_of: Date du run (par défaut : aujourd'hui dans le fuseau configuré)
        max_workers: Threads (par défaut : settings ; 1 = séquentiel)
        guard_engine: Moteur de garde-fous

    Returns:
        Un OptimizerResult par entrée
    """
    provider = provider or get_threshold_provider()
    config = provider.snapshot()
    as_of = as_of or get_run_date()
    if max_workers is None:
        max_workers = get_default_settings().max_workers
    engine = guard_engine or _default_guard_engine

    items = [s if isinstance(s, SKUSnapshot) else snapshot_from_dict(s) for s in snapshots]

    def _run(snapshot: SKUSnapshot) -> OptimizerResult:
        return run_optimizer(snapshot, config, as_of, engine)

    if max_workers > 1 and len(items) > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            results = list(executor.map(_run, items))
    else:
        results = [_run(snapshot) for snapshot in items]

    stats = get_action_stats(results)
    logger.info(
        f"Optimized {stats['total']} SKUs (thresholds v{config.version}, {as_of.isoformat()}): "
        f"{stats['increase']} increase, {stats['decrease']} decrease, "
        f"{stats['hold']} hold, {stats['blocked']} blocked"
    )
    return results


def group_by_mode(results: Iterable[OptimizerResult]) -> Dict[str, List[OptimizerResult]]:
    """Partitionne les résultats par mode (les quatre clés sont toujours présentes)."""
    grouped: Dict[str, List[OptimizerResult]] = {mode.value: [] for mode in Mode}
    for result in results:
        grouped[result.mode.mode.value].append(result)
    return grouped


def get_action_stats(results: Sequence[OptimizerResult]) -> Dict[str, Any]:
    stats: Dict[str, Any] = {
        "total": len(results),
        "increase": 0,
        "decrease": 0,
        "hold": 0,
        "blocked": 0,
        "by_mode": {mode.value: 0 for mode in Mode},
    }
    for result in results:
        stats[result.decision.action.value] += 1
        if result.decision.blocked_by:
            stats["blocked"] += 1
        stats["by_mode"][result.mode.mode.value] += 1
    return stats


def get_top_priority_items(
    results: Iterable[OptimizerResult],
    n: int = 10,
    actionable_only: bool = False,
) -> List[OptimizerResult]:
    """
    Les `n` résultats les plus prioritaires.

    Tri stable : priorité décroissante, puis chiffre d'affaires en jeu
    décroissant, puis SKU croissant.
    """
    if n <= 0:
        return []

    candidates = [r for r in results if not actionable_only or r.decision.is_actionable]
    ranked = sorted(
        candidates,
        key=lambda r: (-r.decision.priority_level, -r.decision.revenue_at_stake, r.sku),
    )
    return ranked[:n]


def get_blocked_by_guard(results: Iterable[OptimizerResult], guard: str) -> List[OptimizerResult]:
    return [r for r in results if guard in r.decision.blocked_by]


def calculate_total_impact(results: Iterable[OptimizerResult]) -> Dict[str, float]:
    """Impact cumulé estimé des décisions actionnables."""
    total = 0.0
    affected = 0
    for result in results:
        if result.decision.is_actionable:
            total += result.expected_revenue_delta
            affected += 1
    return {"expected_revenue_delta": round(total, 2), "affected_skus": affected}


def results_to_dataframe(results: Iterable[OptimizerResult]) -> pd.DataFrame:
    """Vue tabulaire des résultats (une ligne par SKU)."""
    rows = [
        {
            "sku": r.sku,
            "nm_id": r.nm_id,
            "category": r.category,
            "mode": r.mode.mode.value,
            "action": r.decision.action.value,
            "delta_pct": r.decision.delta_pct,
            "confidence": r.decision.confidence,
            "priority_level": r.decision.priority_level,
            "blocked_by": ", ".join(r.decision.blocked_by),
            "urgency": r.urgency.value,
            "revenue_at_stake": r.decision.revenue_at_stake,
            "expected_revenue_delta": r.expected_revenue_delta,
            "summary": r.summary,
        }
        for r in results
    ]
    columns = [
        "sku", "nm_id", "category", "mode", "action", "delta_pct", "confidence",
        "priority_level", "blocked_by", "urgency", "revenue_at_stake",
        "expected_revenue_delta", "summary",
    ]
    return pd.DataFrame(rows, columns=columns)
