"""
Structures de données du moteur de décision prix.

Ce module définit :
- le snapshot d'entrée par SKU (`SKUSnapshot`),
- les modes, diagnostics, résultats de garde-fous et décisions,
- le résultat agrégé renvoyé par l'orchestrateur (`OptimizerResult`).

Tous les enregistrements sont immuables : ils sont construits une fois par run
et ne sont jamais modifiés ni persistés par le moteur.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

# Couverture retenue quand il y a du stock mais aucune vente
NO_SALES_COVER_DAYS = 999.0

# Horizon (jours) du chiffre d'affaires considéré "en jeu"
REVENUE_HORIZON_DAYS = 7


class Mode(Enum):
    """Régime de fonctionnement d'un SKU."""
    STOP = "STOP"
    CLEAR = "CLEAR"
    COW = "COW"
    GROWTH = "GROWTH"


class PriceAction(Enum):
    """Action prix finale."""
    INCREASE = "increase"
    DECREASE = "decrease"
    HOLD = "hold"


class DiagnosisBlock(Enum):
    """Famille de diagnostic."""
    DATA = "data"
    STOCK = "stock"
    CONVERSION = "conversion"
    ADVERTISING = "advertising"
    FULFILMENT = "fulfilment"
    SALES = "sales"


class ActionHint(Enum):
    """Action suggérée par un diagnostic."""
    HOLD = "hold"
    PRICE_UP = "price_up"
    PRICE_DOWN = "price_down"
    RESTOCK = "restock"
    ADS_DOWN = "ads_down"
    FIX_CARD = "fix_card"
    REVIEW_DATA = "review_data"


class GuardSeverity(Enum):
    """Un garde-fou HARD force hold, un SOFT réduit seulement l'amplitude."""
    HARD = "hard"
    SOFT = "soft"


class ReasonKind(Enum):
    MODE = "mode"
    DIAGNOSIS = "diagnosis"
    GUARD = "guard"
    ACTION = "action"
    ERROR = "error"


class Urgency(Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"
    SUCCESS = "success"


@dataclass(frozen=True)
class SKUSnapshot:
    """
    Télémétrie d'un SKU pour un run.

    Les taux (`cr_cart`, `cr_order`, `buyout_pct`, `cost_of_sale_pct`,
    `sales_trend_pct`) sont exprimés en pourcentage. `data_issues` contient
    les anomalies relevées lors du parsing (champ manquant, valeur illisible).
    """

    sku: str
    category: str = ""
    nm_id: Optional[int] = None
    title: str = ""

    # Stock
    stock_on_hand: float = 0.0
    stock_in_transit: float = 0.0
    effective_stock: Optional[float] = None

    # Vélocité
    orders_per_day: float = 0.0

    # Funnel (fenêtre 7-14 jours)
    card_views: int = 0
    cart_adds: int = 0
    orders: int = 0
    cr_cart: Optional[float] = None
    cr_order: Optional[float] = None
    buyout_pct: Optional[float] = None

    # Prix
    current_price: float = 0.0
    cost_price: Optional[float] = None
    margin_pct: Optional[float] = None

    # Publicité
    cost_of_sale_pct: Optional[float] = None
    ad_spend: float = 0.0
    # Commandes attribuées à la publicité sur la même fenêtre
    ad_orders: Optional[int] = None

    # Tendance vs période précédente
    sales_trend_pct: Optional[float] = None

    # Historique prix
    last_price_change: Optional[date] = None
    days_since_price_change: Optional[int] = None

    data_issues: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.effective_stock is None:
            object.__setattr__(self, "effective_stock", self.stock_on_hand + self.stock_in_transit)

    @property
    def stock_cover_days(self) -> float:
        """Jours de stock restants au rythme de vente actuel."""
        if self.effective_stock <= 0:
            return 0.0
        if self.orders_per_day <= 0:
            return NO_SALES_COVER_DAYS
        return self.effective_stock / self.orders_per_day

    @property
    def cart_conversion(self) -> Optional[float]:
        """Conversion fiche -> panier (%), recalculée depuis les compteurs si absente."""
        if self.cr_cart is not None:
            return self.cr_cart
        if self.card_views > 0:
            return self.cart_adds / self.card_views * 100.0
        return None

    @property
    def order_conversion(self) -> Optional[float]:
        """Conversion panier -> commande (%)."""
        if self.cr_order is not None:
            return self.cr_order
        if self.cart_adds > 0:
            return self.orders / self.cart_adds * 100.0
        return None

    @property
    def revenue_at_stake(self) -> float:
        """Chiffre d'affaires sur l'horizon de référence au prix actuel."""
        return max(self.current_price, 0.0) * max(self.orders_per_day, 0.0) * REVENUE_HORIZON_DAYS

    def days_since_last_change(self, as_of: date) -> Optional[int]:
        """Nombre de jours depuis le dernier changement de prix, si connu."""
        if self.last_price_change is not None:
            return max((as_of - self.last_price_change).days, 0)
        return self.days_since_price_change


# Champs numériques obligatoires : remis à 0 s'ils sont invalides
_NUMERIC_FIELDS = (
    "stock_on_hand", "stock_in_transit", "orders_per_day",
    "card_views", "cart_adds", "orders", "current_price", "ad_spend",
)
# Champs numériques optionnels : remis à None s'ils sont illisibles
_OPTIONAL_NUMERIC_FIELDS = (
    "effective_stock", "cr_cart", "cr_order", "buyout_pct", "cost_price", "margin_pct",
    "cost_of_sale_pct", "sales_trend_pct", "ad_orders", "days_since_price_change",
)


def _is_finite_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        return False


def sanitize_snapshot(snapshot: SKUSnapshot) -> SKUSnapshot:
    """
    Retire du calcul les valeurs numériques inexploitables.

    NaN, infini, valeur non numérique ou négative (pour les compteurs et
    montants) sont remplacés par 0 (ou None pour un champ optionnel) et
    consignés dans `data_issues`. Un snapshot déjà propre est renvoyé tel quel.
    """
    changes: Dict[str, Any] = {}
    issues = []

    for name in _NUMERIC_FIELDS:
        value = getattr(snapshot, name)
        if not _is_finite_number(value):
            issues.append(f"invalid {name}: {value!r}")
            changes[name] = 0
        elif value < 0:
            issues.append(f"negative {name}: {value:g}")
            changes[name] = 0

    for name in _OPTIONAL_NUMERIC_FIELDS:
        value = getattr(snapshot, name)
        if value is not None and not _is_finite_number(value):
            issues.append(f"invalid {name}: {value!r}")
            changes[name] = None

    if "effective_stock" not in changes:
        if snapshot.effective_stock < 0:
            issues.append(f"negative effective_stock: {snapshot.effective_stock:g}")
            changes["effective_stock"] = 0.0
        elif "stock_on_hand" in changes or "stock_in_transit" in changes:
            # Stock effectif dérivé de composantes corrigées : on le recalcule
            changes["effective_stock"] = None

    if not issues:
        return snapshot
    return replace(snapshot, data_issues=tuple(snapshot.data_issues) + tuple(issues), **changes)


@dataclass(frozen=True)
class ModeResult:
    mode: Mode
    rule: str
    reason: str


@dataclass(frozen=True)
class Diagnosis:
    """
    Problème (ou opportunité) détecté sur un SKU.

    `confidence` est le poids de support du diagnostic ; `delta_contribution`
    sa contribution signée à la variation de prix (0 si le prix n'est pas le
    levier).
    """

    block: DiagnosisBlock
    code: str
    action_hint: ActionHint
    reason: str
    confidence: float = 0.5
    delta_contribution: float = 0.0
    metrics: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProposedAction:
    """Action envisagée avant passage des garde-fous."""
    action: PriceAction
    delta_pct: float
    confidence: float


@dataclass(frozen=True)
class GuardResult:
    guard: str
    blocked: bool
    reason: str
    severity: GuardSeverity = GuardSeverity.HARD

    @property
    def is_hard_block(self) -> bool:
        return self.blocked and self.severity is GuardSeverity.HARD


@dataclass(frozen=True)
class ReasonEntry:
    """Maillon typé de la chaîne d'explication."""
    kind: ReasonKind
    code: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind.value, "code": self.code, "message": self.message}


@dataclass(frozen=True)
class Decision:
    action: PriceAction
    delta_pct: float
    confidence: float
    priority_level: int
    blocked_by: Tuple[str, ...]
    reason_chain: Tuple[ReasonEntry, ...]
    dampened_by: Tuple[str, ...] = ()
    revenue_at_stake: float = 0.0

    @property
    def is_actionable(self) -> bool:
        return self.action is not PriceAction.HOLD and self.delta_pct != 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "delta_pct": self.delta_pct,
            "confidence": self.confidence,
            "priority_level": self.priority_level,
            "blocked_by": list(self.blocked_by),
            "dampened_by": list(self.dampened_by),
            "reason_chain": [entry.to_dict() for entry in self.reason_chain],
            "revenue_at_stake": self.revenue_at_stake,
        }


@dataclass(frozen=True)
class OptimizerResult:
    """Résultat complet pour un SKU, prêt pour la sérialisation / l'affichage."""

    sku: str
    nm_id: Optional[int]
    category: str
    mode: ModeResult
    diagnoses: Tuple[Diagnosis, ...]
    guards: Tuple[GuardResult, ...]
    decision: Decision
    recommendation: str
    summary: str
    urgency: Urgency
    expected_revenue_delta: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convertit en dict (valeurs d'enum remplacées par leur valeur)."""
        return {
            "sku": self.sku,
            "nm_id": self.nm_id,
            "category": self.category,
            "mode": {
                "mode": self.mode.mode.value,
                "rule": self.mode.rule,
                "reason": self.mode.reason,
            },
            "diagnoses": [
                {
                    "block": d.block.value,
                    "code": d.code,
                    "action_hint": d.action_hint.value,
                    "reason": d.reason,
                    "confidence": d.confidence,
                    "delta_contribution": d.delta_contribution,
                    "metrics": dict(d.metrics),
                }
                for d in self.diagnoses
            ],
            "guards": [
                {
                    "guard": g.guard,
                    "blocked": g.blocked,
                    "severity": g.severity.value,
                    "reason": g.reason,
                }
                for g in self.guards
            ],
            "decision": self.decision.to_dict(),
            "recommendation": self.recommendation,
            "summary": self.summary,
            "urgency": self.urgency.value,
            "expected_revenue_delta": self.expected_revenue_delta,
        }
