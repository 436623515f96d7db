"""
Gestion des seuils par catégorie pour le moteur de décision prix.

Les seuils sont organisés en couches fusionnées champ par champ :
    défauts globaux < surcharge catégorie < surcharge SKU

La configuration active est un snapshot immuable (`ThresholdConfig`) que le
fournisseur remplace d'un bloc lors d'un rechargement. Un batch récupère le
snapshot une seule fois et l'utilise jusqu'au bout, même si un rechargement
intervient entre-temps.
"""

import logging
import math
import threading
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

import yaml
from dateutil import parser as date_parser

from .config import Settings, get_default_settings
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


# Champs surchargeables, dans l'ordre de déclaration de CategoryThresholds
THRESHOLD_FIELDS: Tuple[str, ...] = (
    # Stock (jours de couverture)
    "stock_critical_days",
    "stock_warning_days",
    "stock_overstock_days",
    # Conversion (%)
    "cr_cart_low",
    "cr_order_low",
    "cr_cart_high",
    # Publicité : part des dépenses pub dans le CA (%)
    "cost_of_sale_high",
    "cost_of_sale_critical",
    # Taux de rachat (%)
    "buyout_low",
    # Baisse des ventes vs période précédente (%)
    "sales_drop",
    "sales_drop_critical",
    # Paramètres de décision
    "min_margin_pct",
    "cooldown_days",
    "cooldown_days_gold",
    "max_step_pct",
    "max_step_pct_gold",
    "min_step_pct",
    "clear_step_pct",
    "growth_step_pct",
    # Taille d'échantillon minimale
    "min_card_views",
    "min_cart_adds",
    "min_orders",
    # Garde-fous / classement
    "confidence_floor",
    "rank_drop_pct",
    "spend_leak_min_spend",
    "revenue_reference",
)

# Champs exprimés en fraction (0.05 = 5 %)
_RATIO_FIELDS = frozenset({
    "min_margin_pct",
    "max_step_pct",
    "max_step_pct_gold",
    "min_step_pct",
    "clear_step_pct",
    "growth_step_pct",
    "confidence_floor",
})

_TOP_LEVEL_KEYS = frozenset({"defaults", "categories", "sku_overrides", "gold_skus", "manual_locks"})


@dataclass(frozen=True)
class CategoryThresholds:
    """
    Seuils effectifs pour un SKU.

    Les valeurs par défaut sont les seuils globaux, utilisés quand la
    catégorie n'a pas de surcharge.
    """

    stock_critical_days: float = 7
    stock_warning_days: float = 14
    stock_overstock_days: float = 90
    cr_cart_low: float = 5.0
    cr_order_low: float = 2.0
    cr_cart_high: float = 8.0
    cost_of_sale_high: float = 30.0
    cost_of_sale_critical: float = 50.0
    buyout_low: float = 50.0
    sales_drop: float = 20.0
    sales_drop_critical: float = 40.0

    min_margin_pct: float = 0.10
    cooldown_days: float = 3
    cooldown_days_gold: float = 7
    max_step_pct: float = 0.05
    max_step_pct_gold: float = 0.02
    min_step_pct: float = 0.005
    clear_step_pct: float = 0.03
    growth_step_pct: float = 0.02

    min_card_views: float = 100
    min_cart_adds: float = 20
    min_orders: float = 10

    confidence_floor: float = 0.3
    # Chute des ventes (%) qui interdit une hausse
    rank_drop_pct: float = 30.0
    # Dépense pub sans commande attribuée au-delà de laquelle on gèle le prix
    spend_leak_min_spend: float = 1000.0
    revenue_reference: float = 100000.0

    def validate(self, label: str = "defaults") -> "CategoryThresholds":
        """Vérifie la cohérence des bornes ; lève ConfigurationError sinon."""
        if not (self.stock_critical_days <= self.stock_warning_days <= self.stock_overstock_days):
            raise ConfigurationError(
                f"[{label}] stock bounds must satisfy critical <= warning <= overstock "
                f"(got {self.stock_critical_days}/{self.stock_warning_days}/{self.stock_overstock_days})"
            )
        if self.cr_cart_low > self.cr_cart_high:
            raise ConfigurationError(f"[{label}] cr_cart_low must not exceed cr_cart_high")
        if self.cost_of_sale_high > self.cost_of_sale_critical:
            raise ConfigurationError(f"[{label}] cost_of_sale_high must not exceed cost_of_sale_critical")
        if self.sales_drop > self.sales_drop_critical:
            raise ConfigurationError(f"[{label}] sales_drop must not exceed sales_drop_critical")
        if self.revenue_reference <= 0:
            raise ConfigurationError(f"[{label}] revenue_reference must be positive")
        return self

    def to_dict(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in THRESHOLD_FIELDS}


DEFAULT_THRESHOLDS = CategoryThresholds()

# Surcharges par défaut si le store ne fournit pas de catégories
DEFAULT_CATEGORY_OVERRIDES: Dict[str, Dict[str, float]] = {
    # Soin du visage : rotation rapide
    'face care': {
        'stock_critical_days': 5,
        'stock_warning_days': 10,
        'stock_overstock_days': 60,
        'cr_cart_low': 6,
        'cr_cart_high': 10,
        'cost_of_sale_high': 25,
        'buyout_low': 60,
        'sales_drop': 15,
        'sales_drop_critical': 30,
    },
    # Soin du corps : rotation moyenne
    'body care': {
        'cr_cart_low': 4,
        'cr_cart_high': 7,
        'cost_of_sale_high': 35,
        'buyout_low': 45,
    },
    # Maquillage : saisonnier, forte concurrence
    'makeup': {
        'stock_critical_days': 10,
        'stock_warning_days': 21,
        'stock_overstock_days': 120,
        'cr_cart_low': 4,
        'cr_cart_high': 6,
        'cost_of_sale_high': 40,
        'buyout_low': 40,
        'sales_drop': 25,
        'sales_drop_critical': 50,
    },
    # Soin des cheveux : demande stable
    'hair care': {
        'stock_overstock_days': 100,
        'cr_cart_high': 9,
        'buyout_low': 55,
    },
}


def normalize_category(category: Any) -> str:
    """Clé de catégorie insensible à la casse et aux espaces."""
    if category is None:
        return ""
    return str(category).strip().lower()


def _validate_override(layer: Any, label: str) -> Dict[str, float]:
    if not isinstance(layer, Mapping):
        raise ConfigurationError(f"[{label}] override must be a mapping, got {type(layer).__name__}")

    validated: Dict[str, float] = {}
    for key, value in layer.items():
        if key not in THRESHOLD_FIELDS:
            raise ConfigurationError(f"[{label}] unknown threshold field: {key}")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError(f"[{label}] {key} must be numeric, got {value!r}")
        try:
            finite = math.isfinite(value)
        except OverflowError:
            finite = False
        if not finite or value < 0:
            raise ConfigurationError(f"[{label}] {key} must be a finite non-negative number, got {value!r}")
        if key in _RATIO_FIELDS and value > 1:
            raise ConfigurationError(f"[{label}] {key} is a fraction and must be <= 1, got {value!r}")
        validated[key] = value
    return validated


def merge_thresholds(
    base: CategoryThresholds,
    override: Optional[Mapping[str, float]],
    label: str = "override",
) -> CategoryThresholds:
    """
    Fusionne une couche de surcharge sur des seuils de base.

    La surcharge gagne champ par champ ; les champs absents gardent la valeur
    de base. Seuls les champs de THRESHOLD_FIELDS sont acceptés.
    """
    if not override:
        return base
    return replace(base, **_validate_override(override, label))


@dataclass(frozen=True)
class ManualLock:
    """Verrou posé par un opérateur : le moteur ne touche pas au prix."""
    sku: str
    until: date
    reason: str = ""
    locked_by: str = ""

    def is_active(self, as_of: date) -> bool:
        return as_of <= self.until


@dataclass(frozen=True)
class ThresholdConfig:
    """
    Snapshot immuable de la configuration active.

    Ne jamais modifier une instance : le fournisseur en construit une nouvelle
    à chaque rechargement.
    """

    defaults: CategoryThresholds = DEFAULT_THRESHOLDS
    categories: Mapping[str, Mapping[str, float]] = field(default_factory=lambda: MappingProxyType({}))
    sku_overrides: Mapping[str, Mapping[str, float]] = field(default_factory=lambda: MappingProxyType({}))
    gold_skus: FrozenSet[str] = frozenset()
    manual_locks: Mapping[str, ManualLock] = field(default_factory=lambda: MappingProxyType({}))
    version: int = 0
    source: str = "builtin"
    loaded_at: Optional[datetime] = None

    @classmethod
    def builtin(cls, version: int = 0) -> "ThresholdConfig":
        """Configuration intégrée (défauts + préréglages catégorie)."""
        return parse_threshold_config({}, version=version, source="builtin")

    def get_thresholds(self, category: Optional[str] = None, sku: Optional[str] = None) -> CategoryThresholds:
        """
        Seuils effectifs : défauts < catégorie < SKU.

        Une catégorie inconnue (ou absente) donne les défauts.
        """
        thresholds = self.defaults
        category_layer = self.categories.get(normalize_category(category))
        if category_layer:
            thresholds = replace(thresholds, **category_layer)
        if sku is not None:
            sku_layer = self.sku_overrides.get(sku)
            if sku_layer:
                thresholds = replace(thresholds, **sku_layer)
        return thresholds

    def is_gold_sku(self, sku: str) -> bool:
        return sku in self.gold_skus

    def get_manual_lock(self, sku: str, as_of: date) -> Optional[ManualLock]:
        """Verrou actif pour ce SKU à la date donnée, sinon None."""
        lock = self.manual_locks.get(sku)
        if lock is not None and lock.is_active(as_of):
            return lock
        return None


def _parse_date(value: Any, label: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date_parser.isoparse(value).date()
        except ValueError as e:
            raise ConfigurationError(f"[{label}] invalid date {value!r}: {e}") from e
    raise ConfigurationError(f"[{label}] invalid date {value!r}")


def _parse_layers(raw_layers: Any, defaults: CategoryThresholds, kind: str, normalize: bool) -> Mapping[str, Mapping[str, float]]:
    if not isinstance(raw_layers, Mapping):
        raise ConfigurationError(f"[{kind}] must be a mapping")

    layers: Dict[str, Mapping[str, float]] = {}
    for name, layer in raw_layers.items():
        label = f"{kind}:{name}"
        validated = _validate_override(layer or {}, label)
        # La couche doit rester cohérente une fois posée sur les défauts
        replace(defaults, **validated).validate(label)
        key = normalize_category(name) if normalize else str(name)
        layers[key] = MappingProxyType(validated)
    return MappingProxyType(layers)


def _parse_manual_locks(raw_locks: Any) -> Mapping[str, ManualLock]:
    if not isinstance(raw_locks, list):
        raise ConfigurationError("[manual_locks] must be a list")

    locks: Dict[str, ManualLock] = {}
    for index, item in enumerate(raw_locks):
        label = f"manual_locks[{index}]"
        if not isinstance(item, Mapping) or not item.get("sku") or "until" not in item:
            raise ConfigurationError(f"[{label}] each lock needs 'sku' and 'until'")
        sku = str(item["sku"])
        locks[sku] = ManualLock(
            sku=sku,
            until=_parse_date(item["until"], label),
            reason=str(item.get("reason", "")),
            locked_by=str(item.get("locked_by", "")),
        )
    return MappingProxyType(locks)


def parse_threshold_config(
    raw: Any,
    version: int = 0,
    source: str = "unknown",
) -> ThresholdConfig:
    """
    Construit un snapshot à partir d'un mapping brut.

    Structure attendue :
      defaults: {stock_critical_days: 7, ...}
      categories:
        makeup: {stock_overstock_days: 120}
      sku_overrides:
        SKU-1: {min_margin_pct: 0.15}
      gold_skus: [SKU-1, SKU-2]
      manual_locks:
        - sku: SKU-3
          until: 2026-12-31
          reason: "Promo négociée"

    Sans clé `categories`, les préréglages intégrés sont utilisés.
    Lève ConfigurationError à la moindre incohérence.
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"Threshold config must be a mapping, got {type(raw).__name__}")

    unknown = set(raw) - _TOP_LEVEL_KEYS
    if unknown:
        raise ConfigurationError(f"Unknown top-level keys in threshold config: {sorted(unknown)}")

    defaults = merge_thresholds(DEFAULT_THRESHOLDS, raw.get("defaults") or {}, "defaults").validate("defaults")

    categories = _parse_layers(
        raw["categories"] if "categories" in raw else DEFAULT_CATEGORY_OVERRIDES,
        defaults,
        "categories",
        normalize=True,
    )
    sku_overrides = _parse_layers(raw.get("sku_overrides") or {}, defaults, "sku_overrides", normalize=False)

    gold_raw = raw.get("gold_skus") or []
    if not isinstance(gold_raw, (list, tuple, set, frozenset)):
        raise ConfigurationError("[gold_skus] must be a list")
    gold_skus = frozenset(str(sku) for sku in gold_raw)

    manual_locks = _parse_manual_locks(raw.get("manual_locks") or [])

    return ThresholdConfig(
        defaults=defaults,
        categories=categories,
        sku_overrides=sku_overrides,
        gold_skus=gold_skus,
        manual_locks=manual_locks,
        version=version,
        source=source,
        loaded_at=datetime.now(),
    )


class DictThresholdSource:
    """Source en mémoire (tests, configuration embarquée par l'hôte)."""

    name = "dict"

    def __init__(self, data: Optional[Mapping[str, Any]] = None):
        self.data = data if data is not None else {}

    def load(self) -> Any:
        return self.data


class YamlThresholdSource:
    """Source fichier YAML."""

    name = "yaml"

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> Any:
        try:
            content = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read threshold file {self.path}: {e}") from e
        try:
            return yaml.safe_load(content) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Malformed YAML in {self.path}: {e}") from e


class ThresholdConfigProvider:
    """
    Fournisseur de seuils rechargeable à chaud.

    Lecteurs multiples sans verrou (lecture d'une référence vers un snapshot
    immuable) ; rechargements exclusifs sous verrou.
    """

    def __init__(self, source=None):
        """
        Initialise le fournisseur.

        Args:
            source: objet exposant `load()` (YAML, Supabase, dict). Si None,
                seule la configuration intégrée est utilisée.
        """
        self._source = source
        self._reload_lock = threading.Lock()
        self._snapshot = ThresholdConfig.builtin()

        if source is not None:
            try:
                self.reload_config()
            except ConfigurationError as e:
                logger.warning(f"Initial threshold load failed, using builtin defaults: {e}")

        logger.info("Initialized ThresholdConfigProvider")

    @property
    def source(self):
        return self._source

    def snapshot(self) -> ThresholdConfig:
        """Snapshot actif, à conserver pour toute la durée d'un batch."""
        return self._snapshot

    def get_thresholds(self, category: Optional[str] = None, sku: Optional[str] = None) -> CategoryThresholds:
        return self._snapshot.get_thresholds(category, sku)

    def get_gold_skus(self) -> List[str]:
        return sorted(self._snapshot.gold_skus)

    def is_gold_sku(self, sku: str) -> bool:
        return self._snapshot.is_gold_sku(sku)

    def get_manual_lock(self, sku: str, as_of: date) -> Optional[ManualLock]:
        return self._snapshot.get_manual_lock(sku, as_of)

    def get_configured_categories(self) -> List[str]:
        return sorted(self._snapshot.categories)

    def reload_config(self) -> ThresholdConfig:
        """
        Recharge la source et remplace le snapshot actif.

        En cas d'échec, le snapshot précédent reste actif et
        ConfigurationError est levée.
        """
        with self._reload_lock:
            previous = self._snapshot
            next_version = previous.version + 1

            if self._source is None:
                new_snapshot = ThresholdConfig.builtin(version=next_version)
            else:
                source_name = getattr(self._source, "name", type(self._source).__name__)
                try:
                    raw = self._source.load()
                    new_snapshot = parse_threshold_config(raw, version=next_version, source=source_name)
                except ConfigurationError as e:
                    logger.error(
                        f"Threshold reload rejected, keeping version {previous.version} "
                        f"({previous.source}): {e}"
                    )
                    raise
                except Exception as e:
                    logger.error(
                        f"Threshold reload rejected, keeping version {previous.version} "
                        f"({previous.source}): {e}"
                    )
                    raise ConfigurationError(f"Unreadable threshold config from {source_name}: {e}") from e

            self._snapshot = new_snapshot

        logger.info(
            f"Loaded thresholds v{new_snapshot.version} from {new_snapshot.source}: "
            f"{len(new_snapshot.categories)} categories, {len(new_snapshot.gold_skus)} gold SKUs, "
            f"{len(new_snapshot.manual_locks)} locks"
        )
        return new_snapshot


def build_threshold_source(settings: Settings):
    """Choisit la source selon les settings : YAML, puis Supabase, sinon aucune."""
    if settings.thresholds_path:
        return YamlThresholdSource(settings.thresholds_path)

    if settings.supabase_url and settings.supabase_key:
        from .interfaces.data_access import SupabaseThresholdSource

        return SupabaseThresholdSource(settings=settings, table=settings.thresholds_table)

    return None


# Instance globale (singleton)
_provider_instance: Optional[ThresholdConfigProvider] = None
_provider_lock = threading.Lock()


def get_threshold_provider(settings: Optional[Settings] = None) -> ThresholdConfigProvider:
    """
    Récupère l'instance globale du fournisseur de seuils.

    Args:
        settings: Configuration (si None, charge depuis env)

    Returns:
        Instance du fournisseur
    """
    global _provider_instance

    with _provider_lock:
        if _provider_instance is None:
            settings = settings or get_default_settings()
            _provider_instance = ThresholdConfigProvider(build_threshold_source(settings))

    return _provider_instance


def reset_threshold_provider() -> None:
    """Oublie l'instance globale (tests, changement de settings)."""
    global _provider_instance

    with _provider_lock:
        _provider_instance = None
