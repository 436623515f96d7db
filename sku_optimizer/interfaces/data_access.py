"""
Accès aux données externes nécessaires au moteur de décision prix.

Ce module fournit une couche d'abstraction entre le moteur et les systèmes
externes (Supabase/PostgreSQL, lignes JSON brutes des flux amont).

Objectifs principaux :
- construire des `SKUSnapshot` à partir de lignes brutes, sans jamais lever :
  les champs manquants ou illisibles deviennent des `data_issues`,
- récupérer les snapshots depuis une table Supabase,
- exposer la table des seuils comme source rechargeable.

IMPORTANT :
- Les variables d'environnement sont celles de `config.Settings`
  (`SUPABASE_URL` et `SUPABASE_SERVICE_ROLE_KEY`/`SUPABASE_KEY`).
"""

from __future__ import annotations

import logging
import math
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from dateutil import parser as date_parser
from supabase import Client, create_client  # type: ignore

from ..config import Settings, get_default_settings
from ..exceptions import ConfigurationError
from ..records import SKUSnapshot

logger = logging.getLogger(__name__)


_supabase_client: Optional[Client] = None


def get_supabase_client(settings: Optional[Settings] = None) -> Client:
    """
    Retourne un client Supabase initialisé (singleton).

    Raises:
        ConfigurationError: si SUPABASE_URL ou la clé ne sont pas configurées
    """
    global _supabase_client

    if _supabase_client is not None:
        return _supabase_client

    settings = settings or get_default_settings()
    if not settings.supabase_url or not settings.supabase_key:
        raise ConfigurationError(
            "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY/SUPABASE_KEY must be set "
            "to read snapshots or thresholds from Supabase"
        )

    _supabase_client = create_client(settings.supabase_url, settings.supabase_key)
    return _supabase_client


def _safe_int(value: Any) -> Optional[int]:
    try:
        if value is None or value == "":
            return None
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def _safe_float(value: Any) -> Optional[float]:
    try:
        if value is None or value == "":
            return None
        result = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(result):
        return None
    return result


def _safe_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date_parser.isoparse(str(value)).date()
    except (TypeError, ValueError, OverflowError):
        return None


# Noms acceptés pour chaque champ (snake_case interne, puis alias des flux amont)
FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "sku": ("sku", "id", "vendor_code"),
    "category": ("category", "category_wb"),
    "nm_id": ("nm_id", "nmId", "sku_wb"),
    "title": ("title", "name"),
    "stock_on_hand": ("stock_on_hand", "stockTotal", "stock"),
    "stock_in_transit": ("stock_in_transit", "inTransit"),
    "effective_stock": ("effective_stock", "effectiveStock"),
    "orders_per_day": ("orders_per_day", "ordersPerDay"),
    "card_views": ("card_views", "openCard", "views"),
    "cart_adds": ("cart_adds", "addToCart", "cartCount"),
    "orders": ("orders", "orderCount"),
    "cr_cart": ("cr_cart", "crCart"),
    "cr_order": ("cr_order", "crOrder"),
    "buyout_pct": ("buyout_pct", "buyoutPercent"),
    "current_price": ("current_price", "currentPrice", "price"),
    "cost_price": ("cost_price", "costPrice"),
    "margin_pct": ("margin_pct", "margin"),
    "cost_of_sale_pct": ("cost_of_sale_pct", "drr"),
    "ad_spend": ("ad_spend", "adSpend"),
    "ad_orders": ("ad_orders", "adOrders"),
    "sales_trend_pct": ("sales_trend_pct", "salesTrend"),
    "last_price_change": ("last_price_change", "lastPriceChange"),
    "days_since_price_change": ("days_since_price_change", "daysSincePriceChange"),
}

# Champs sans lesquels la décision repose sur des valeurs par défaut
REQUIRED_FIELDS = ("orders_per_day", "card_views", "orders", "current_price")

_COUNT_FIELDS = ("card_views", "cart_adds", "orders")
_NON_NEGATIVE_FIELDS = ("stock_on_hand", "stock_in_transit", "orders_per_day", "current_price", "ad_spend")
_OPTIONAL_FLOAT_FIELDS = (
    "effective_stock", "cr_cart", "cr_order", "buyout_pct", "cost_price",
    "margin_pct", "cost_of_sale_pct", "sales_trend_pct",
)


def _lookup(raw: Mapping[str, Any], field_name: str) -> Tuple[bool, Any]:
    for alias in FIELD_ALIASES[field_name]:
        if alias in raw and raw[alias] is not None and raw[alias] != "":
            return True, raw[alias]
    return False, None


def snapshot_from_dict(raw: Any) -> SKUSnapshot:
    """
    Construit un SKUSnapshot à partir d'une ligne brute (dict JSON, ligne Supabase).

    Ne lève jamais pour un problème de données : chaque champ manquant,
    illisible ou négatif est consigné dans `data_issues` et remplacé par une
    valeur neutre. Les taux sont attendus en pourcentage, `margin_pct` en
    fraction (0.25 = 25 %).
    """
    if not isinstance(raw, Mapping):
        return SKUSnapshot(sku="", data_issues=(f"record is not a mapping ({type(raw).__name__})",))

    issues: List[str] = []
    values: Dict[str, Any] = {}

    found, sku = _lookup(raw, "sku")
    if not found:
        issues.append("missing sku")
    values["sku"] = str(sku) if found else ""

    for name in ("category", "title"):
        found, value = _lookup(raw, name)
        values[name] = str(value).strip() if found else ""

    found, nm_id = _lookup(raw, "nm_id")
    values["nm_id"] = _safe_int(nm_id) if found else None

    stock_found = False
    for name in ("stock_on_hand", "stock_in_transit", "orders_per_day", "current_price", "ad_spend"):
        found, value = _lookup(raw, name)
        parsed = _safe_float(value) if found else None
        if found and parsed is None:
            issues.append(f"malformed {name}: {value!r}")
        elif parsed is not None and parsed < 0:
            issues.append(f"negative {name}: {parsed:g}")
            parsed = 0.0
        if name == "stock_on_hand" and parsed is not None:
            stock_found = True
        values[name] = parsed if parsed is not None else 0.0

    for name in _COUNT_FIELDS:
        found, value = _lookup(raw, name)
        parsed = _safe_int(value) if found else None
        if found and parsed is None:
            issues.append(f"malformed {name}: {value!r}")
        elif parsed is not None and parsed < 0:
            issues.append(f"negative {name}: {parsed}")
            parsed = 0
        values[name] = parsed if parsed is not None else 0

    for name in _OPTIONAL_FLOAT_FIELDS:
        found, value = _lookup(raw, name)
        parsed = _safe_float(value) if found else None
        if found and parsed is None:
            issues.append(f"malformed {name}: {value!r}")
        values[name] = parsed

    if values["effective_stock"] is not None:
        stock_found = True
        if values["effective_stock"] < 0:
            issues.append(f"negative effective_stock: {values['effective_stock']:g}")
            values["effective_stock"] = 0.0
    if not stock_found:
        issues.append("missing stock")

    found, value = _lookup(raw, "last_price_change")
    values["last_price_change"] = _safe_date(value) if found else None
    if found and values["last_price_change"] is None:
        issues.append(f"malformed last_price_change: {value!r}")

    found, value = _lookup(raw, "ad_orders")
    values["ad_orders"] = _safe_int(value) if found else None
    if found and values["ad_orders"] is None:
        issues.append(f"malformed ad_orders: {value!r}")
    elif values["ad_orders"] is not None and values["ad_orders"] < 0:
        issues.append(f"negative ad_orders: {values['ad_orders']}")
        values["ad_orders"] = 0

    found, value = _lookup(raw, "days_since_price_change")
    values["days_since_price_change"] = _safe_int(value) if found else None
    if found and values["days_since_price_change"] is None:
        issues.append(f"malformed days_since_price_change: {value!r}")

    for name in REQUIRED_FIELDS:
        found, _ = _lookup(raw, name)
        if not found:
            issues.append(f"missing {name}")

    return SKUSnapshot(data_issues=tuple(issues), **values)


def fetch_sku_snapshots(
    client: Optional[Client] = None,
    table: str = "sku_snapshots",
    category: Optional[str] = None,
) -> List[SKUSnapshot]:
    """
    Récupère les snapshots SKU depuis Supabase.

    Args:
        client: Client Supabase (sinon singleton)
        table: Table source
        category: Filtre optionnel sur la catégorie

    Returns:
        Liste de SKUSnapshot (lignes malformées incluses, avec data_issues)
    """
    client = client or get_supabase_client()

    query = client.table(table).select("*")
    if category:
        query = query.eq("category", category)

    response = query.order("sku", desc=False).execute()

    # Vérifier si response.data existe (compatible avec différentes versions de Supabase)
    if not hasattr(response, 'data'):
        raise RuntimeError("Invalid Supabase response: no 'data' attribute")

    rows = response.data or []
    logger.info(f"Fetched {len(rows)} SKU rows from {table}")
    return [snapshot_from_dict(row) for row in rows]


class SupabaseThresholdSource:
    """
    Source de seuils stockée dans une table Supabase.

    Une ligne par entrée, colonne `scope` :
    - `global`   : `thresholds` (json) fusionné dans les défauts,
    - `category` : `key` = catégorie, `thresholds` = surcharge,
    - `sku`      : `key` = SKU, `thresholds` = surcharge,
    - `gold`     : `key` = SKU gold,
    - `lock`     : `key` = SKU verrouillé, `until`, `reason`, `locked_by`.

    Les lignes avec `is_active = false` sont ignorées. Sans ligne `category`,
    les préréglages intégrés restent utilisés.
    """

    name = "supabase"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        table: str = "optimizer_thresholds",
        client: Optional[Client] = None,
    ):
        self.settings = settings
        self.table = table
        self._client = client

    def _fetch_rows(self) -> List[Dict[str, Any]]:
        try:
            client = self._client or get_supabase_client(self.settings)
            response = client.table(self.table).select("*").execute()
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Cannot read thresholds from Supabase table {self.table}: {e}") from e

        if not hasattr(response, 'data'):
            raise ConfigurationError("Invalid Supabase response: no 'data' attribute")
        return response.data or []

    def load(self) -> Dict[str, Any]:
        raw: Dict[str, Any] = {"defaults": {}, "sku_overrides": {}, "gold_skus": [], "manual_locks": []}
        categories: Dict[str, Any] = {}

        for row in self._fetch_rows():
            if row.get("is_active") is False:
                continue

            scope = row.get("scope")
            key = row.get("key")
            thresholds = row.get("thresholds") or {}

            if scope == "global":
                raw["defaults"].update(thresholds)
            elif scope == "category" and key:
                categories[key] = thresholds
            elif scope == "sku" and key:
                raw["sku_overrides"][key] = thresholds
            elif scope == "gold" and key:
                raw["gold_skus"].append(key)
            elif scope == "lock" and key:
                raw["manual_locks"].append({
                    "sku": key,
                    "until": row.get("until"),
                    "reason": row.get("reason") or "",
                    "locked_by": row.get("locked_by") or "",
                })
            else:
                raise ConfigurationError(f"Invalid threshold row in {self.table}: scope={scope!r} key={key!r}")

        if categories:
            raw["categories"] = categories
        return raw
