"""
Fixtures partagées pour les tests du moteur de décision prix.
"""

import sys
from datetime import date
from pathlib import Path

import pytest

# Ajouter la racine du projet au path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from sku_optimizer.records import SKUSnapshot
from sku_optimizer.thresholds import CategoryThresholds, ThresholdConfig, reset_threshold_provider


AS_OF = date(2026, 10, 19)


def build_snapshot(**overrides) -> SKUSnapshot:
    """
    SKU sain par défaut : 30 jours de couverture, conversion panier 6 %,
    échantillon suffisant. Classé COW, aucun diagnostic.
    """
    values = dict(
        sku="SKU-1",
        category="",
        nm_id=1001,
        title="Hydrating cream 50ml",
        stock_on_hand=300.0,
        stock_in_transit=0.0,
        orders_per_day=10.0,
        card_views=1000,
        cart_adds=60,
        orders=20,
        buyout_pct=80.0,
        current_price=1000.0,
        cost_price=500.0,
        cost_of_sale_pct=10.0,
        ad_spend=0.0,
        sales_trend_pct=0.0,
    )
    values.update(overrides)
    return SKUSnapshot(**values)


@pytest.fixture
def make_snapshot():
    return build_snapshot


@pytest.fixture
def thresholds():
    return CategoryThresholds()


@pytest.fixture
def builtin_config():
    return ThresholdConfig.builtin()


@pytest.fixture
def as_of():
    return AS_OF


@pytest.fixture(autouse=True)
def _reset_provider_singleton():
    reset_threshold_provider()
    yield
    reset_threshold_provider()
