"""
Script pour lancer le moteur de décision prix sur un batch de SKU.

Usage (depuis la racine du projet) :

    python -m scripts.run_optimizer --input skus.json
    python -m scripts.run_optimizer --input skus.json --thresholds config/thresholds.yaml --as-of 2026-10-19
    python -m scripts.run_optimizer --from-supabase --table sku_snapshots --format table

Le JSON d'entrée est soit une liste de lignes SKU, soit un objet {"skus": [...]}.
Sortie : JSON sur stdout (ou tableau pandas avec --format table).
"""

import argparse
import json
import sys
from pathlib import Path

from dateutil import parser as date_parser

from sku_optimizer.config import configure_logging, get_default_settings
from sku_optimizer.interfaces.data_access import fetch_sku_snapshots
from sku_optimizer.optimizer import (
    calculate_total_impact,
    get_action_stats,
    get_top_priority_items,
    results_to_dataframe,
    run_optimizer_batch,
)
from sku_optimizer.thresholds import ThresholdConfigProvider, YamlThresholdSource, get_threshold_provider


def _load_input(path: str):
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("skus", [])
    if not isinstance(data, list):
        raise ValueError("input must be a list of SKU records or an object with a 'skus' list")
    return data


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the SKU pricing optimizer on a batch.")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--input", help="Fichier JSON des SKU.")
    source.add_argument("--from-supabase", action="store_true", help="Lire les SKU depuis Supabase.")
    parser.add_argument("--table", default="sku_snapshots", help="Table Supabase des snapshots.")
    parser.add_argument("--thresholds", help="Fichier YAML de seuils (sinon settings).")
    parser.add_argument("--as-of", help="Date du run (YYYY-MM-DD), par défaut aujourd'hui.")
    parser.add_argument("--top", type=int, default=10, help="Nombre de SKU prioritaires à lister.")
    parser.add_argument("--workers", type=int, default=None, help="Threads (par défaut OPTIMIZER_MAX_WORKERS).")
    parser.add_argument("--format", choices=["json", "table"], default="json")

    args = parser.parse_args()

    settings = get_default_settings()
    configure_logging(settings)

    try:
        if args.thresholds:
            provider = ThresholdConfigProvider(YamlThresholdSource(args.thresholds))
        else:
            provider = get_threshold_provider(settings)

        skus = _load_input(args.input) if args.input else fetch_sku_snapshots(table=args.table)
        as_of = date_parser.isoparse(args.as_of).date() if args.as_of else None

        results = run_optimizer_batch(skus, provider=provider, as_of=as_of, max_workers=args.workers)

        if args.format == "table":
            print(results_to_dataframe(results).to_string(index=False))
            return

        output = {
            "stats": get_action_stats(results),
            "impact": calculate_total_impact(results),
            "top": [r.sku for r in get_top_priority_items(results, args.top, actionable_only=True)],
            "results": [r.to_dict() for r in results],
        }
        # Uniquement le JSON sur stdout, les logs vont sur stderr
        print(json.dumps(output, ensure_ascii=False))

    except Exception as e:
        error_response = {
            "error": True,
            "error_type": type(e).__name__,
            "error_message": str(e),
        }
        print(json.dumps(error_response, ensure_ascii=False))
        sys.exit(1)


if __name__ == "__main__":
    main()
