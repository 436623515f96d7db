"""
Worker Python persistant pour le moteur de décision prix.

Ce script charge les seuils au démarrage et attend les requêtes via stdin.
Il est conçu pour être robuste : si une requête plante, le worker loggue
l'erreur, renvoie une ligne d'erreur JSON, mais ne s'arrête pas.

Communication :
- Entrée : JSON ligne par ligne sur stdin
- Sortie : JSON ligne par ligne sur stdout
- Logs : stderr
"""

import json
import logging
import os
import sys

from dateutil import parser as date_parser

# Ajout du chemin courant pour les imports si lancé comme script
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sku_optimizer.config import configure_logging, get_default_settings
from sku_optimizer.decision import DEFAULT_ELASTICITY, find_optimal_scenario, generate_price_scenarios
from sku_optimizer.interfaces.data_access import snapshot_from_dict
from sku_optimizer.optimizer import get_action_stats, get_top_priority_items, run_optimizer_batch
from sku_optimizer.records import sanitize_snapshot
from sku_optimizer.thresholds import get_threshold_provider

logger = logging.getLogger("sku_optimizer.server")


def _handle_optimize(data, provider):
    skus = data.get('skus')
    if not isinstance(skus, list):
        raise ValueError("skus must be a list of SKU records")

    as_of = data.get('asOf')
    as_of = date_parser.isoparse(as_of).date() if as_of else None
    top = int(data.get('top', 10))

    results = run_optimizer_batch(skus, provider=provider, as_of=as_of)

    return {
        "status": "success",
        "thresholdsVersion": provider.snapshot().version,
        "results": [r.to_dict() for r in results],
        "stats": get_action_stats(results),
        "top": [r.sku for r in get_top_priority_items(results, top)],
    }


def _handle_reload(data, provider):
    snapshot = provider.reload_config()
    return {
        "status": "success",
        "version": snapshot.version,
        "source": snapshot.source,
        "categories": sorted(snapshot.categories),
        "goldSkus": sorted(snapshot.gold_skus),
    }


def _handle_thresholds(data, provider):
    snapshot = provider.snapshot()
    thresholds = snapshot.get_thresholds(data.get('category'), data.get('sku'))
    return {
        "status": "success",
        "version": snapshot.version,
        "category": data.get('category'),
        "sku": data.get('sku'),
        "thresholds": thresholds.to_dict(),
    }


def _handle_scenarios(data, provider):
    row = data.get('sku')
    if not isinstance(row, dict):
        raise ValueError("sku must be a SKU record")

    snapshot = sanitize_snapshot(snapshot_from_dict(row))
    elasticity = float(data.get('elasticity', DEFAULT_ELASTICITY))
    scenarios = generate_price_scenarios(snapshot, elasticity=elasticity)

    return {
        "status": "success",
        "sku": snapshot.sku,
        "scenarios": scenarios,
        "optimal": find_optimal_scenario(scenarios, snapshot.current_price),
        "dataIssues": list(snapshot.data_issues),
    }


HANDLERS = {
    "optimize": _handle_optimize,
    "reload": _handle_reload,
    "thresholds": _handle_thresholds,
    "scenarios": _handle_scenarios,
}


def process_request(data, provider=None):
    """
    Traite une requête JSON unique.

    Formats attendus :
    {"command": "optimize", "skus": [{...}, ...], "asOf": "2026-10-19", "top": 10}
    {"command": "reload"}
    {"command": "thresholds", "category": "makeup", "sku": "SKU-1"}
    {"command": "scenarios", "sku": {...}, "elasticity": -1.5}

    Sans `command`, la requête est traitée comme `optimize`.
    """
    if not isinstance(data, dict):
        raise ValueError("request must be a JSON object")

    command = data.get('command', 'optimize')
    handler = HANDLERS.get(command)
    if handler is None:
        raise ValueError(f"unknown command: {command}")

    return handler(data, provider or get_threshold_provider())


def main():
    settings = get_default_settings()
    configure_logging(settings)
    provider = get_threshold_provider(settings)

    logger.info(f"SKU optimizer worker started (PID: {os.getpid()}), thresholds v{provider.snapshot().version}")

    # Boucle infinie de lecture sur stdin
    while True:
        try:
            line = sys.stdin.readline()
            if not line:
                break  # Fin du flux (l'hôte a fermé le process)

            line = line.strip()
            if not line:
                continue

            try:
                request_data = json.loads(line)
                response_data = process_request(request_data, provider)
                sys.stdout.write(json.dumps(response_data, ensure_ascii=False) + "\n")
                sys.stdout.flush()

            except Exception as e:
                # JSON d'erreur pour que l'hôte puisse rejeter la requête proprement
                error_response = {
                    "error": str(e),
                    "status": "error",
                    "type": type(e).__name__
                }
                sys.stdout.write(json.dumps(error_response) + "\n")
                sys.stdout.flush()
                logger.exception(f"Request failed: {e}")

        except KeyboardInterrupt:
            break
        except Exception as global_error:
            logger.exception(f"Critical error in main loop: {global_error}")


if __name__ == "__main__":
    main()
