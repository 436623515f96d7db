"""
Configuration centrale pour le moteur de décision prix.

Ce module définit les paramètres d'exécution du moteur :
- accès au store de seuils (fichier YAML ou table Supabase),
- fuseau horaire utilisé pour la date de run (cooldown, verrous manuels),
- parallélisme des batchs,
- niveau de log.

Les seuils métier eux-mêmes (stock, conversion, marge...) vivent dans
`thresholds.py` : ils sont rechargeables à chaud, contrairement à ces settings.
"""

import logging
import os
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Optional

import pytz
from dotenv import load_dotenv

# Charger .env depuis la racine du projet
project_root = Path(__file__).parent.parent
load_dotenv(dotenv_path=project_root / ".env")

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@dataclass
class Settings:
    """Paramètres d'exécution du moteur."""

    # Store de seuils (Supabase)
    supabase_url: str = ""
    supabase_key: str = ""
    thresholds_table: str = "optimizer_thresholds"

    # Store de seuils (fichier YAML, prioritaire sur Supabase si renseigné)
    thresholds_path: Optional[str] = None

    # Timezone de référence pour la date de run
    timezone: str = "UTC"

    # Nombre de threads pour les batchs (1 = séquentiel)
    max_workers: int = 1

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Crée une instance Settings depuis les variables d'environnement."""
        return cls(
            supabase_url=os.getenv("SUPABASE_URL", ""),
            supabase_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY", os.getenv("SUPABASE_KEY", "")),
            thresholds_table=os.getenv("OPTIMIZER_THRESHOLDS_TABLE", "optimizer_thresholds"),
            thresholds_path=os.getenv("OPTIMIZER_THRESHOLDS_PATH") or None,
            timezone=os.getenv("DEFAULT_TIMEZONE", "UTC"),
            max_workers=_env_int("OPTIMIZER_MAX_WORKERS", 1),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return max(1, int(raw))
    except ValueError:
        logging.getLogger(__name__).warning(f"Invalid integer for {name}: {raw!r}, using {default}")
        return default


def get_default_settings() -> Settings:
    """Retourne les settings lus depuis l'environnement."""
    return Settings.from_env()


def configure_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure le logging racine avec le format standard du projet.

    À appeler depuis les points d'entrée (worker, scripts), jamais depuis
    le code du moteur.
    """
    settings = settings or get_default_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )


def get_run_date(settings: Optional[Settings] = None) -> date:
    """
    Date du jour dans le fuseau configuré.

    Les batchs reçoivent cette date une seule fois : deux runs avec la même
    date et les mêmes entrées produisent des résultats identiques.
    """
    settings = settings or get_default_settings()
    try:
        tz = pytz.timezone(settings.timezone)
    except pytz.UnknownTimeZoneError:
        logging.getLogger(__name__).warning(f"Unknown timezone {settings.timezone}, falling back to UTC")
        tz = pytz.UTC
    return datetime.now(tz).date()
