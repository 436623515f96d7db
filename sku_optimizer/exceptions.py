"""
Exceptions du moteur de décision prix.

Seules les erreurs de configuration remontent à l'appelant ; les problèmes de
données d'un SKU sont convertis en diagnostics `data-quality`.
"""


class OptimizerError(Exception):
    """Classe de base des erreurs du moteur."""


class ConfigurationError(OptimizerError):
    """Source de seuils illisible ou incohérente (rechargement refusé)."""


class InvariantViolation(OptimizerError):
    """
    Le pipeline n'a pas pu produire un mode ou une décision valide.

    L'orchestrateur remplace alors le résultat du SKU par un repli sûr
    (hold, confiance 0).
    """
