"""
Moteur de décision prix par SKU.

Ce package contient :
- les seuils par catégorie et leur fournisseur rechargeable,
- la classification en modes (STOP / CLEAR / COW / GROWTH),
- les diagnostics, les garde-fous et le moteur de décision,
- l'orchestration par batch et ses vues agrégées,
- les interfaces vers Supabase et les flux bruts.
"""
