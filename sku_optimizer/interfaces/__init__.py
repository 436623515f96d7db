"""
Sous-package `interfaces` du moteur de décision prix.

Responsabilités :
- fournir une couche d'abstraction entre le moteur et les systèmes externes
  (Supabase/PostgreSQL, lignes brutes des flux amont),
- transformer les données brutes en snapshots sans jamais lever,
- faciliter le test (en permettant le mocking de cette couche).
"""
