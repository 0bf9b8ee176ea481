"""
Backend de paiement et de commandes de l'épicerie.

Sous-packages (feature-first):
- payments: frais, carte, Interac, holds et webhook Stripe
- orders: finalisation idempotente des commandes
- vault: moyens de paiement enregistrés
- checkout: machine à états côté client
- ledger: relevés de gains livreur/marchand
"""
