"""
Module 'payments' (feature-first): point d'entrée public.
Réunit frais par méthode, flux carte, preuves Interac, holds et webhook Stripe.
"""

from .fees import CARD, INTERAC, PAYMENT_METHODS, get_method, processing_fee, total_with_fees, quote, compute_breakdown
from .card import CardDetails, CardPaymentResult, CardPaymentFlow, validate_card
from .interac import TransferInstructions, ProofCollector, ProofOfTransfer, validate_proof_file

__all__ = [
    # fees
    "CARD",
    "INTERAC",
    "PAYMENT_METHODS",
    "get_method",
    "processing_fee",
    "total_with_fees",
    "quote",
    "compute_breakdown",
    # card
    "CardDetails",
    "CardPaymentResult",
    "CardPaymentFlow",
    "validate_card",
    # interac
    "TransferInstructions",
    "ProofCollector",
    "ProofOfTransfer",
    "validate_proof_file",
]
