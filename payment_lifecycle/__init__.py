"""
Payment lifecycle service.

Orchestrates purchase, authorize, capture, cancel and refund actions against a
card-payment gateway, with an append-only transaction ledger as the source of
truth for gateway references.
"""

__version__ = "1.0.0"
