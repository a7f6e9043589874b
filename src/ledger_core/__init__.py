"""
Ledger core: recurring occurrences, transaction classification and matching.

Decides what a ledger transaction *is* (category, clean title, confidence)
and *when* it exists (occurrences generated from recurring templates).
Screens, dialogs and bank protocols live outside this package and only feed
it requests and persist its output records.
"""

__version__ = "0.1.0"
