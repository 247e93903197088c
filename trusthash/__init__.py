"""
trusthash - C2PA manifest provenance sidecar.

Indexes manifest transactions from a permanent-storage ledger, searches
them by perceptual hash, and serves the soft-binding resolution API.
"""

__version__ = "0.1.0"
