"""
TraceLedger

Supply-chain custody events with canonical hashing, external ledger
anchoring, and re-verification.
"""

__version__ = "0.1.0"
