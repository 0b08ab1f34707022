"""
stopguard: protective-order reconciliation for a single-instrument netting account.
"""
__version__ = "0.1.0"
