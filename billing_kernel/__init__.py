"""
Billing Kernel

The lowest layer of the billing ledger engine:
- Typed exception taxonomy (local validation vs. remote failure)
- Structured JSON logging with async-safe context
- Immutable domain values for financial documents and their children
- Injectable clock for deterministic status derivation
"""

__version__ = "0.1.0"
