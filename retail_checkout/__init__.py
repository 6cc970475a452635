"""
Retail checkout — inventory, order, cart and payment services composed by
a checkout saga orchestrator.
"""

__version__ = "0.1.0"
