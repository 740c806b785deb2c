"""
terrycore - a declarative-state reconciliation engine.
"""

__version__ = "0.9.0"
