"""
Hierarchical multi-tenant customer access engine.

Decides which customers a user may see (direct assignments plus everything
assigned anywhere in the user's reporting subtree), keeps that decision
materialized in the closure table, and enforces it on every query.
"""

__version__ = "0.1.0"
