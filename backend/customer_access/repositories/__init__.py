"""Repositories over the closure table and customer-bearing tables."""

from customer_access.repositories.closure_repo import ClosureTable, StalenessReport, SwapResult
from customer_access.repositories.customers import CustomerRepository

__all__ = [
    "ClosureTable",
    "StalenessReport",
    "SwapResult",
    "CustomerRepository",
]
