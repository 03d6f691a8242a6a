"""
Exceptions raised by the access engine.

Retryable failures (GraphReadError, ClosureSwapError, RebuildTimeoutError)
are absorbed by the rebuild worker's retry policy. TenantIsolationError is
a programming-invariant violation and is never retried.
"""

from typing import Optional


class AccessEngineError(Exception):
    """Base exception for access engine errors."""

    def __init__(self, message: str, tenant_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.tenant_id = tenant_id

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, tenant_id={self.tenant_id!r})"


class TenantIsolationError(AccessEngineError):
    """
    Raised when an operation would span two tenants.

    Indicates a security defect, not a transient failure: never retried,
    never silently corrected.
    """

    def __init__(
        self,
        message: str,
        tenant_id: Optional[str] = None,
        offending_tenant_id: Optional[str] = None,
    ):
        super().__init__(message, tenant_id=tenant_id)
        self.offending_tenant_id = offending_tenant_id


class GraphReadError(AccessEngineError):
    """Raised when the hierarchy or assignment store cannot be read."""
    pass


class ClosureSwapError(AccessEngineError):
    """Raised when the transactional closure swap fails and is rolled back."""

    def __init__(self, message: str, tenant_id: Optional[str] = None, user_id: Optional[str] = None):
        super().__init__(message, tenant_id=tenant_id)
        self.user_id = user_id


class RebuildTimeoutError(AccessEngineError):
    """Raised when a recomputation runs past its deadline."""
    pass


class InvalidHierarchyError(AccessEngineError):
    """Raised when a mutation would create an invalid edge or reference an unknown entity."""
    pass


class InvalidChangeEventError(AccessEngineError):
    """Raised when a change event is malformed."""
    pass


class TaskNotFoundError(AccessEngineError):
    """Raised when a rebuild task is not found."""
    pass
