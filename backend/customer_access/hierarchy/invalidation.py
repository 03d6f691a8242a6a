"""
Invalidation detection.

Closures are computed downward (a user sees everything below it), so a
change must be propagated upward: every user that has the changed node
in its subtree now holds a potentially stale closure.

- assignment (user, customer) changed  -> user + ancestors(user)
- manager edge (report, manager) changed -> manager + ancestors(manager)
  (the report's own closure does not depend on who manages it)

Ancestors are walked on the post-commit graph, forward along
report -> manager edges, with a visited set. When the walk would exceed
max_ancestor_walk users, or the policy is "tenant", the detector falls
back to invalidating the whole tenant. It may invalidate too many users,
never too few.
"""

import enum
import logging
from typing import FrozenSet, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from customer_access.config.rebuild_settings import (
    INVALIDATION_POLICY_TENANT,
    RebuildSettings,
    get_rebuild_settings,
)
from customer_access.errors import InvalidChangeEventError, TenantIsolationError
from customer_access.hierarchy.graph import GraphReader, TenantGraph

logger = logging.getLogger(__name__)


class ChangeKind(str, enum.Enum):
    """Mutations that can make closures stale."""
    ASSIGNMENT_ADDED = "assignment_added"
    ASSIGNMENT_REMOVED = "assignment_removed"
    ASSIGNMENTS_REPLACED = "assignments_replaced"
    MANAGER_ADDED = "manager_added"
    MANAGER_REMOVED = "manager_removed"
    MANAGERS_REPLACED = "managers_replaced"
    USER_REMOVED = "user_removed"
    TENANT_REBUILD = "tenant_rebuild"


_ASSIGNMENT_KINDS = (
    ChangeKind.ASSIGNMENT_ADDED,
    ChangeKind.ASSIGNMENT_REMOVED,
)
_EDGE_KINDS = (
    ChangeKind.MANAGER_ADDED,
    ChangeKind.MANAGER_REMOVED,
)


class ChangeEvent(BaseModel):
    """
    A committed mutation of the hierarchy or assignment store.

    Published by the mutation paths right after their transaction
    commits. Fields required depend on kind:
    - assignment_added / assignment_removed: user_id, customer_id
    - assignments_replaced: user_id
    - manager_added / manager_removed: report_id, manager_id
    - managers_replaced: report_id, manager_ids, previous_manager_ids
    - user_removed: user_id, previous_manager_ids
    - tenant_rebuild: nothing
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: str = Field(..., min_length=1)
    kind: ChangeKind
    user_id: Optional[str] = None
    customer_id: Optional[str] = None
    report_id: Optional[str] = None
    manager_id: Optional[str] = None
    manager_ids: List[str] = Field(default_factory=list)
    previous_manager_ids: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_fields_for_kind(self) -> "ChangeEvent":
        missing = []
        if self.kind in _ASSIGNMENT_KINDS:
            if not self.user_id:
                missing.append("user_id")
            if not self.customer_id:
                missing.append("customer_id")
        elif self.kind in (ChangeKind.ASSIGNMENTS_REPLACED, ChangeKind.USER_REMOVED):
            if not self.user_id:
                missing.append("user_id")
        elif self.kind in _EDGE_KINDS:
            if not self.report_id:
                missing.append("report_id")
            if not self.manager_id:
                missing.append("manager_id")
        elif self.kind == ChangeKind.MANAGERS_REPLACED:
            if not self.report_id:
                missing.append("report_id")
        if missing:
            raise ValueError(f"{self.kind.value} event requires {', '.join(missing)}")
        return self

    @classmethod
    def parse(cls, payload: dict) -> "ChangeEvent":
        """Validate a raw payload, raising InvalidChangeEventError."""
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise InvalidChangeEventError(
                f"Invalid change event: {e}",
                tenant_id=payload.get("tenant_id") if isinstance(payload, dict) else None,
            ) from e

    # Constructors used by the mutation paths

    @classmethod
    def assignment_added(cls, tenant_id: str, user_id: str, customer_id: str) -> "ChangeEvent":
        return cls(tenant_id=tenant_id, kind=ChangeKind.ASSIGNMENT_ADDED,
                   user_id=user_id, customer_id=customer_id)

    @classmethod
    def assignment_removed(cls, tenant_id: str, user_id: str, customer_id: str) -> "ChangeEvent":
        return cls(tenant_id=tenant_id, kind=ChangeKind.ASSIGNMENT_REMOVED,
                   user_id=user_id, customer_id=customer_id)

    @classmethod
    def assignments_replaced(cls, tenant_id: str, user_id: str) -> "ChangeEvent":
        return cls(tenant_id=tenant_id, kind=ChangeKind.ASSIGNMENTS_REPLACED, user_id=user_id)

    @classmethod
    def manager_added(cls, tenant_id: str, report_id: str, manager_id: str) -> "ChangeEvent":
        return cls(tenant_id=tenant_id, kind=ChangeKind.MANAGER_ADDED,
                   report_id=report_id, manager_id=manager_id)

    @classmethod
    def manager_removed(cls, tenant_id: str, report_id: str, manager_id: str) -> "ChangeEvent":
        return cls(tenant_id=tenant_id, kind=ChangeKind.MANAGER_REMOVED,
                   report_id=report_id, manager_id=manager_id)

    @classmethod
    def managers_replaced(
        cls,
        tenant_id: str,
        report_id: str,
        manager_ids: List[str],
        previous_manager_ids: List[str],
    ) -> "ChangeEvent":
        return cls(tenant_id=tenant_id, kind=ChangeKind.MANAGERS_REPLACED, report_id=report_id,
                   manager_ids=list(manager_ids), previous_manager_ids=list(previous_manager_ids))

    @classmethod
    def user_removed(cls, tenant_id: str, user_id: str, previous_manager_ids: List[str]) -> "ChangeEvent":
        return cls(tenant_id=tenant_id, kind=ChangeKind.USER_REMOVED, user_id=user_id,
                   previous_manager_ids=list(previous_manager_ids))

    @classmethod
    def tenant_rebuild(cls, tenant_id: str) -> "ChangeEvent":
        return cls(tenant_id=tenant_id, kind=ChangeKind.TENANT_REBUILD)

    def seed_user_ids(self) -> List[str]:
        """Users whose own closure changed; each one's ancestors are stale too."""
        if self.kind in _ASSIGNMENT_KINDS or self.kind == ChangeKind.ASSIGNMENTS_REPLACED:
            return [self.user_id]
        if self.kind in _EDGE_KINDS:
            return [self.manager_id]
        if self.kind == ChangeKind.MANAGERS_REPLACED:
            return list(dict.fromkeys([*self.previous_manager_ids, *self.manager_ids]))
        if self.kind == ChangeKind.USER_REMOVED:
            return [self.user_id, *self.previous_manager_ids]
        return []


class InvalidationDetector:
    """
    Computes the set of users whose closure a change has made stale.

    Returned sets feed RebuildScheduler.enqueue().
    """

    def __init__(
        self,
        graph_reader: GraphReader,
        tenant_user_ids=None,
        settings: Optional[RebuildSettings] = None,
    ):
        """
        Args:
            graph_reader: Reader for the (post-commit) hierarchy
            tenant_user_ids: Callable(tenant_id) -> iterable of every user id
                that may hold a closure. Defaults to the hierarchy store's
                user list.
            settings: Rebuild settings (loaded from config when omitted)
        """
        self.graph_reader = graph_reader
        self._tenant_user_ids = tenant_user_ids or graph_reader.list_tenant_user_ids
        self.settings = settings or get_rebuild_settings()

    def affected_users(self, tenant_id: str, change: ChangeEvent) -> FrozenSet[str]:
        """
        Return the users whose closure is potentially stale after change.

        Raises:
            TenantIsolationError: If the event belongs to another tenant
        """
        if not tenant_id:
            raise ValueError("tenant_id is required and cannot be empty")
        if change.tenant_id != tenant_id:
            logger.error(
                "Change event tenant mismatch",
                extra={"tenant_id": tenant_id, "event_tenant_id": change.tenant_id},
            )
            raise TenantIsolationError(
                f"Change event for tenant {change.tenant_id} submitted under tenant {tenant_id}",
                tenant_id=tenant_id,
                offending_tenant_id=change.tenant_id,
            )

        if change.kind == ChangeKind.TENANT_REBUILD:
            return self.tenant_wide(tenant_id, change)

        if self.settings.invalidation_policy == INVALIDATION_POLICY_TENANT:
            return self.tenant_wide(tenant_id, change)

        graph = self.graph_reader.load_tenant(tenant_id)
        affected = self._with_ancestors(graph, change.seed_user_ids())
        if affected is None:
            logger.info(
                "Ancestor walk limit exceeded, invalidating tenant",
                extra={
                    "tenant_id": tenant_id,
                    "change_kind": change.kind.value,
                    "max_ancestor_walk": self.settings.max_ancestor_walk,
                },
            )
            return self.tenant_wide(tenant_id, change)

        logger.debug(
            "invalidation.detected",
            extra={
                "tenant_id": tenant_id,
                "change_kind": change.kind.value,
                "affected_count": len(affected),
            },
        )
        return frozenset(affected)

    def _with_ancestors(self, graph: TenantGraph, seeds: List[str]) -> Optional[Set[str]]:
        limit = self.settings.max_ancestor_walk
        affected: Set[str] = set()
        for seed in seeds:
            affected.add(seed)
            ancestors = graph.ancestors(seed, limit=limit)
            if ancestors is None:
                return None
            affected |= ancestors
            if len(affected) > limit:
                return None
        return affected

    def tenant_wide(self, tenant_id: str, change: Optional[ChangeEvent] = None) -> FrozenSet[str]:
        """Every user in the tenant, plus the change's own seeds (e.g. a removed user)."""
        users = set(self._tenant_user_ids(tenant_id))
        if change is not None:
            users.update(change.seed_user_ids())
        logger.info(
            "invalidation.tenant_wide",
            extra={
                "tenant_id": tenant_id,
                "change_kind": change.kind.value if change else None,
                "affected_count": len(users),
            },
        )
        return frozenset(users)
