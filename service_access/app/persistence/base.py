"""
Collaborator interfaces consumed by the evaluator, audit logger and door service.

Every component receives its collaborators explicitly; there is no module
level store client.
"""

from datetime import datetime
from typing import Dict, List, Optional, Protocol

from ..rules.models import AccessRule, Door, Principal
from ..audit.models import AccessLogEntry, AccessLogFilters


class DoorRepository(Protocol):
    async def get(self, door_id: str, tenant_id: str) -> Optional[Door]: ...

    async def list_for_tenant(self, tenant_id: str) -> List[Door]: ...

    async def set_locked(self, door_id: str, tenant_id: str, locked: bool) -> None: ...


class UserRepository(Protocol):
    async def get(self, user_id: str, tenant_id: str) -> Optional[Principal]: ...


class RuleStore(Protocol):
    async def list_active_rules(self, door_id: str, tenant_id: str, now: datetime) -> List[AccessRule]:
        """Active rules whose validity window contains ``now``, ascending by priority."""
        ...


class MembershipResolver(Protocol):
    async def has_active_membership(self, user_id: str, tenant_id: str, now: datetime) -> bool: ...


class AccessLogStore(Protocol):
    """Append-only store of access log entries."""

    async def insert(self, entry: AccessLogEntry) -> None: ...

    async def get(self, log_id: str, tenant_id: str) -> Optional[AccessLogEntry]: ...

    async def fetch(
        self,
        tenant_id: str,
        filters: AccessLogFilters,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[AccessLogEntry]:
        """Matching entries, newest first."""
        ...

    async def count(self, tenant_id: str, filters: AccessLogFilters) -> int: ...

    async def count_by(self, tenant_id: str, filters: AccessLogFilters, column: str) -> Dict[str, int]:
        """Entry counts grouped by one of ``GROUPABLE_COLUMNS``."""
        ...

    async def count_distinct_users(self, tenant_id: str, filters: AccessLogFilters) -> int: ...

    async def delete_before(self, tenant_id: str, cutoff: datetime) -> int: ...


GROUPABLE_COLUMNS = ("result", "method", "action", "door_id")


class StorageBackend:
    """Bundle of collaborators sharing one underlying store."""

    def __init__(
        self,
        doors: DoorRepository,
        users: UserRepository,
        rules: RuleStore,
        memberships: MembershipResolver,
        logs: AccessLogStore,
    ):
        self.doors = doors
        self.users = users
        self.rules = rules
        self.memberships = memberships
        self.logs = logs

    async def start(self):
        """Open connections. No-op for backends without any."""

    async def stop(self):
        """Release connections."""

    async def health_check(self) -> bool:
        return True
