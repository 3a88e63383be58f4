"""
In-memory storage backend for local runs and tests.
"""

import asyncio
import copy
from collections import Counter
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from shared.logging import get_logger
from ..audit.models import AccessLogEntry, AccessLogFilters
from ..rules.models import AccessRule, Door, Membership, Principal
from .base import GROUPABLE_COLUMNS, StorageBackend


class InMemoryDoorRepository:
    def __init__(self):
        self._doors: Dict[Tuple[str, str], Door] = {}

    def add(self, door: Door) -> Door:
        self._doors[(door.tenant_id, door.door_id)] = door
        return door

    async def get(self, door_id: str, tenant_id: str) -> Optional[Door]:
        return self._doors.get((tenant_id, door_id))

    async def list_for_tenant(self, tenant_id: str) -> List[Door]:
        return [door for (tid, _), door in self._doors.items() if tid == tenant_id]

    async def set_locked(self, door_id: str, tenant_id: str, locked: bool) -> None:
        door = self._doors.get((tenant_id, door_id))
        if door is not None:
            self._doors[(tenant_id, door_id)] = replace(door, is_locked=locked)


class InMemoryUserRepository:
    def __init__(self):
        self._users: Dict[Tuple[str, str], Principal] = {}

    def add(self, user: Principal) -> Principal:
        self._users[(user.tenant_id, user.user_id)] = user
        return user

    async def get(self, user_id: str, tenant_id: str) -> Optional[Principal]:
        return self._users.get((tenant_id, user_id))


class InMemoryRuleStore:
    def __init__(self):
        self._rules: Dict[str, AccessRule] = {}

    def add(self, rule: AccessRule) -> AccessRule:
        self._rules[rule.rule_id] = rule
        return rule

    def remove(self, rule_id: str) -> bool:
        return self._rules.pop(rule_id, None) is not None

    async def list_active_rules(self, door_id: str, tenant_id: str, now: datetime) -> List[AccessRule]:
        rules = [
            rule for rule in self._rules.values()
            if rule.door_id == door_id
            and rule.tenant_id == tenant_id
            and rule.active
            and rule.is_valid_at(now)
        ]
        rules.sort(key=lambda r: (r.priority, r.created_at))
        return rules


class InMemoryMembershipResolver:
    def __init__(self):
        self._memberships: List[Membership] = []

    def add(self, membership: Membership) -> Membership:
        self._memberships.append(membership)
        return membership

    async def has_active_membership(self, user_id: str, tenant_id: str, now: datetime) -> bool:
        return any(
            m.user_id == user_id and m.tenant_id == tenant_id and m.is_active(now)
            for m in self._memberships
        )


class InMemoryAccessLogStore:
    """List-backed log store. A single lock serialises writers and sweeps."""

    def __init__(self):
        self._entries: List[AccessLogEntry] = []
        self._lock = asyncio.Lock()

    def _matching(self, tenant_id: str, filters: AccessLogFilters) -> List[AccessLogEntry]:
        entries = [e for e in self._entries if e.tenant_id == tenant_id and filters.matches(e)]
        entries.sort(key=lambda e: (e.timestamp, e.log_id), reverse=True)
        return entries

    @staticmethod
    def _detached(entry: AccessLogEntry) -> AccessLogEntry:
        return replace(entry, metadata=copy.deepcopy(entry.metadata))

    async def insert(self, entry: AccessLogEntry) -> None:
        async with self._lock:
            self._entries.append(self._detached(entry))

    async def get(self, log_id: str, tenant_id: str) -> Optional[AccessLogEntry]:
        for entry in self._entries:
            if entry.log_id == log_id and entry.tenant_id == tenant_id:
                return self._detached(entry)
        return None

    async def fetch(
        self,
        tenant_id: str,
        filters: AccessLogFilters,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[AccessLogEntry]:
        entries = self._matching(tenant_id, filters)
        end = None if limit is None else offset + limit
        return [self._detached(e) for e in entries[offset:end]]

    async def count(self, tenant_id: str, filters: AccessLogFilters) -> int:
        return len(self._matching(tenant_id, filters))

    async def count_by(self, tenant_id: str, filters: AccessLogFilters, column: str) -> Dict[str, int]:
        if column not in GROUPABLE_COLUMNS:
            raise ValueError(f"Cannot group access logs by {column!r}")
        counts = Counter()
        for entry in self._matching(tenant_id, filters):
            value = getattr(entry, column)
            counts[getattr(value, "value", value)] += 1
        return dict(counts)

    async def count_distinct_users(self, tenant_id: str, filters: AccessLogFilters) -> int:
        return len({e.user_id for e in self._matching(tenant_id, filters) if e.user_id})

    async def delete_before(self, tenant_id: str, cutoff: datetime) -> int:
        async with self._lock:
            kept = [e for e in self._entries if e.tenant_id != tenant_id or e.timestamp >= cutoff]
            deleted = len(self._entries) - len(kept)
            self._entries = kept
        return deleted


class InMemoryBackend(StorageBackend):
    """All collaborators backed by process memory."""

    def __init__(self):
        super().__init__(
            doors=InMemoryDoorRepository(),
            users=InMemoryUserRepository(),
            rules=InMemoryRuleStore(),
            memberships=InMemoryMembershipResolver(),
            logs=InMemoryAccessLogStore(),
        )
        self.logger = get_logger("access.persistence.memory")

    async def start(self):
        self.logger.info("In-memory storage backend started")
