"""
PostgreSQL persistence layer for the Access Service.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import asyncpg

from shared.errors import CollaboratorError
from shared.logging import get_logger
from ..audit.models import AccessAction, AccessLogEntry, AccessLogFilters, AccessMethod, AccessResult
from ..rules.models import AccessRule, Door, DoorStatus, MembershipStatus, Principal, UserRole
from ..rules.time_window import parse_time_slots
from .base import GROUPABLE_COLUMNS, StorageBackend


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS doors (
        door_id VARCHAR(255) NOT NULL,
        tenant_id VARCHAR(255) NOT NULL,
        name VARCHAR(255) NOT NULL,
        location VARCHAR(255),
        status VARCHAR(20) NOT NULL DEFAULT 'ACTIVE',
        is_online BOOLEAN NOT NULL DEFAULT TRUE,
        is_locked BOOLEAN NOT NULL DEFAULT TRUE,
        metadata JSONB NOT NULL DEFAULT '{}',
        PRIMARY KEY (tenant_id, door_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        user_id VARCHAR(255) NOT NULL,
        tenant_id VARCHAR(255) NOT NULL,
        role VARCHAR(20) NOT NULL,
        active BOOLEAN NOT NULL DEFAULT TRUE,
        display_name VARCHAR(255),
        PRIMARY KEY (tenant_id, user_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS memberships (
        membership_id VARCHAR(255) PRIMARY KEY,
        user_id VARCHAR(255) NOT NULL,
        tenant_id VARCHAR(255) NOT NULL,
        status VARCHAR(20) NOT NULL,
        end_date TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS door_access_rules (
        rule_id VARCHAR(255) PRIMARY KEY,
        door_id VARCHAR(255) NOT NULL,
        tenant_id VARCHAR(255) NOT NULL,
        name VARCHAR(255) NOT NULL,
        description TEXT,
        priority INTEGER NOT NULL DEFAULT 0,
        active BOOLEAN NOT NULL DEFAULT TRUE,
        allowed_user_ids TEXT[] NOT NULL DEFAULT '{}',
        allowed_roles TEXT[] NOT NULL DEFAULT '{}',
        allowed_membership_statuses TEXT[] NOT NULL DEFAULT '{}',
        time_slots JSONB NOT NULL DEFAULT '[]',
        valid_from TIMESTAMP,
        valid_until TIMESTAMP,
        created_at TIMESTAMP NOT NULL DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS access_logs (
        log_id VARCHAR(255) PRIMARY KEY,
        tenant_id VARCHAR(255) NOT NULL,
        door_id VARCHAR(255) NOT NULL,
        user_id VARCHAR(255),
        action VARCHAR(20) NOT NULL,
        method VARCHAR(20) NOT NULL,
        result VARCHAR(20) NOT NULL,
        reason TEXT,
        ip_address VARCHAR(64),
        metadata JSONB NOT NULL DEFAULT '{}',
        timestamp TIMESTAMP WITH TIME ZONE NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_memberships_user ON memberships(tenant_id, user_id);",
    "CREATE INDEX IF NOT EXISTS idx_rules_door ON door_access_rules(tenant_id, door_id, priority);",
    "CREATE INDEX IF NOT EXISTS idx_logs_tenant_time ON access_logs(tenant_id, timestamp DESC);",
    "CREATE INDEX IF NOT EXISTS idx_logs_door ON access_logs(tenant_id, door_id);",
    "CREATE INDEX IF NOT EXISTS idx_logs_user ON access_logs(tenant_id, user_id);",
]


def _decode_json(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


def build_where(tenant_id: str, filters: AccessLogFilters) -> Tuple[str, List[Any]]:
    """Translate filters into a parameterised WHERE clause."""
    clauses = ["tenant_id = $1"]
    params: List[Any] = [tenant_id]

    def add(clause: str, value: Any):
        params.append(value)
        clauses.append(clause.format(f"${len(params)}"))

    if filters.door_id is not None:
        add("door_id = {}", filters.door_id)
    if filters.user_id is not None:
        add("user_id = {}", filters.user_id)
    if filters.result is not None:
        add("result = {}", filters.result.value)
    if filters.success is True:
        clauses.append("result = 'GRANTED'")
    elif filters.success is False:
        clauses.append("result <> 'GRANTED'")
    if filters.action is not None:
        add("action = {}", filters.action.value)
    if filters.method is not None:
        add("method = {}", filters.method.value)
    if filters.start_time is not None:
        add("timestamp >= {}", filters.start_time)
    if filters.end_time is not None:
        add("timestamp <= {}", filters.end_time)

    return " AND ".join(clauses), params


class PostgreSQLPersistence:
    """Connection pool and schema management."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.logger = get_logger("access.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=30,
                init=self._init_connection,
            )
            await self._create_tables()
            self.logger.info("PostgreSQL persistence started")
        except Exception as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise CollaboratorError("postgres", str(e))

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL persistence stopped")

    @staticmethod
    async def _init_connection(conn):
        await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            for statement in SCHEMA:
                await conn.execute(statement)

    async def health_check(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False


class PostgresDoorRepository:
    def __init__(self, db: PostgreSQLPersistence):
        self.db = db

    async def get(self, door_id: str, tenant_id: str) -> Optional[Door]:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM doors WHERE door_id = $1 AND tenant_id = $2", door_id, tenant_id
            )
        return self._row_to_door(row) if row else None

    async def list_for_tenant(self, tenant_id: str) -> List[Door]:
        async with self.db.pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM doors WHERE tenant_id = $1 ORDER BY name", tenant_id)
        return [self._row_to_door(row) for row in rows]

    async def set_locked(self, door_id: str, tenant_id: str, locked: bool) -> None:
        async with self.db.pool.acquire() as conn:
            await conn.execute(
                "UPDATE doors SET is_locked = $3 WHERE door_id = $1 AND tenant_id = $2",
                door_id, tenant_id, locked,
            )

    @staticmethod
    def _row_to_door(row) -> Door:
        return Door(
            door_id=row["door_id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            location=row["location"],
            status=DoorStatus(row["status"]),
            is_online=row["is_online"],
            is_locked=row["is_locked"],
            metadata=_decode_json(row["metadata"]) or {},
        )


class PostgresUserRepository:
    def __init__(self, db: PostgreSQLPersistence):
        self.db = db

    async def get(self, user_id: str, tenant_id: str) -> Optional[Principal]:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM users WHERE user_id = $1 AND tenant_id = $2", user_id, tenant_id
            )
        if not row:
            return None
        return Principal(
            user_id=row["user_id"],
            tenant_id=row["tenant_id"],
            role=UserRole(row["role"]),
            active=row["active"],
            display_name=row["display_name"],
        )


class PostgresRuleStore:
    def __init__(self, db: PostgreSQLPersistence):
        self.db = db

    async def list_active_rules(self, door_id: str, tenant_id: str, now: datetime) -> List[AccessRule]:
        async with self.db.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM door_access_rules
                WHERE door_id = $1 AND tenant_id = $2 AND active = TRUE
                  AND (valid_from IS NULL OR valid_from <= $3)
                  AND (valid_until IS NULL OR valid_until >= $3)
                ORDER BY priority ASC, created_at ASC
            """, door_id, tenant_id, now)
        return [self._row_to_rule(row) for row in rows]

    @staticmethod
    def _row_to_rule(row) -> AccessRule:
        # Malformed time slots raise ValidationError, which fails the evaluation closed
        return AccessRule(
            rule_id=row["rule_id"],
            door_id=row["door_id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            description=row["description"],
            priority=row["priority"],
            active=row["active"],
            allowed_user_ids=list(row["allowed_user_ids"] or []),
            allowed_roles=[UserRole(r) for r in row["allowed_roles"] or []],
            allowed_membership_statuses=[MembershipStatus(s) for s in row["allowed_membership_statuses"] or []],
            time_slots=parse_time_slots(_decode_json(row["time_slots"])),
            valid_from=row["valid_from"],
            valid_until=row["valid_until"],
            created_at=row["created_at"],
        )


class PostgresMembershipResolver:
    def __init__(self, db: PostgreSQLPersistence):
        self.db = db

    async def has_active_membership(self, user_id: str, tenant_id: str, now: datetime) -> bool:
        async with self.db.pool.acquire() as conn:
            found = await conn.fetchval("""
                SELECT EXISTS (
                    SELECT 1 FROM memberships
                    WHERE user_id = $1 AND tenant_id = $2 AND status = 'ACTIVE'
                      AND (end_date IS NULL OR end_date >= $3)
                )
            """, user_id, tenant_id, now)
        return bool(found)


class PostgresAccessLogStore:
    def __init__(self, db: PostgreSQLPersistence):
        self.db = db

    async def insert(self, entry: AccessLogEntry) -> None:
        async with self.db.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO access_logs (
                    log_id, tenant_id, door_id, user_id, action, method, result,
                    reason, ip_address, metadata, timestamp
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            """,
                entry.log_id, entry.tenant_id, entry.door_id, entry.user_id,
                entry.action.value, entry.method.value, entry.result.value,
                entry.reason, entry.ip_address, entry.metadata, entry.timestamp
            )

    async def get(self, log_id: str, tenant_id: str) -> Optional[AccessLogEntry]:
        async with self.db.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM access_logs WHERE log_id = $1 AND tenant_id = $2", log_id, tenant_id
            )
        return self._row_to_entry(row) if row else None

    async def fetch(
        self,
        tenant_id: str,
        filters: AccessLogFilters,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[AccessLogEntry]:
        where, params = build_where(tenant_id, filters)
        query = f"SELECT * FROM access_logs WHERE {where} ORDER BY timestamp DESC, log_id DESC"
        if limit is not None:
            params.append(limit)
            query += f" LIMIT ${len(params)}"
        params.append(offset)
        query += f" OFFSET ${len(params)}"

        async with self.db.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [self._row_to_entry(row) for row in rows]

    async def count(self, tenant_id: str, filters: AccessLogFilters) -> int:
        where, params = build_where(tenant_id, filters)
        async with self.db.pool.acquire() as conn:
            count = await conn.fetchval(f"SELECT COUNT(*) FROM access_logs WHERE {where}", *params)
        return count or 0

    async def count_by(self, tenant_id: str, filters: AccessLogFilters, column: str) -> Dict[str, int]:
        if column not in GROUPABLE_COLUMNS:
            raise ValueError(f"Cannot group access logs by {column!r}")
        where, params = build_where(tenant_id, filters)
        async with self.db.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {column} AS key, COUNT(*) AS count FROM access_logs WHERE {where} GROUP BY {column}",
                *params
            )
        return {row["key"]: row["count"] for row in rows}

    async def count_distinct_users(self, tenant_id: str, filters: AccessLogFilters) -> int:
        where, params = build_where(tenant_id, filters)
        async with self.db.pool.acquire() as conn:
            count = await conn.fetchval(
                f"SELECT COUNT(DISTINCT user_id) FROM access_logs WHERE {where}", *params
            )
        return count or 0

    async def delete_before(self, tenant_id: str, cutoff: datetime) -> int:
        async with self.db.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM access_logs WHERE tenant_id = $1 AND timestamp < $2", tenant_id, cutoff
            )
        # asyncpg returns the command tag, e.g. "DELETE 42"
        return int(result.split()[-1])

    @staticmethod
    def _row_to_entry(row) -> AccessLogEntry:
        return AccessLogEntry(
            log_id=row["log_id"],
            tenant_id=row["tenant_id"],
            door_id=row["door_id"],
            user_id=row["user_id"],
            action=AccessAction(row["action"]),
            method=AccessMethod(row["method"]),
            result=AccessResult(row["result"]),
            reason=row["reason"],
            ip_address=row["ip_address"],
            metadata=_decode_json(row["metadata"]) or {},
            timestamp=row["timestamp"],
        )


class PostgresBackend(StorageBackend):
    """All collaborators backed by one asyncpg pool."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self.db = PostgreSQLPersistence(dsn, min_size=min_size, max_size=max_size)
        super().__init__(
            doors=PostgresDoorRepository(self.db),
            users=PostgresUserRepository(self.db),
            rules=PostgresRuleStore(self.db),
            memberships=PostgresMembershipResolver(self.db),
            logs=PostgresAccessLogStore(self.db),
        )

    async def start(self):
        await self.db.start()

    async def stop(self):
        await self.db.stop()

    async def health_check(self) -> bool:
        return await self.db.health_check()
