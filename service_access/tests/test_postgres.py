"""
Unit tests for the PostgreSQL persistence layer, without a database.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock
from datetime import datetime, timezone

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import ValidationError
from service_access.app.audit.models import AccessLogFilters, AccessMethod, AccessResult
from service_access.app.persistence.postgres import (
    PostgresAccessLogStore, PostgresRuleStore, build_where,
)
from service_access.app.rules.models import MembershipStatus, UserRole


def mock_db(conn):
    """Database stub whose pool.acquire() yields ``conn``."""
    acquire = MagicMock()
    acquire.__aenter__ = AsyncMock(return_value=conn)
    acquire.__aexit__ = AsyncMock(return_value=False)
    db = MagicMock()
    db.pool.acquire.return_value = acquire
    return db


class TestBuildWhere:
    """Test cases for build_where."""

    def test_tenant_only(self):
        """Test tenant scoping is always present."""
        where, params = build_where("tenant-1", AccessLogFilters())
        assert where == "tenant_id = $1"
        assert params == ["tenant-1"]

    def test_placeholders_are_numbered(self):
        """Test each filter gets the next placeholder."""
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        where, params = build_where("tenant-1", AccessLogFilters(
            door_id="door-1", method=AccessMethod.PIN, start_time=start,
        ))
        assert where == "tenant_id = $1 AND door_id = $2 AND method = $3 AND timestamp >= $4"
        assert params == ["tenant-1", "door-1", "PIN", start]

    def test_success_filter(self):
        """Test success maps onto the result column without parameters."""
        where, params = build_where("tenant-1", AccessLogFilters(success=False, result=AccessResult.ERROR))
        assert where == "tenant_id = $1 AND result = $2 AND result <> 'GRANTED'"
        assert params == ["tenant-1", "ERROR"]

        where, _ = build_where("tenant-1", AccessLogFilters(success=True))
        assert "result = 'GRANTED'" in where


class TestPostgresRuleStore:
    """Test cases for PostgresRuleStore row mapping."""

    @pytest.fixture
    def row(self):
        """Stored rule row."""
        return {
            "rule_id": "rule-1",
            "door_id": "door-1",
            "tenant_id": "tenant-1",
            "name": "Members",
            "description": None,
            "priority": 3,
            "active": True,
            "allowed_user_ids": ["user-1"],
            "allowed_roles": ["CUSTOMER"],
            "allowed_membership_statuses": ["ACTIVE"],
            "time_slots": '[{"dayOfWeek": 1, "startTime": "08:00", "endTime": "10:00"}]',
            "valid_from": None,
            "valid_until": None,
            "created_at": datetime(2024, 1, 1),
        }

    @pytest.mark.asyncio
    async def test_list_active_rules(self, row):
        """Test rows are converted to rules."""
        conn = MagicMock()
        conn.fetch = AsyncMock(return_value=[row])
        store = PostgresRuleStore(mock_db(conn))

        rules = await store.list_active_rules("door-1", "tenant-1", datetime(2024, 1, 1, 9, 0))

        assert len(rules) == 1
        rule = rules[0]
        assert rule.allowed_roles == [UserRole.CUSTOMER]
        assert rule.allowed_membership_statuses == [MembershipStatus.ACTIVE]
        assert rule.time_slots[0].start_time == "08:00"
        args = conn.fetch.await_args.args
        assert "ORDER BY priority ASC, created_at ASC" in args[0]
        assert args[1:] == ("door-1", "tenant-1", datetime(2024, 1, 1, 9, 0))

    @pytest.mark.asyncio
    async def test_malformed_time_slots_raise(self, row):
        """Test bad stored slots surface as ValidationError."""
        row["time_slots"] = '[{"dayOfWeek": 9, "startTime": "08:00", "endTime": "10:00"}]'
        conn = MagicMock()
        conn.fetch = AsyncMock(return_value=[row])
        store = PostgresRuleStore(mock_db(conn))

        with pytest.raises(ValidationError):
            await store.list_active_rules("door-1", "tenant-1", datetime(2024, 1, 1))


class TestPostgresAccessLogStore:
    """Test cases for PostgresAccessLogStore queries."""

    @pytest.mark.asyncio
    async def test_fetch_appends_limit_and_offset(self):
        """Test pagination parameters follow the filter parameters."""
        conn = MagicMock()
        conn.fetch = AsyncMock(return_value=[])
        store = PostgresAccessLogStore(mock_db(conn))

        await store.fetch("tenant-1", AccessLogFilters(user_id="user-1"), offset=20, limit=10)

        query, *params = conn.fetch.await_args.args
        assert query.endswith("ORDER BY timestamp DESC, log_id DESC LIMIT $3 OFFSET $4")
        assert params == ["tenant-1", "user-1", 10, 20]

    @pytest.mark.asyncio
    async def test_count_by_rejects_unknown_column(self):
        """Test grouping is restricted to known columns."""
        store = PostgresAccessLogStore(mock_db(MagicMock()))

        with pytest.raises(ValueError):
            await store.count_by("tenant-1", AccessLogFilters(), "reason; DROP TABLE access_logs")

    @pytest.mark.asyncio
    async def test_delete_before_parses_command_tag(self):
        """Test the deleted row count is read from the command tag."""
        conn = MagicMock()
        conn.execute = AsyncMock(return_value="DELETE 42")
        store = PostgresAccessLogStore(mock_db(conn))

        deleted = await store.delete_before("tenant-1", datetime(2024, 1, 1, tzinfo=timezone.utc))

        assert deleted == 42
