"""
Unit tests for suspicious activity detection.
"""

import pytest
from datetime import datetime, timedelta, timezone

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import ValidationError
from service_access.app.audit.detector import SuspiciousActivityDetector
from service_access.app.audit.models import AccessLogEntry, AccessResult
from service_access.app.persistence.memory import InMemoryAccessLogStore


TENANT = "tenant-1"
NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestSuspiciousActivityDetector:
    """Test cases for SuspiciousActivityDetector."""

    @pytest.fixture
    def store(self):
        """Create in-memory log store."""
        return InMemoryAccessLogStore()

    @pytest.fixture
    def detector(self, store):
        """Create detector with a fixed clock."""
        return SuspiciousActivityDetector(store, clock=lambda: NOW)

    async def add(self, store, minutes_ago, user_id="user-1", ip="10.0.0.1",
                  result=AccessResult.DENIED, tenant_id=TENANT):
        await store.insert(AccessLogEntry(
            tenant_id=tenant_id,
            door_id="door-1",
            user_id=user_id,
            result=result,
            ip_address=ip,
            timestamp=NOW - timedelta(minutes=minutes_ago),
        ))

    @pytest.mark.asyncio
    async def test_flags_user_over_threshold(self, store, detector):
        """Test six recent failures flag the user, an older one is ignored."""
        for minute in range(6):
            await self.add(store, minutes_ago=minute * 3 + 1)
        await self.add(store, minutes_ago=40)

        report = await detector.detect(TENANT, 30, 5)

        assert report.suspicious_users == [{"user_id": "user-1", "failed_attempt_count": 6}]
        assert report.suspicious_ips == [{"ip": "10.0.0.1", "count": 6}]

    @pytest.mark.asyncio
    async def test_below_threshold_not_flagged(self, store, detector):
        """Test four failures stay below a threshold of five."""
        for minute in range(4):
            await self.add(store, minutes_ago=minute)

        report = await detector.detect(TENANT)

        assert report.suspicious_users == []
        assert report.suspicious_ips == []

    @pytest.mark.asyncio
    async def test_threshold_is_inclusive(self, store, detector):
        """Test exactly threshold failures are flagged."""
        for minute in range(5):
            await self.add(store, minutes_ago=minute)

        report = await detector.detect(TENANT, threshold=5)

        assert report.suspicious_users[0]["failed_attempt_count"] == 5

    @pytest.mark.asyncio
    async def test_granted_entries_ignored(self, store, detector):
        """Test successful attempts do not count."""
        for minute in range(6):
            await self.add(store, minutes_ago=minute, result=AccessResult.GRANTED)

        report = await detector.detect(TENANT)

        assert report.suspicious_users == []

    @pytest.mark.asyncio
    async def test_error_entries_count(self, store, detector):
        """Test ERROR entries are failures."""
        for minute in range(5):
            await self.add(store, minutes_ago=minute, result=AccessResult.ERROR)

        report = await detector.detect(TENANT)

        assert len(report.suspicious_users) == 1

    @pytest.mark.asyncio
    async def test_ip_flagged_across_users(self, store, detector):
        """Test one IP failing for many users is flagged on its own."""
        for i in range(5):
            await self.add(store, minutes_ago=i, user_id=f"user-{i}", ip="203.0.113.7")

        report = await detector.detect(TENANT)

        assert report.suspicious_users == []
        assert report.suspicious_ips == [{"ip": "203.0.113.7", "count": 5}]

    @pytest.mark.asyncio
    async def test_other_tenants_ignored(self, store, detector):
        """Test failures of another tenant are not counted."""
        for minute in range(6):
            await self.add(store, minutes_ago=minute, tenant_id="tenant-2")

        report = await detector.detect(TENANT)

        assert report.suspicious_users == []

    @pytest.mark.asyncio
    async def test_entries_without_user_or_ip(self, store, detector):
        """Test missing user ids and IPs are not grouped."""
        for minute in range(6):
            await self.add(store, minutes_ago=minute, user_id=None, ip=None)

        report = await detector.detect(TENANT)

        assert report.suspicious_users == []
        assert report.suspicious_ips == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("window, threshold", [(0, 5), (30, 0)])
    async def test_rejects_non_positive_parameters(self, detector, window, threshold):
        """Test window and threshold must be positive."""
        with pytest.raises(ValidationError):
            await detector.detect(TENANT, window, threshold)
