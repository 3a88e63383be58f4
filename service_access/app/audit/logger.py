"""
Audit trail for door access decisions and hardware actions.
"""

import asyncio
import csv
import io
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from shared.errors import CollaboratorError, NotFoundError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .models import (
    AccessLogEntry, AccessLogFilters, AccessLogPage, AccessLogStats, AccessResult,
    Pagination, utcnow,
)


CSV_COLUMNS = (
    "log_id",
    "timestamp",
    "door_id",
    "user_id",
    "action",
    "method",
    "result",
    "success",
    "reason",
    "ip_address",
    "rule_id",
)

TOP_DOORS_LIMIT = 10


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AuditLogger:
    """Append-only access log with query, CSV export and statistics."""

    def __init__(
        self,
        store,
        export_max_rows: int = 10000,
        max_page_size: int = 500,
        clock: Callable[[], datetime] = utcnow,
        metrics: Optional[MetricsCollector] = None,
        timeout_seconds: float = 2.0,
    ):
        self.logger = get_logger("access.audit")
        self.store = store
        self.export_max_rows = export_max_rows
        self.max_page_size = max_page_size
        self.clock = clock
        self.metrics = metrics
        self.timeout_seconds = timeout_seconds

    async def record(self, entry: AccessLogEntry) -> AccessLogEntry:
        """Append one immutable entry. The store write is a single insert."""
        try:
            await asyncio.wait_for(self.store.insert(entry), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            self.logger.error("Access log write timed out", log_id=entry.log_id, tenant_id=entry.tenant_id)
            raise CollaboratorError("audit store", f"write timed out after {self.timeout_seconds}s")
        except Exception as e:
            self.logger.error("Access log write failed", log_id=entry.log_id, tenant_id=entry.tenant_id, error=str(e))
            raise CollaboratorError("audit store", str(e))
        if self.metrics:
            self.metrics.record_audit_entry(entry.result.value)
        self.logger.info(
            "Access log recorded",
            log_id=entry.log_id,
            tenant_id=entry.tenant_id,
            door_id=entry.door_id,
            user_id=entry.user_id,
            action=entry.action.value,
            result=entry.result.value,
        )
        return entry

    async def get(self, log_id: str, tenant_id: str) -> AccessLogEntry:
        entry = await self.store.get(log_id, tenant_id)
        if entry is None:
            # Entries of other tenants are reported as missing too
            raise NotFoundError("Access log", log_id)
        return entry

    async def query(
        self,
        tenant_id: str,
        filters: Optional[AccessLogFilters] = None,
        pagination: Optional[Pagination] = None,
    ) -> AccessLogPage:
        """Filtered entries, newest first, paginated by offset and limit."""
        filters = filters or AccessLogFilters()
        pagination = pagination or Pagination()
        self._validate_pagination(pagination)
        filters = self._prepare(filters)

        entries = await self.store.fetch(tenant_id, filters, pagination.offset, pagination.limit)
        total = await self.store.count(tenant_id, filters)
        return AccessLogPage(entries=entries, total=total, offset=pagination.offset, limit=pagination.limit)

    async def recent_failures(self, tenant_id: str, limit: int = 20) -> List[AccessLogEntry]:
        page = await self.query(tenant_id, AccessLogFilters(success=False), Pagination(offset=0, limit=limit))
        return page.entries

    async def export_csv(self, tenant_id: str, filters: Optional[AccessLogFilters] = None) -> bytes:
        """Serialize matching entries to CSV, capped at ``export_max_rows``."""
        filters = self._prepare(filters or AccessLogFilters())
        entries = await self.store.fetch(tenant_id, filters, 0, self.export_max_rows)

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_COLUMNS)
        for entry in entries:
            writer.writerow(self._csv_row(entry))

        self.logger.info("Access logs exported", tenant_id=tenant_id, rows=len(entries))
        return buffer.getvalue().encode("utf-8")

    async def stats(
        self,
        tenant_id: str,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> AccessLogStats:
        filters = self._prepare(AccessLogFilters(start_time=start_time, end_time=end_time))

        by_result = await self.store.count_by(tenant_id, filters, "result")
        by_method = await self.store.count_by(tenant_id, filters, "method")
        by_door = await self.store.count_by(tenant_id, filters, "door_id")
        unique_users = await self.store.count_distinct_users(tenant_id, filters)

        total = sum(by_result.values())
        success = by_result.get(AccessResult.GRANTED.value, 0)
        top_doors = sorted(by_door.items(), key=lambda item: (-item[1], item[0]))[:TOP_DOORS_LIMIT]

        return AccessLogStats(
            total_attempts=total,
            success_count=success,
            failure_count=total - success,
            success_rate=(success / total) if total else 0.0,
            unique_user_count=unique_users,
            by_result=by_result,
            by_method=by_method,
            top_doors=[{"door_id": door_id, "count": count} for door_id, count in top_doors],
        )

    async def purge_older_than(self, tenant_id: str, days: int) -> Dict[str, Any]:
        """Retention sweep: delete the tenant's entries older than ``days``."""
        if days < 1:
            raise ValidationError("Retention period must be at least one day", {"days": days})
        cutoff = self.clock() - timedelta(days=days)
        deleted = await self.store.delete_before(tenant_id, cutoff)
        self.logger.warning("Access logs purged", tenant_id=tenant_id, deleted=deleted, cutoff=cutoff.isoformat())
        return {"deleted_count": deleted, "cutoff": cutoff}

    def _validate_pagination(self, pagination: Pagination):
        if pagination.offset < 0:
            raise ValidationError("offset must not be negative", {"offset": pagination.offset})
        if not 1 <= pagination.limit <= self.max_page_size:
            raise ValidationError(
                f"limit must be between 1 and {self.max_page_size}", {"limit": pagination.limit}
            )

    def _prepare(self, filters: AccessLogFilters) -> AccessLogFilters:
        # Naive bounds are taken as UTC, matching stored timestamps
        filters = replace(
            filters,
            start_time=_as_utc(filters.start_time),
            end_time=_as_utc(filters.end_time),
        )
        if filters.start_time and filters.end_time and filters.start_time > filters.end_time:
            raise ValidationError(
                "start_time must not be after end_time",
                {"start_time": filters.start_time.isoformat(), "end_time": filters.end_time.isoformat()},
            )
        return filters

    @staticmethod
    def _csv_row(entry: AccessLogEntry) -> List[str]:
        return [
            entry.log_id,
            entry.timestamp.isoformat(),
            entry.door_id,
            entry.user_id or "",
            entry.action.value,
            entry.method.value,
            entry.result.value,
            "yes" if entry.success else "no",
            entry.reason or "",
            entry.ip_address or "",
            entry.rule_id or "",
        ]
