"""
Door access service for the Facility Access Layer.
"""

from datetime import datetime
from typing import Optional

from fastapi import Header, Query, Request, Response
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import ValidationError
from shared.logging import set_user_context

from .audit.detector import SuspiciousActivityDetector
from .audit.logger import AuditLogger
from .audit.models import (
    AccessAction, AccessLogCreateRequest, AccessLogEntry, AccessLogFilters,
    AccessLogListResponse, AccessLogResponse, AccessMethod, AccessResult, Pagination, utcnow,
)
from .doors.service import DoorAccessService, DoorActionRequest, HardwareController
from .persistence.base import StorageBackend
from .persistence.memory import InMemoryBackend
from .rules.evaluator import AccessEvaluator
from .rules.models import AccessCheckRequest, AccessCheckResponse, DecisionCode


def build_backend(config: ServiceConfig) -> StorageBackend:
    """Select the storage backend named in configuration."""
    if config.storage_backend == "postgres":
        from .persistence.postgres import PostgresBackend
        return PostgresBackend(
            config.postgres_dsn,
            min_size=config.postgres_min_pool_size,
            max_size=config.postgres_max_pool_size,
        )
    return InMemoryBackend()


class AccessService(BaseService):
    """Access control service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        backend: Optional[StorageBackend] = None,
        hardware: Optional[HardwareController] = None,
    ):
        super().__init__("access", 8020, config=config)

        self.backend = backend or build_backend(self.config)
        self.evaluator = AccessEvaluator(
            doors=self.backend.doors,
            users=self.backend.users,
            rules=self.backend.rules,
            memberships=self.backend.memberships,
            timeout_seconds=self.config.collaborator_timeout_seconds,
            metrics=self.metrics,
        )
        self.audit = AuditLogger(
            self.backend.logs,
            export_max_rows=self.config.csv_export_max_rows,
            max_page_size=self.config.query_max_limit,
            metrics=self.metrics,
            timeout_seconds=self.config.collaborator_timeout_seconds,
        )
        self.detector = SuspiciousActivityDetector(self.backend.logs)
        self.door_service = DoorAccessService(
            doors=self.backend.doors,
            evaluator=self.evaluator,
            audit=self.audit,
            hardware=hardware,
            allow_test_mode=self.config.allow_proximity_test_mode,
            default_minimum_rssi=self.config.default_minimum_rssi,
            timeout_seconds=self.config.collaborator_timeout_seconds,
        )

        self._setup_access_routes()

    def _setup_access_routes(self):
        """Set up access-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "access",
                "message": "Facility Access Layer - Access Service",
                "version": "1.0.0",
                "capabilities": ["evaluation", "audit", "suspicious_activity", "door_control"]
            }

        @self.app.post("/doors/{door_id}/check-access", response_model=AccessCheckResponse)
        async def check_access(
            door_id: str,
            request: Request,
            response: Response,
            body: AccessCheckRequest,
            tenant_id: str = Header(..., alias="X-Tenant-ID"),
        ):
            """Evaluate access and record the verdict. The trace goes to the audit log only."""
            set_user_context(user_id=body.user_id, tenant_id=tenant_id)
            method = _parse_method(body.method)
            decision = await self.evaluator.evaluate_access(door_id, body.user_id, tenant_id)

            entry = await self.audit.record(AccessLogEntry.from_decision(
                decision, tenant_id, door_id, body.user_id,
                action=AccessAction.ACCESS_CHECK,
                method=method,
                ip_address=_client_ip(request),
            ))

            if decision.code == DecisionCode.COLLABORATOR_FAILURE:
                response.headers["X-Access-Error"] = "collaborator-failure"

            return AccessCheckResponse(
                granted=decision.granted,
                reason=decision.reason,
                code=decision.code,
                rule_id=decision.rule_id,
                log_id=entry.log_id,
                timestamp=entry.timestamp,
            )

        @self.app.post("/doors/{door_id}/unlock")
        async def unlock_door(
            door_id: str,
            request: Request,
            body: DoorActionRequest,
            tenant_id: str = Header(..., alias="X-Tenant-ID"),
        ):
            """Unlock a door if the user is granted access."""
            set_user_context(user_id=body.user_id, tenant_id=tenant_id)
            result = await self.door_service.unlock(door_id, tenant_id, body, _client_ip(request))
            return _door_action_response(door_id, result)

        @self.app.post("/doors/{door_id}/lock")
        async def lock_door(
            door_id: str,
            request: Request,
            body: DoorActionRequest,
            tenant_id: str = Header(..., alias="X-Tenant-ID"),
        ):
            """Lock a door if the user is granted access."""
            set_user_context(user_id=body.user_id, tenant_id=tenant_id)
            result = await self.door_service.lock(door_id, tenant_id, body, _client_ip(request))
            return _door_action_response(door_id, result)

        @self.app.get("/users/{user_id}/accessible-doors")
        async def accessible_doors(user_id: str, tenant_id: str = Header(..., alias="X-Tenant-ID")):
            """Doors the user can open right now."""
            doors = await self.evaluator.accessible_doors(user_id, tenant_id)
            return {"user_id": user_id, "doors": doors}

        @self.app.post("/access-logs", response_model=AccessLogResponse, status_code=201)
        async def record_access_log(
            request: Request,
            body: AccessLogCreateRequest,
            tenant_id: str = Header(..., alias="X-Tenant-ID"),
        ):
            """Record an access log entry produced outside the evaluation routes."""
            entry = await self.audit.record(AccessLogEntry(
                tenant_id=tenant_id,
                door_id=body.door_id,
                user_id=body.user_id,
                action=body.action,
                method=body.method,
                result=body.result,
                reason=body.reason,
                ip_address=body.ip_address or _client_ip(request),
                metadata=body.metadata,
            ))
            return AccessLogResponse.from_entry(entry)

        @self.app.get("/access-logs", response_model=AccessLogListResponse)
        async def query_access_logs(
            tenant_id: str = Header(..., alias="X-Tenant-ID"),
            door_id: Optional[str] = Query(None, description="Filter by door"),
            user_id: Optional[str] = Query(None, description="Filter by user"),
            result: Optional[AccessResult] = Query(None, description="Filter by result"),
            success: Optional[bool] = Query(None, description="Granted (true) or not granted (false)"),
            action: Optional[AccessAction] = Query(None, description="Filter by action"),
            method: Optional[AccessMethod] = Query(None, description="Filter by method"),
            start_time: Optional[datetime] = Query(None, description="Earliest timestamp"),
            end_time: Optional[datetime] = Query(None, description="Latest timestamp"),
            offset: int = Query(0, ge=0, description="Entries to skip"),
            limit: int = Query(self.config.query_default_limit, ge=1, le=self.config.query_max_limit),
        ):
            """Query access logs with filtering and pagination."""
            filters = AccessLogFilters(
                door_id=door_id, user_id=user_id, result=result, success=success,
                action=action, method=method, start_time=start_time, end_time=end_time,
            )
            page = await self.audit.query(tenant_id, filters, Pagination(offset=offset, limit=limit))
            return AccessLogListResponse(
                entries=[AccessLogResponse.from_entry(e) for e in page.entries],
                total=page.total,
                offset=page.offset,
                limit=page.limit,
                has_more=page.has_more,
            )

        @self.app.get("/access-logs/export")
        async def export_access_logs(
            tenant_id: str = Header(..., alias="X-Tenant-ID"),
            door_id: Optional[str] = Query(None),
            user_id: Optional[str] = Query(None),
            result: Optional[AccessResult] = Query(None),
            success: Optional[bool] = Query(None),
            action: Optional[AccessAction] = Query(None),
            method: Optional[AccessMethod] = Query(None),
            start_time: Optional[datetime] = Query(None),
            end_time: Optional[datetime] = Query(None),
        ):
            """Export access logs as CSV."""
            filters = AccessLogFilters(
                door_id=door_id, user_id=user_id, result=result, success=success,
                action=action, method=method, start_time=start_time, end_time=end_time,
            )
            content = await self.audit.export_csv(tenant_id, filters)
            filename = f"access-logs-{utcnow().strftime('%Y%m%d%H%M%S')}.csv"
            return Response(
                content=content,
                media_type="text/csv",
                headers={"Content-Disposition": f'attachment; filename="{filename}"'},
            )

        @self.app.get("/access-logs/stats")
        async def access_log_stats(
            tenant_id: str = Header(..., alias="X-Tenant-ID"),
            start_time: Optional[datetime] = Query(None),
            end_time: Optional[datetime] = Query(None),
        ):
            """Aggregate access statistics."""
            return await self.audit.stats(tenant_id, start_time, end_time)

        @self.app.get("/access-logs/suspicious")
        async def suspicious_activity(
            tenant_id: str = Header(..., alias="X-Tenant-ID"),
            window_minutes: int = Query(self.config.suspicious_window_minutes, ge=1),
            threshold: int = Query(self.config.suspicious_threshold, ge=1),
        ):
            """Users and IPs with repeated failed attempts."""
            return await self.detector.detect(tenant_id, window_minutes, threshold)

        @self.app.get("/access-logs/recent-failures")
        async def recent_failures(
            tenant_id: str = Header(..., alias="X-Tenant-ID"),
            limit: int = Query(20, ge=1, le=self.config.query_max_limit),
        ):
            """Most recent non-granted attempts."""
            entries = await self.audit.recent_failures(tenant_id, limit)
            return {"entries": [AccessLogResponse.from_entry(e) for e in entries]}

        @self.app.get("/access-logs/{log_id}", response_model=AccessLogResponse)
        async def get_access_log(log_id: str, tenant_id: str = Header(..., alias="X-Tenant-ID")):
            """Get a single access log entry."""
            return AccessLogResponse.from_entry(await self.audit.get(log_id, tenant_id))

        @self.app.delete("/access-logs")
        async def purge_access_logs(
            tenant_id: str = Header(..., alias="X-Tenant-ID"),
            older_than_days: int = Query(self.config.retention_days, ge=1),
        ):
            """Retention sweep."""
            return await self.audit.purge_older_than(tenant_id, older_than_days)

    async def _check_dependencies(self):
        """Check access service dependencies."""
        try:
            return {"storage": "ok" if await self.backend.health_check() else "error"}
        except Exception:
            return {"storage": "error"}

    async def start(self):
        """Start access service components."""
        await self.backend.start()
        self.logger.info("Access service started", storage_backend=self.config.storage_backend)

    async def stop(self):
        """Stop access service components."""
        await self.backend.stop()
        self.logger.info("Access service stopped")


def _parse_method(value: Optional[str]) -> AccessMethod:
    if not value:
        return AccessMethod.API
    try:
        return AccessMethod(value.upper())
    except ValueError:
        raise ValidationError(f"Unknown access method: {value}", {"method": value})


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _door_action_response(door_id: str, result) -> JSONResponse:
    return JSONResponse(
        status_code=200 if result.success else 403,
        content={
            "success": result.success,
            "message": result.message,
            "door_id": door_id,
            "method": result.log.method.value,
            "log_id": result.log.log_id,
            "timestamp": result.log.timestamp.isoformat(),
        },
    )


def create_app(**kwargs):
    """Create access service application."""
    service = AccessService(**kwargs)
    return service.app


if __name__ == "__main__":
    service = AccessService()
    service.run()
