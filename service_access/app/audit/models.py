"""
Access log data models for the Access Service.
"""

import uuid
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from ..rules.models import AccessDecision


class AccessResult(str, Enum):
    """Outcome recorded for an access attempt."""
    GRANTED = "GRANTED"
    DENIED = "DENIED"
    ERROR = "ERROR"


class AccessMethod(str, Enum):
    """How access was attempted."""
    CARD = "CARD"
    PIN = "PIN"
    MOBILE = "MOBILE"
    MANUAL = "MANUAL"
    API = "API"
    BLUETOOTH = "BLUETOOTH"
    BLUETOOTH_TEST = "BLUETOOTH_TEST"


class AccessAction(str, Enum):
    """Operation that produced a log entry."""
    ACCESS_CHECK = "ACCESS_CHECK"
    UNLOCK = "UNLOCK"
    LOCK = "LOCK"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AccessLogEntry:
    """Immutable record of one access decision or hardware action."""
    tenant_id: str
    door_id: str
    result: AccessResult
    action: AccessAction = AccessAction.ACCESS_CHECK
    method: AccessMethod = AccessMethod.MANUAL
    user_id: Optional[str] = None
    reason: Optional[str] = None
    ip_address: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    log_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def success(self) -> bool:
        return self.result == AccessResult.GRANTED

    @property
    def rule_id(self) -> Optional[str]:
        return self.metadata.get("rule_id")

    @classmethod
    def from_decision(
        cls,
        decision: AccessDecision,
        tenant_id: str,
        door_id: str,
        user_id: Optional[str],
        action: AccessAction = AccessAction.ACCESS_CHECK,
        method: AccessMethod = AccessMethod.API,
        ip_address: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> "AccessLogEntry":
        """Build the audit record for an evaluator verdict, trace included."""
        metadata: Dict[str, Any] = {
            "rule_id": decision.rule_id,
            "code": decision.code.value,
            "evaluation_steps": list(decision.steps),
            **decision.metadata,
        }
        if decision.error:
            metadata["error"] = decision.error
        if extra:
            metadata.update(extra)

        if decision.granted:
            result = AccessResult.GRANTED
        elif decision.error:
            result = AccessResult.ERROR
        else:
            result = AccessResult.DENIED

        return cls(
            tenant_id=tenant_id,
            door_id=door_id,
            user_id=user_id,
            action=action,
            method=method,
            result=result,
            reason=None if decision.granted else decision.reason,
            ip_address=ip_address,
            metadata=metadata,
        )


@dataclass(frozen=True)
class AccessLogFilters:
    """Filters shared by query, export, stats and the activity detector."""
    door_id: Optional[str] = None
    user_id: Optional[str] = None
    result: Optional[AccessResult] = None
    success: Optional[bool] = None
    action: Optional[AccessAction] = None
    method: Optional[AccessMethod] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def matches(self, entry: AccessLogEntry) -> bool:
        if self.door_id is not None and entry.door_id != self.door_id:
            return False
        if self.user_id is not None and entry.user_id != self.user_id:
            return False
        if self.result is not None and entry.result != self.result:
            return False
        if self.success is not None and entry.success != self.success:
            return False
        if self.action is not None and entry.action != self.action:
            return False
        if self.method is not None and entry.method != self.method:
            return False
        if self.start_time is not None and entry.timestamp < self.start_time:
            return False
        if self.end_time is not None and entry.timestamp > self.end_time:
            return False
        return True


@dataclass(frozen=True)
class Pagination:
    offset: int = 0
    limit: int = 50


@dataclass
class AccessLogPage:
    entries: List[AccessLogEntry]
    total: int
    offset: int
    limit: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.entries) < self.total


@dataclass
class AccessLogStats:
    """Aggregate counts over a tenant's access log."""
    total_attempts: int
    success_count: int
    failure_count: int
    success_rate: float
    unique_user_count: int
    by_result: Dict[str, int] = field(default_factory=dict)
    by_method: Dict[str, int] = field(default_factory=dict)
    top_doors: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class SuspiciousActivityReport:
    suspicious_users: List[Dict[str, Any]]
    suspicious_ips: List[Dict[str, Any]]
    window_minutes: int
    threshold: int


class AccessLogCreateRequest(BaseModel):
    """Request model for recording an access log entry."""
    door_id: str = Field(..., description="Door ID")
    user_id: Optional[str] = Field(None, description="User ID, absent for system events")
    action: AccessAction = Field(AccessAction.ACCESS_CHECK, description="Operation performed")
    method: AccessMethod = Field(AccessMethod.MANUAL, description="How access was attempted")
    result: AccessResult = Field(..., description="Outcome")
    reason: Optional[str] = Field(None, description="Denial reason")
    ip_address: Optional[str] = Field(None, description="Client IP")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Structured context")


class AccessLogResponse(BaseModel):
    """Response model for a single access log entry."""
    log_id: str
    door_id: str
    user_id: Optional[str]
    action: AccessAction
    method: AccessMethod
    result: AccessResult
    success: bool
    reason: Optional[str]
    ip_address: Optional[str]
    metadata: Dict[str, Any]
    timestamp: datetime

    @classmethod
    def from_entry(cls, entry: AccessLogEntry) -> "AccessLogResponse":
        return cls(
            log_id=entry.log_id,
            door_id=entry.door_id,
            user_id=entry.user_id,
            action=entry.action,
            method=entry.method,
            result=entry.result,
            success=entry.success,
            reason=entry.reason,
            ip_address=entry.ip_address,
            metadata=entry.metadata,
            timestamp=entry.timestamp,
        )


class AccessLogListResponse(BaseModel):
    """Response model for an access log query."""
    entries: List[AccessLogResponse]
    total: int
    offset: int
    limit: int
    has_more: bool
