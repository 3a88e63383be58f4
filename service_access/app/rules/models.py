"""
Door, principal and access-rule data models for the Access Service.
"""

import re
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class DoorStatus(str, Enum):
    """Door lifecycle status."""
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    MAINTENANCE = "MAINTENANCE"
    ERROR = "ERROR"


class UserRole(str, Enum):
    """Principal roles."""
    CUSTOMER = "CUSTOMER"
    TRAINER = "TRAINER"
    EMPLOYEE = "EMPLOYEE"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


ADMIN_ROLES = frozenset({UserRole.ADMIN, UserRole.SUPER_ADMIN})


class MembershipStatus(str, Enum):
    """Membership status values."""
    ACTIVE = "ACTIVE"
    PENDING = "PENDING"
    FROZEN = "FROZEN"
    SUSPENDED = "SUSPENDED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class DecisionCode(str, Enum):
    """Outcome classification of an access evaluation."""
    GRANTED = "GRANTED"
    NOT_FOUND = "NOT_FOUND"
    INACTIVE = "INACTIVE"
    NO_RULES_CONFIGURED = "NO_RULES_CONFIGURED"
    NO_MATCHING_RULE = "NO_MATCHING_RULE"
    MEMBERSHIP_REQUIRED = "MEMBERSHIP_REQUIRED"
    TIME_WINDOW_VIOLATION = "TIME_WINDOW_VIOLATION"
    COLLABORATOR_FAILURE = "COLLABORATOR_FAILURE"


class TimeSlot(BaseModel):
    """Recurring weekly window: day 0 (Sunday) to 6 (Saturday), HH:MM bounds inclusive."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    day_of_week: int = Field(..., ge=0, le=6, validation_alias=AliasChoices("day_of_week", "dayOfWeek"))
    start_time: str = Field(..., validation_alias=AliasChoices("start_time", "startTime"))
    end_time: str = Field(..., validation_alias=AliasChoices("end_time", "endTime"))

    @field_validator("start_time", "end_time")
    @classmethod
    def _check_hhmm(cls, value: str) -> str:
        if not _HHMM.match(value):
            raise ValueError(f"expected zero-padded HH:MM, got {value!r}")
        return value

    @model_validator(mode="after")
    def _check_order(self) -> "TimeSlot":
        # Slots never wrap past midnight; split them into two slots instead.
        if self.start_time > self.end_time:
            raise ValueError(
                f"start_time {self.start_time} is after end_time {self.end_time}"
            )
        return self


@dataclass
class Door:
    """Physical door owned by a tenant."""
    door_id: str
    tenant_id: str
    name: str
    location: Optional[str] = None
    status: DoorStatus = DoorStatus.ACTIVE
    is_online: bool = True
    is_locked: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == DoorStatus.ACTIVE

    @property
    def is_available(self) -> bool:
        """Whether the door can be driven by lock/unlock commands."""
        return self.status not in (DoorStatus.MAINTENANCE, DoorStatus.ERROR)


@dataclass
class Principal:
    """User whose access is being evaluated."""
    user_id: str
    tenant_id: str
    role: UserRole
    active: bool = True
    display_name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


@dataclass
class Membership:
    """Membership held by a user."""
    membership_id: str
    user_id: str
    tenant_id: str
    status: MembershipStatus
    end_date: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return self.status == MembershipStatus.ACTIVE and (
            self.end_date is None or self.end_date >= now
        )


@dataclass
class AccessRule:
    """Door access rule.

    Selectors are independent match branches evaluated in a fixed order:
    explicit user ids, then roles, then membership statuses.
    """
    rule_id: str
    door_id: str
    tenant_id: str
    name: str
    priority: int = 0
    active: bool = True
    description: Optional[str] = None
    allowed_user_ids: List[str] = field(default_factory=list)
    allowed_roles: List[UserRole] = field(default_factory=list)
    allowed_membership_statuses: List[MembershipStatus] = field(default_factory=list)
    time_slots: List[TimeSlot] = field(default_factory=list)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.now)

    def is_valid_at(self, now: datetime) -> bool:
        """Check the validity window; an open bound is always satisfied."""
        if self.valid_from is not None and self.valid_from > now:
            return False
        if self.valid_until is not None and self.valid_until < now:
            return False
        return True


@dataclass
class AccessDecision:
    """Verdict of an access evaluation together with its trace."""
    granted: bool
    reason: str
    code: DecisionCode
    steps: List[str] = field(default_factory=list)
    rule_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    evaluation_time_ms: float = 0.0


class AccessCheckRequest(BaseModel):
    """Request model for an access check."""
    user_id: str = Field(..., description="User being evaluated")
    method: Optional[str] = Field(None, description="How access was attempted")


class AccessCheckResponse(BaseModel):
    """Caller-facing verdict. The evaluation trace is kept for the audit log only."""
    granted: bool
    reason: str
    code: DecisionCode
    rule_id: Optional[str] = None
    log_id: Optional[str] = None
    timestamp: datetime


class AccessibleDoor(BaseModel):
    """Door a user can currently open, with the rule that grants it."""
    door_id: str
    name: str
    location: Optional[str] = None
    rule_id: Optional[str] = None
    reason: str
