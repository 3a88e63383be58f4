"""
Unlock and lock orchestration for doors.

The evaluator verdict is the precondition for every hardware command, and
each attempt leaves exactly one audit entry.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Optional, Protocol

from pydantic import BaseModel, Field

from shared.errors import CollaboratorError, DoorUnavailableError, NotFoundError
from shared.logging import get_logger
from ..audit.logger import AuditLogger
from ..audit.models import AccessAction, AccessLogEntry, AccessMethod, AccessResult
from ..rules.evaluator import AccessEvaluator
from ..rules.models import Door


class HardwareController(Protocol):
    async def unlock(self, door: Door) -> bool: ...

    async def lock(self, door: Door) -> bool: ...


class SimulatedHardwareController:
    """Stand-in controller for deployments without door hardware; succeeds when the door is online."""

    def __init__(self):
        self.logger = get_logger("access.hardware")

    async def unlock(self, door: Door) -> bool:
        self.logger.info("Unlock command", door_id=door.door_id, online=door.is_online)
        return door.is_online

    async def lock(self, door: Door) -> bool:
        self.logger.info("Lock command", door_id=door.door_id, online=door.is_online)
        return door.is_online


class ProximityData(BaseModel):
    """Pre-parsed Bluetooth beacon reading supplied by the client."""
    beacon_id: Optional[str] = Field(None, description="Beacon identifier seen by the device")
    rssi: Optional[int] = Field(None, description="Received signal strength in dBm")
    test_beacon_id: Optional[str] = Field(None, description="Beacon id used in test mode")


@dataclass
class ProximityCheck:
    valid: bool
    method: AccessMethod
    required_beacon: Optional[str] = None
    required_rssi: Optional[int] = None


def check_proximity(
    door: Door,
    proximity: Optional[ProximityData],
    test_mode: bool = False,
    default_minimum_rssi: int = -70,
) -> Optional[ProximityCheck]:
    """Validate a beacon reading against the door's bluetooth settings.

    Returns None when no check applies (no reading, or bluetooth disabled).
    """
    bluetooth = (door.metadata or {}).get("bluetooth") or {}
    if proximity is None or not bluetooth.get("enabled"):
        return None

    beacon_id = bluetooth.get("beacon_id")
    minimum_rssi = bluetooth.get("minimum_rssi", default_minimum_rssi)

    if test_mode and proximity.test_beacon_id is not None and proximity.test_beacon_id == beacon_id:
        return ProximityCheck(True, AccessMethod.BLUETOOTH_TEST, beacon_id, minimum_rssi)

    valid = (
        beacon_id is not None
        and proximity.beacon_id == beacon_id
        and proximity.rssi is not None
        and proximity.rssi >= minimum_rssi
    )
    return ProximityCheck(valid, AccessMethod.BLUETOOTH, beacon_id, minimum_rssi)


@dataclass
class DoorActionResult:
    success: bool
    message: str
    log: AccessLogEntry


class DoorActionRequest(BaseModel):
    """Request model for unlock/lock."""
    user_id: str = Field(..., description="User requesting the action")
    method: AccessMethod = Field(AccessMethod.MANUAL, description="How access was attempted")
    proximity: Optional[ProximityData] = Field(None, description="Bluetooth reading")
    test_mode: bool = Field(False, description="Accept test beacon ids")


class DoorAccessService:
    """Runs unlock/lock requests through evaluation, hardware and audit."""

    def __init__(
        self,
        doors,
        evaluator: AccessEvaluator,
        audit: AuditLogger,
        hardware: Optional[HardwareController] = None,
        allow_test_mode: bool = False,
        default_minimum_rssi: int = -70,
        timeout_seconds: float = 2.0,
    ):
        self.logger = get_logger("access.doors")
        self.doors = doors
        self.evaluator = evaluator
        self.audit = audit
        self.hardware = hardware or SimulatedHardwareController()
        self.allow_test_mode = allow_test_mode
        self.default_minimum_rssi = default_minimum_rssi
        self.timeout_seconds = timeout_seconds

    async def unlock(self, door_id: str, tenant_id: str, request: DoorActionRequest,
                     ip_address: Optional[str] = None) -> DoorActionResult:
        return await self._perform(AccessAction.UNLOCK, door_id, tenant_id, request, ip_address)

    async def lock(self, door_id: str, tenant_id: str, request: DoorActionRequest,
                   ip_address: Optional[str] = None) -> DoorActionResult:
        return await self._perform(AccessAction.LOCK, door_id, tenant_id, request, ip_address)

    async def _perform(self, action: AccessAction, door_id: str, tenant_id: str,
                       request: DoorActionRequest, ip_address: Optional[str]) -> DoorActionResult:
        door = await self._call("door repository", self.doors.get(door_id, tenant_id))
        if door is None:
            raise NotFoundError("Door", door_id)

        method = request.method
        metadata: Dict[str, Any] = {"proximity_used": request.proximity is not None}

        if not door.is_available:
            await self._log(door, request.user_id, action, method, AccessResult.DENIED,
                            "Door is not available", ip_address, {**metadata, "door_status": door.status.value})
            raise DoorUnavailableError(details={"door_id": door_id, "status": door.status.value})

        test_mode = request.test_mode and self.allow_test_mode
        proximity = check_proximity(door, request.proximity, test_mode, self.default_minimum_rssi)
        if proximity is not None:
            method = proximity.method
            metadata.update({
                "proximity_valid": proximity.valid,
                "proximity_data": request.proximity.model_dump(),
                "required_beacon": proximity.required_beacon,
                "required_rssi": proximity.required_rssi,
                "test_mode": test_mode,
            })
            if not proximity.valid:
                log = await self._log(door, request.user_id, action, method, AccessResult.DENIED,
                                      "Not within range of door (Bluetooth)", ip_address, metadata)
                return DoorActionResult(False, "You must be near the door to open it", log)

        decision = await self.evaluator.evaluate_access(door_id, request.user_id, tenant_id)
        if not decision.granted:
            log = await self.audit.record(AccessLogEntry.from_decision(
                decision, tenant_id, door_id, request.user_id,
                action=action, method=method, ip_address=ip_address, extra=metadata,
            ))
            return DoorActionResult(False, decision.reason, log)

        metadata.update({
            "rule_id": decision.rule_id,
            "access_type": decision.metadata.get("access_type"),
            "evaluation_steps": list(decision.steps),
        })
        command = self.hardware.unlock if action == AccessAction.UNLOCK else self.hardware.lock
        try:
            success = await command(door)
        except Exception as e:
            self.logger.error("Hardware command failed", door_id=door_id, action=action.value, error=str(e))
            success = False
            metadata["hardware_error"] = str(e)

        if not success:
            log = await self._log(door, request.user_id, action, method, AccessResult.ERROR,
                                  "Door offline", ip_address, metadata)
            return DoorActionResult(False, f"Failed to {action.value.lower()} door - door is offline", log)

        try:
            await self._call(
                "door repository", self.doors.set_locked(door_id, tenant_id, action == AccessAction.LOCK)
            )
        except CollaboratorError as e:
            metadata["state_update_error"] = e.message
            await self._log(door, request.user_id, action, method, AccessResult.ERROR,
                            "Door state update failed", ip_address, metadata)
            raise

        log = await self._log(door, request.user_id, action, method, AccessResult.GRANTED,
                              None, ip_address, metadata)
        verb = "unlocked" if action == AccessAction.UNLOCK else "locked"
        return DoorActionResult(True, f"Door {verb} successfully", log)

    async def _call(self, collaborator: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            self.logger.error("Collaborator timed out", collaborator=collaborator, timeout=self.timeout_seconds)
            raise CollaboratorError(collaborator, f"timed out after {self.timeout_seconds}s")
        except Exception as e:
            self.logger.error("Collaborator call failed", collaborator=collaborator, error=str(e))
            raise CollaboratorError(collaborator, str(e))

    async def _log(self, door: Door, user_id: Optional[str], action: AccessAction, method: AccessMethod,
                   result: AccessResult, reason: Optional[str], ip_address: Optional[str],
                   metadata: Dict[str, Any]) -> AccessLogEntry:
        return await self.audit.record(AccessLogEntry(
            tenant_id=door.tenant_id,
            door_id=door.door_id,
            user_id=user_id,
            action=action,
            method=method,
            result=result,
            reason=reason,
            ip_address=ip_address,
            metadata=metadata,
        ))
