"""
Unit tests for door unlock/lock orchestration.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock
from datetime import datetime

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import CollaboratorError, DoorUnavailableError, NotFoundError
from service_access.app.audit.logger import AuditLogger
from service_access.app.audit.models import AccessAction, AccessMethod, AccessResult
from service_access.app.doors.service import (
    DoorAccessService, DoorActionRequest, ProximityData, check_proximity,
)
from service_access.app.persistence.memory import InMemoryBackend
from service_access.app.rules.evaluator import AccessEvaluator
from service_access.app.rules.models import AccessRule, Door, DoorStatus, Principal, UserRole


TENANT = "tenant-1"
BLUETOOTH = {"bluetooth": {"enabled": True, "beacon_id": "beacon-1", "minimum_rssi": -60}}


class TestCheckProximity:
    """Test cases for check_proximity."""

    @pytest.fixture
    def door(self):
        """Bluetooth enabled door."""
        return Door(door_id="door-1", tenant_id=TENANT, name="Main", metadata=BLUETOOTH)

    def test_no_reading(self, door):
        """Test no check applies without a reading."""
        assert check_proximity(door, None) is None

    def test_bluetooth_disabled(self):
        """Test no check applies when the door has no beacon."""
        door = Door(door_id="door-1", tenant_id=TENANT, name="Main")
        assert check_proximity(door, ProximityData(beacon_id="x", rssi=-40)) is None

    def test_in_range(self, door):
        """Test matching beacon with strong signal."""
        check = check_proximity(door, ProximityData(beacon_id="beacon-1", rssi=-55))
        assert check.valid is True
        assert check.method == AccessMethod.BLUETOOTH

    def test_weak_signal(self, door):
        """Test signal below the door minimum."""
        check = check_proximity(door, ProximityData(beacon_id="beacon-1", rssi=-65))
        assert check.valid is False
        assert check.required_rssi == -60

    def test_wrong_beacon(self, door):
        """Test another beacon id."""
        assert check_proximity(door, ProximityData(beacon_id="beacon-2", rssi=-40)).valid is False

    def test_default_minimum_rssi(self):
        """Test the default threshold applies when the door sets none."""
        door = Door(door_id="door-1", tenant_id=TENANT, name="Main",
                    metadata={"bluetooth": {"enabled": True, "beacon_id": "beacon-1"}})
        assert check_proximity(door, ProximityData(beacon_id="beacon-1", rssi=-70)).valid is True
        assert check_proximity(door, ProximityData(beacon_id="beacon-1", rssi=-71)).valid is False

    def test_test_mode(self, door):
        """Test a matching test beacon passes in test mode."""
        check = check_proximity(door, ProximityData(test_beacon_id="beacon-1"), test_mode=True)
        assert check.valid is True
        assert check.method == AccessMethod.BLUETOOTH_TEST

    def test_test_beacon_ignored_outside_test_mode(self, door):
        """Test the test beacon id is ignored when test mode is off."""
        check = check_proximity(door, ProximityData(test_beacon_id="beacon-1"), test_mode=False)
        assert check.valid is False


class TestDoorAccessService:
    """Test cases for DoorAccessService."""

    @pytest.fixture
    def backend(self):
        """Backend with doors, users and a role rule."""
        backend = InMemoryBackend()
        backend.doors.add(Door(door_id="door-1", tenant_id=TENANT, name="Main"))
        backend.doors.add(Door(door_id="door-bt", tenant_id=TENANT, name="Gym", metadata=BLUETOOTH))
        backend.doors.add(Door(door_id="door-off", tenant_id=TENANT, name="Back", status=DoorStatus.MAINTENANCE))
        backend.users.add(Principal(user_id="staff", tenant_id=TENANT, role=UserRole.EMPLOYEE))
        backend.users.add(Principal(user_id="guest", tenant_id=TENANT, role=UserRole.TRAINER))
        for door_id in ("door-1", "door-bt"):
            backend.rules.add(AccessRule(
                rule_id=f"rule-{door_id}", door_id=door_id, tenant_id=TENANT,
                name="Staff", allowed_roles=[UserRole.EMPLOYEE],
            ))
        return backend

    @pytest.fixture
    def hardware(self):
        """Mock hardware controller."""
        hardware = MagicMock()
        hardware.unlock = AsyncMock(return_value=True)
        hardware.lock = AsyncMock(return_value=True)
        return hardware

    @pytest.fixture
    def service(self, backend, hardware):
        """Create DoorAccessService."""
        evaluator = AccessEvaluator(
            backend.doors, backend.users, backend.rules, backend.memberships,
            clock=lambda: datetime(2024, 1, 1, 9, 0),
        )
        return DoorAccessService(backend.doors, evaluator, AuditLogger(backend.logs), hardware=hardware)

    @pytest.mark.asyncio
    async def test_unlock_granted(self, backend, service, hardware):
        """Test unlock drives hardware, updates the door and logs one entry."""
        result = await service.unlock("door-1", TENANT, DoorActionRequest(user_id="staff"), "10.0.0.1")

        assert result.success is True
        assert result.message == "Door unlocked successfully"
        hardware.unlock.assert_awaited_once()
        assert (await backend.doors.get("door-1", TENANT)).is_locked is False
        assert len(backend.logs._entries) == 1
        log = backend.logs._entries[0]
        assert log.result == AccessResult.GRANTED
        assert log.action == AccessAction.UNLOCK
        assert log.rule_id == "rule-door-1"
        assert log.ip_address == "10.0.0.1"

    @pytest.mark.asyncio
    async def test_lock_granted(self, backend, service, hardware):
        """Test lock sets the locked flag."""
        await backend.doors.set_locked("door-1", TENANT, False)

        result = await service.lock("door-1", TENANT, DoorActionRequest(user_id="staff"))

        assert result.success is True
        hardware.lock.assert_awaited_once()
        assert (await backend.doors.get("door-1", TENANT)).is_locked is True

    @pytest.mark.asyncio
    async def test_unlock_denied(self, backend, service, hardware):
        """Test a denied user never reaches hardware."""
        result = await service.unlock("door-1", TENANT, DoorActionRequest(user_id="guest"))

        assert result.success is False
        assert result.message == "User does not match any access rules"
        hardware.unlock.assert_not_awaited()
        log = backend.logs._entries[0]
        assert log.result == AccessResult.DENIED
        assert log.metadata["evaluation_steps"]

    @pytest.mark.asyncio
    async def test_unknown_door(self, service):
        """Test unknown doors raise NotFoundError."""
        with pytest.raises(NotFoundError):
            await service.unlock("missing", TENANT, DoorActionRequest(user_id="staff"))

    @pytest.mark.asyncio
    async def test_unavailable_door(self, backend, service):
        """Test doors in maintenance are refused and audited."""
        with pytest.raises(DoorUnavailableError):
            await service.unlock("door-off", TENANT, DoorActionRequest(user_id="staff"))

        assert backend.logs._entries[0].result == AccessResult.DENIED

    @pytest.mark.asyncio
    async def test_hardware_offline(self, backend, service, hardware):
        """Test a failed hardware command is logged as ERROR."""
        hardware.unlock.return_value = False

        result = await service.unlock("door-1", TENANT, DoorActionRequest(user_id="staff"))

        assert result.success is False
        assert "offline" in result.message
        assert backend.logs._entries[0].result == AccessResult.ERROR
        assert (await backend.doors.get("door-1", TENANT)).is_locked is True

    @pytest.mark.asyncio
    async def test_hardware_exception(self, backend, service, hardware):
        """Test hardware exceptions are contained and logged."""
        hardware.unlock.side_effect = RuntimeError("relay stuck")

        result = await service.unlock("door-1", TENANT, DoorActionRequest(user_id="staff"))

        assert result.success is False
        log = backend.logs._entries[0]
        assert log.result == AccessResult.ERROR
        assert log.metadata["hardware_error"] == "relay stuck"

    @pytest.mark.asyncio
    async def test_out_of_range(self, backend, service, hardware):
        """Test a weak beacon reading denies before evaluation."""
        request = DoorActionRequest(user_id="staff", proximity=ProximityData(beacon_id="beacon-1", rssi=-90))

        result = await service.unlock("door-bt", TENANT, request)

        assert result.success is False
        assert result.message == "You must be near the door to open it"
        hardware.unlock.assert_not_awaited()
        log = backend.logs._entries[0]
        assert log.reason == "Not within range of door (Bluetooth)"
        assert log.method == AccessMethod.BLUETOOTH
        assert "evaluation_steps" not in log.metadata

    @pytest.mark.asyncio
    async def test_in_range(self, backend, service):
        """Test a valid beacon reading is recorded as Bluetooth access."""
        request = DoorActionRequest(user_id="staff", proximity=ProximityData(beacon_id="beacon-1", rssi=-50))

        result = await service.unlock("door-bt", TENANT, request)

        assert result.success is True
        assert result.log.method == AccessMethod.BLUETOOTH
        assert result.log.metadata["proximity_valid"] is True

    @pytest.mark.asyncio
    async def test_test_mode_requires_opt_in(self, backend, service):
        """Test test beacons are refused unless the service allows test mode."""
        request = DoorActionRequest(
            user_id="staff", test_mode=True, proximity=ProximityData(test_beacon_id="beacon-1"),
        )

        result = await service.unlock("door-bt", TENANT, request)

        assert result.success is False

    @pytest.mark.asyncio
    async def test_test_mode_allowed(self, backend, hardware):
        """Test test beacons pass when the service allows test mode."""
        evaluator = AccessEvaluator(backend.doors, backend.users, backend.rules, backend.memberships)
        service = DoorAccessService(
            backend.doors, evaluator, AuditLogger(backend.logs), hardware=hardware, allow_test_mode=True,
        )
        request = DoorActionRequest(
            user_id="staff", test_mode=True, proximity=ProximityData(test_beacon_id="beacon-1"),
        )

        result = await service.unlock("door-bt", TENANT, request)

        assert result.success is True
        assert result.log.method == AccessMethod.BLUETOOTH_TEST

    @pytest.mark.asyncio
    async def test_state_update_failure_is_audited(self, backend, service, hardware):
        """Test a failed door state write after a successful unlock still leaves one entry."""
        backend.doors.set_locked = AsyncMock(side_effect=RuntimeError("connection reset"))

        with pytest.raises(CollaboratorError) as exc_info:
            await service.unlock("door-1", TENANT, DoorActionRequest(user_id="staff"))

        assert exc_info.value.status_code == 503
        hardware.unlock.assert_awaited_once()
        assert len(backend.logs._entries) == 1
        log = backend.logs._entries[0]
        assert log.result == AccessResult.ERROR
        assert log.reason == "Door state update failed"
        assert "connection reset" in log.metadata["state_update_error"]
        assert log.rule_id == "rule-door-1"

    @pytest.mark.asyncio
    async def test_door_lookup_timeout(self, backend, hardware):
        """Test a hanging door lookup raises CollaboratorError without touching hardware."""
        async def hang(*args, **kwargs):
            await asyncio.sleep(1)

        evaluator = AccessEvaluator(backend.doors, backend.users, backend.rules, backend.memberships)
        service = DoorAccessService(
            backend.doors, evaluator, AuditLogger(backend.logs), hardware=hardware, timeout_seconds=0.01,
        )
        backend.doors.get = hang

        with pytest.raises(CollaboratorError) as exc_info:
            await service.unlock("door-1", TENANT, DoorActionRequest(user_id="staff"))

        assert "timed out" in exc_info.value.message
        hardware.unlock.assert_not_awaited()
        assert backend.logs._entries == []

    @pytest.mark.asyncio
    async def test_state_update_timeout(self, backend, hardware):
        """Test a hanging door state write during lock is audited as ERROR."""
        async def hang(*args, **kwargs):
            await asyncio.sleep(1)

        evaluator = AccessEvaluator(
            backend.doors, backend.users, backend.rules, backend.memberships,
            clock=lambda: datetime(2024, 1, 1, 9, 0),
        )
        service = DoorAccessService(
            backend.doors, evaluator, AuditLogger(backend.logs), hardware=hardware, timeout_seconds=0.05,
        )
        backend.doors.set_locked = hang

        with pytest.raises(CollaboratorError):
            await service.lock("door-1", TENANT, DoorActionRequest(user_id="staff"))

        hardware.lock.assert_awaited_once()
        assert len(backend.logs._entries) == 1
        log = backend.logs._entries[0]
        assert log.action == AccessAction.LOCK
        assert log.result == AccessResult.ERROR
        assert "timed out" in log.metadata["state_update_error"]
