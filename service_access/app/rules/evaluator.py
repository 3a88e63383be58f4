"""
Door access evaluation engine for the Access Service.
"""

import asyncio
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from shared.errors import CollaboratorError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .models import (
    AccessDecision, AccessibleDoor, AccessRule, DecisionCode, MembershipStatus, Principal, UserRole
)
from .time_window import TimeWindowMatcher


class CollaboratorTimeout(Exception):
    """A collaborator call exceeded its time budget."""

    def __init__(self, collaborator: str, timeout: float):
        self.collaborator = collaborator
        self.timeout = timeout
        super().__init__(f"{collaborator} timed out after {timeout}s")


class AccessEvaluator:
    """Decides whether a principal may open a door.

    Evaluation is a read-only path: it never writes to the audit log. Every
    branch fails closed, and any collaborator error is turned into a deny.
    """

    def __init__(
        self,
        doors,
        users,
        rules,
        memberships,
        time_matcher: Optional[TimeWindowMatcher] = None,
        clock: Callable[[], datetime] = datetime.now,
        timeout_seconds: float = 2.0,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.logger = get_logger("access.evaluator")
        self.doors = doors
        self.users = users
        self.rules = rules
        self.memberships = memberships
        self.time_matcher = time_matcher or TimeWindowMatcher()
        self.clock = clock
        self.timeout_seconds = timeout_seconds
        self.metrics = metrics

    async def _call(self, collaborator: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            raise CollaboratorTimeout(collaborator, self.timeout_seconds)

    async def evaluate_access(
        self,
        door_id: str,
        user_id: str,
        tenant_id: str,
        now: Optional[datetime] = None,
    ) -> AccessDecision:
        """Evaluate access for ``user_id`` at ``door_id`` within ``tenant_id``."""
        start_time = time.time()
        steps: List[str] = []
        now = now or self.clock()

        try:
            decision = await self._evaluate(door_id, user_id, tenant_id, now, steps)
        except Exception as e:
            steps.append(f"Error during evaluation: {e}")
            self.logger.error(
                "Access evaluation error",
                door_id=door_id,
                user_id=user_id,
                tenant_id=tenant_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            if self.metrics:
                self.metrics.record_error("COLLABORATOR_FAILURE")
            decision = AccessDecision(
                granted=False,
                reason="Error evaluating access",
                code=DecisionCode.COLLABORATOR_FAILURE,
                steps=steps,
                error=str(e) or type(e).__name__,
            )

        decision.evaluation_time_ms = (time.time() - start_time) * 1000
        if self.metrics:
            self.metrics.record_access_decision(
                decision.granted, decision.code.value, decision.evaluation_time_ms / 1000
            )

        self.logger.info(
            "Access evaluated",
            door_id=door_id,
            user_id=user_id,
            tenant_id=tenant_id,
            granted=decision.granted,
            code=decision.code.value,
            rule_id=decision.rule_id,
        )
        return decision

    async def _evaluate(
        self,
        door_id: str,
        user_id: str,
        tenant_id: str,
        now: datetime,
        steps: List[str],
    ) -> AccessDecision:
        # Step 1: door
        steps.append("Checking door status")
        door = await self._call("door repository", self.doors.get(door_id, tenant_id))
        if door is None or not door.is_active:
            if door is None:
                steps.append("Door not found in tenant")
            else:
                steps.append(f"Door {door.name} is {door.status.value}")
            return self._deny(
                "Door not found or inactive",
                DecisionCode.NOT_FOUND if door is None else DecisionCode.INACTIVE,
                steps,
            )
        steps.append(f"Door found: {door.name}")

        # Step 2: user
        steps.append("Verifying user account")
        user = await self._call("user repository", self.users.get(user_id, tenant_id))
        if user is None or not user.active:
            steps.append("User not found in tenant" if user is None else "User account is inactive")
            return self._deny(
                "User not found or inactive",
                DecisionCode.NOT_FOUND if user is None else DecisionCode.INACTIVE,
                steps,
            )
        steps.append(f"User verified: {user.display_name or user.user_id} ({user.role.value})")

        # Step 3: admin bypass
        if user.is_admin:
            steps.append("[admin-bypass] Admin/Super Admin - automatic access granted")
            return AccessDecision(
                granted=True,
                reason="Admin automatic access",
                code=DecisionCode.GRANTED,
                steps=steps,
                metadata={"access_type": "admin", "role": user.role.value},
            )

        # Step 4: membership, resolved once
        steps.append("Checking membership status")
        has_membership = bool(await self._call(
            "membership resolver",
            self.memberships.has_active_membership(user_id, tenant_id, now),
        ))
        steps.append(
            "Active membership found" if has_membership
            else "No active membership - explicit access rules still apply"
        )

        # Step 5: rules
        steps.append("Evaluating access rules")
        rules = await self._call("rule store", self.rules.list_active_rules(door_id, tenant_id, now))
        if not rules:
            steps.append("No access rules defined - denying by default")
            return self._deny("No access rules configured for this door", DecisionCode.NO_RULES_CONFIGURED, steps)

        # Step 6: first matching branch of the first matching rule wins
        time_rejections = 0
        for rule in sorted(rules, key=lambda r: r.priority):
            steps.append(f"Evaluating rule: {rule.name} (priority: {rule.priority})")
            outcome = self._evaluate_rule(rule, user, has_membership, now, steps)
            if isinstance(outcome, AccessDecision):
                return outcome
            time_rejections += outcome

        steps.append("No matching access rules found for this user")
        if user.role == UserRole.CUSTOMER and not has_membership:
            return self._deny(
                "No active membership and no user-specific access rule matches",
                DecisionCode.MEMBERSHIP_REQUIRED,
                steps,
            )
        if time_rejections:
            return self._deny(
                "User does not match any access rules at this time",
                DecisionCode.TIME_WINDOW_VIOLATION,
                steps,
            )
        return self._deny("User does not match any access rules", DecisionCode.NO_MATCHING_RULE, steps)

    def _evaluate_rule(
        self,
        rule: AccessRule,
        user: Principal,
        has_membership: bool,
        now: datetime,
        steps: List[str],
    ):
        """Evaluate one rule.

        Branches are tried in order user id, role, membership. The first
        branch whose selector matches settles the rule: it either grants or
        hands over to the next rule. Returns a decision on grant, otherwise
        the number of time-window rejections (0 or 1).
        """
        # a. explicit user list, membership not required
        if user.user_id in rule.allowed_user_ids:
            steps.append("[user-override] User found in explicit user list")
            return self._check_time(
                rule, now, steps,
                "Access granted via explicit user rule (membership not required)",
                {"access_type": "user-specific", "membership_required": False},
            )

        # b. role list, CUSTOMER needs an active membership
        if user.role in rule.allowed_roles:
            steps.append(f"User role ({user.role.value}) matches rule")
            if user.role == UserRole.CUSTOMER and not has_membership:
                steps.append("Role-based rule requires active membership for CUSTOMER role - skipping")
                return 0
            return self._check_time(
                rule, now, steps,
                "Access granted via role-based rule",
                {"access_type": "role-based", "role": user.role.value},
            )

        # c. membership statuses
        if rule.allowed_membership_statuses:
            if not has_membership:
                steps.append("Rule requires membership but user has none - skipping")
                return 0
            if MembershipStatus.ACTIVE not in rule.allowed_membership_statuses:
                steps.append("Active membership status not allowed by rule - skipping")
                return 0
            steps.append("User has active membership matching rule")
            return self._check_time(
                rule, now, steps,
                "Access granted via membership-based rule",
                {"access_type": "membership-based"},
            )

        steps.append("Rule does not apply to this user")
        return 0

    def _check_time(self, rule: AccessRule, now: datetime, steps: List[str], reason: str, metadata: Dict[str, Any]):
        check = self.time_matcher.matches(rule.time_slots, now)
        if not check.allowed:
            steps.append(f"Time restriction failed: {check.reason}")
            return 1
        steps.append(f"Time restrictions passed - ACCESS GRANTED ({metadata['access_type']})")
        return self._grant(rule, reason, steps, metadata)

    def _grant(self, rule: AccessRule, reason: str, steps: List[str], metadata: Dict[str, Any]) -> AccessDecision:
        return AccessDecision(
            granted=True,
            reason=reason,
            code=DecisionCode.GRANTED,
            steps=steps,
            rule_id=rule.rule_id,
            metadata={"rule_name": rule.name, **metadata},
        )

    def _deny(self, reason: str, code: DecisionCode, steps: List[str]) -> AccessDecision:
        return AccessDecision(granted=False, reason=reason, code=code, steps=steps)

    async def can_access(self, door_id: str, user_id: str, tenant_id: str) -> bool:
        """Quick boolean check."""
        decision = await self.evaluate_access(door_id, user_id, tenant_id)
        return decision.granted

    async def accessible_doors(self, user_id: str, tenant_id: str) -> List[AccessibleDoor]:
        """Active doors of the tenant that the user can open right now."""
        try:
            doors = await self._call("door repository", self.doors.list_for_tenant(tenant_id))
        except CollaboratorTimeout as e:
            raise CollaboratorError(e.collaborator, f"timed out after {e.timeout}s")
        except Exception as e:
            self.logger.error("Listing doors failed", tenant_id=tenant_id, error=str(e))
            raise CollaboratorError("door repository", str(e))
        now = self.clock()
        result = []
        for door in doors:
            if not door.is_active:
                continue
            decision = await self.evaluate_access(door.door_id, user_id, tenant_id, now=now)
            if decision.granted:
                result.append(AccessibleDoor(
                    door_id=door.door_id,
                    name=door.name,
                    location=door.location,
                    rule_id=decision.rule_id,
                    reason=decision.reason,
                ))
        return result
