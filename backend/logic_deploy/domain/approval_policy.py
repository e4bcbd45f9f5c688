from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Mapping

from logic_deploy.core.config import Settings


class ApprovalMode(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"
    MAJORITY = "majority"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


ANY_ROLE = "any"


@dataclass(frozen=True)
class ApprovalPolicy:
    required_roles: tuple[str, ...] = ("engineer", "safety_officer")
    min_count: int = 2
    mode: ApprovalMode = ApprovalMode.PARALLEL
    two_person_rule: bool = True
    timeout_seconds: int = 86400
    escalation_role: str | None = "safety_officer"
    escalation_count: int = 1
    bypass_enabled: bool = False
    bypass_roles: tuple[str, ...] = ("plant_manager",)

    @classmethod
    def from_settings(cls, settings: Settings, overrides: Mapping[str, Any] | None = None) -> "ApprovalPolicy":
        policy = cls(
            required_roles=tuple(settings.approval_required_roles),
            min_count=max(1, settings.approval_min_count),
            mode=ApprovalMode(settings.approval_mode),
            two_person_rule=settings.approval_two_person_rule,
            timeout_seconds=max(60, settings.approval_timeout_seconds),
            escalation_role=settings.approval_warning_escalation_role or None,
            escalation_count=max(0, settings.approval_warning_escalation_count),
            bypass_enabled=settings.emergency_bypass_enabled,
            bypass_roles=tuple(settings.emergency_bypass_roles),
        )
        return policy.with_overrides(overrides)

    def with_overrides(self, overrides: Mapping[str, Any] | None) -> "ApprovalPolicy":
        """Release metadata may tighten or relax the policy per release (``approval_policy`` key)."""
        if not overrides:
            return self
        changes: dict[str, Any] = {}
        if overrides.get("required_roles"):
            changes["required_roles"] = tuple(str(item) for item in overrides["required_roles"])
        if overrides.get("min_count") is not None:
            changes["min_count"] = max(1, int(overrides["min_count"]))
        if overrides.get("mode"):
            changes["mode"] = ApprovalMode(str(overrides["mode"]))
        if overrides.get("two_person_rule") is not None:
            changes["two_person_rule"] = bool(overrides["two_person_rule"])
        if overrides.get("timeout_seconds") is not None:
            changes["timeout_seconds"] = max(60, int(overrides["timeout_seconds"]))
        return replace(self, **changes)

    def required_slots(self, warning_count: int = 0) -> list[str]:
        """Roles of the approval slots for one round, in slot order."""
        roles = list(self.required_roles) or [ANY_ROLE]
        count = max(self.min_count, len(roles))
        slots = [roles[index % len(roles)] for index in range(count)]
        if warning_count > 0 and self.escalation_role and self.escalation_count > 0:
            slots.extend([self.escalation_role] * self.escalation_count)
        return slots

    def role_allowed(self, slot_role: str, approver_role: str | None) -> bool:
        if slot_role == ANY_ROLE:
            return True
        return approver_role is not None and approver_role == slot_role

    def bypass_allowed(self, role: str | None) -> bool:
        return self.bypass_enabled and role is not None and role in self.bypass_roles


def quorum_met(mode: ApprovalMode | str, statuses: list[str]) -> bool:
    if not statuses:
        return False
    if ApprovalStatus.REJECTED.value in statuses:
        return False
    approved = sum(1 for item in statuses if item == ApprovalStatus.APPROVED.value)
    if ApprovalMode(mode) == ApprovalMode.MAJORITY:
        return approved * 2 > len(statuses)
    return approved == len(statuses)


def round_outcome(mode: ApprovalMode | str, statuses: list[str]) -> str:
    if not statuses:
        return "none"
    if ApprovalStatus.REJECTED.value in statuses:
        return ApprovalStatus.REJECTED.value
    if quorum_met(mode, statuses):
        return ApprovalStatus.APPROVED.value
    if ApprovalStatus.EXPIRED.value in statuses:
        return ApprovalStatus.EXPIRED.value
    return ApprovalStatus.PENDING.value
