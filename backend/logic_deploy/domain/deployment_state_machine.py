from __future__ import annotations

from enum import Enum


class DeploymentState(str, Enum):
    QUEUED = "queued"
    STAGING = "staging"
    READY = "ready"
    DEPLOYING = "deploying"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FailureReasonCode(str, Enum):
    CHECKPOINT_FAILED = "CHECKPOINT_FAILED"
    RUNTIME_ERROR = "RUNTIME_ERROR"
    RUNTIME_STATE_UNKNOWN = "RUNTIME_STATE_UNKNOWN"
    HEALTH_THRESHOLD_BREACHED = "HEALTH_THRESHOLD_BREACHED"
    VALIDATION_REJECTED = "VALIDATION_REJECTED"
    MAINTENANCE_WINDOW_MISSED = "MAINTENANCE_WINDOW_MISSED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class DeploymentStrategy(str, Enum):
    ATOMIC = "atomic"
    CANARY = "canary"
    CHUNKED = "chunked"
    MAINTENANCE_WINDOW = "maintenance_window"


TERMINAL_STATES = {
    DeploymentState.COMPLETED,
    DeploymentState.FAILED,
    DeploymentState.CANCELLED,
}

ACTIVE_STATES = [state for state in DeploymentState if state not in TERMINAL_STATES]

VALID_TRANSITIONS: dict[DeploymentState, set[DeploymentState]] = {
    DeploymentState.QUEUED: {DeploymentState.STAGING, DeploymentState.CANCELLED},
    # staging -> queued is the approval-timeout revert.
    DeploymentState.STAGING: {DeploymentState.READY, DeploymentState.QUEUED, DeploymentState.CANCELLED},
    DeploymentState.READY: {DeploymentState.DEPLOYING, DeploymentState.FAILED, DeploymentState.CANCELLED},
    DeploymentState.DEPLOYING: {
        DeploymentState.COMPLETED,
        DeploymentState.FAILED,
        DeploymentState.PAUSED,
        DeploymentState.CANCELLED,
    },
    # paused -> failed: the in-flight step failed after the pause was requested.
    DeploymentState.PAUSED: {DeploymentState.DEPLOYING, DeploymentState.FAILED, DeploymentState.CANCELLED},
    DeploymentState.COMPLETED: set(),
    DeploymentState.FAILED: set(),
    DeploymentState.CANCELLED: set(),
}


class TransitionRuleError(ValueError):
    """Raised when an invalid deployment state transition is requested."""


def ensure_transition_allowed(
    current: DeploymentState,
    target: DeploymentState,
    failure_reason: FailureReasonCode | None = None,
) -> None:
    if current in TERMINAL_STATES:
        raise TransitionRuleError(f"Cannot transition terminal state '{current.value}'.")

    allowed_targets = VALID_TRANSITIONS[current]
    if target not in allowed_targets:
        allowed_text = ", ".join(sorted(state.value for state in allowed_targets))
        raise TransitionRuleError(
            f"Invalid transition '{current.value}' -> '{target.value}'. Allowed: [{allowed_text}]"
        )

    if target == DeploymentState.FAILED and failure_reason is None:
        raise TransitionRuleError("failure_reason_code is required when transitioning to failed.")

    if target != DeploymentState.FAILED and failure_reason is not None:
        raise TransitionRuleError("failure_reason_code is only valid for failed transitions.")


def is_terminal(state: DeploymentState | str) -> bool:
    return DeploymentState(state) in TERMINAL_STATES


def list_deployment_states() -> list[str]:
    return [state.value for state in DeploymentState]


def list_failure_reason_codes() -> list[str]:
    return [code.value for code in FailureReasonCode]


def list_strategies() -> list[str]:
    return [strategy.value for strategy in DeploymentStrategy]
