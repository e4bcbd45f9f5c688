"""Typed pipeline errors.

Every mutating operation of the control plane raises one of these instead of an
opaque exception. Each error carries a machine-readable ``code``, a ``reason``
describing what happened and a ``remediation`` telling the operator what to do
next. The API layer renders them as ``{"code", "reason", "remediation"}``.
"""

from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    code = "PIPELINE_ERROR"
    http_status = 409
    default_remediation = "Inspect the deployment event log for details."

    def __init__(self, reason: str, *, remediation: str | None = None, **context: Any) -> None:
        self.reason = reason
        self.remediation = remediation or self.default_remediation
        self.context = context
        super().__init__(f"{self.code}:{reason}")

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "reason": self.reason,
            "remediation": self.remediation,
        }
        if self.context:
            payload["context"] = self.context
        return payload


class NotFound(PipelineError):
    code = "NOT_FOUND"
    http_status = 404
    default_remediation = "Check the identifier and retry."


class ExtractionDegraded(PipelineError):
    """Non-fatal: a file's declarations could not be read."""

    code = "EXTRACTION_DEGRADED"
    default_remediation = "Fix the declaration block in the logic file and re-run safety checks."

    def __init__(self, reason: str, *, file_path: str, line: int | None = None, **kwargs: Any) -> None:
        self.file_path = file_path
        self.line = line
        super().__init__(reason, file_path=file_path, line=line, **kwargs)


class CheckFailed(PipelineError):
    code = "CHECK_FAILED"
    default_remediation = "Resolve the failed safety checks and re-run them."

    def __init__(self, reason: str, *, severity: str = "critical", **kwargs: Any) -> None:
        self.severity = severity
        super().__init__(reason, severity=severity, **kwargs)


class ChecksNotEvaluated(PipelineError):
    code = "CHECKS_NOT_EVALUATED"
    default_remediation = "Run safety checks for the release before starting the deployment."


class ApprovalRejected(PipelineError):
    code = "APPROVAL_REJECTED"
    default_remediation = "Address the rejection comment and request a new approval round."


class ApprovalTimedOut(PipelineError):
    code = "APPROVAL_TIMED_OUT"
    default_remediation = "Request a new approval round."


class QuorumNotMet(PipelineError):
    code = "QUORUM_NOT_MET"
    default_remediation = "Wait for the remaining approvers to decide."


class AlreadyDecided(PipelineError):
    code = "ALREADY_DECIDED"
    default_remediation = "Refresh the approval list; this slot was already decided."


class RoleNotEligible(PipelineError):
    code = "ROLE_NOT_ELIGIBLE"
    http_status = 403
    default_remediation = "Ask a user holding the required role to decide this slot."


class TwoPersonRuleViolation(PipelineError):
    code = "TWO_PERSON_RULE_VIOLATION"
    http_status = 403
    default_remediation = "A different person must fill this approval slot."


class ApprovalOutOfOrder(PipelineError):
    code = "APPROVAL_OUT_OF_ORDER"
    default_remediation = "Sequential approvals must be decided in slot order."


class BypassNotPermitted(PipelineError):
    code = "BYPASS_NOT_PERMITTED"
    http_status = 403
    default_remediation = "Emergency bypass requires policy enablement, an eligible role and a justification."


class DeploymentConflict(PipelineError):
    code = "DEPLOYMENT_CONFLICT"
    default_remediation = "Wait for the active deployment of this release to finish or cancel it."


class InvalidTransition(PipelineError):
    code = "INVALID_TRANSITION"
    default_remediation = "Refresh the deployment state; the requested action is not allowed from it."


class CheckpointFailed(PipelineError):
    code = "CHECKPOINT_FAILED"
    http_status = 502
    default_remediation = "Verify target runtime connectivity and start a new deployment."


class RuntimeCommunicationError(PipelineError):
    code = "RUNTIME_COMMUNICATION_ERROR"
    http_status = 502
    default_remediation = "Check the target runtime connection; remote state was re-queried before deciding."

    def __init__(self, reason: str, *, target: str | None = None, timed_out: bool = False, **kwargs: Any) -> None:
        self.target = target
        self.timed_out = timed_out
        super().__init__(reason, target=target, timed_out=timed_out, **kwargs)


class MaintenanceWindowUnavailable(PipelineError):
    code = "MAINTENANCE_WINDOW_UNAVAILABLE"
    default_remediation = "Schedule and approve a maintenance window for the target runtimes."


class RollbackUnavailable(PipelineError):
    code = "ROLLBACK_UNAVAILABLE"
    default_remediation = "Rollback is only possible for completed or failed deployments with a retained checkpoint."


class RollbackFailed(PipelineError):
    code = "ROLLBACK_FAILED"
    http_status = 502
    default_remediation = (
        "Manual intervention required: restore the target runtime from the checkpoint state "
        "recorded in the deployment event log."
    )


class InvalidRequest(PipelineError):
    code = "INVALID_REQUEST"
    http_status = 422
    default_remediation = "Correct the request parameters and retry."


class ExternalServiceError(PipelineError):
    code = "EXTERNAL_SERVICE_ERROR"
    http_status = 502
    default_remediation = "Check connectivity to the Versioning Center and Tag Database."

    def __init__(self, reason: str, *, service: str, status_code: int | None = None, **kwargs: Any) -> None:
        self.service = service
        self.status_code = status_code
        super().__init__(reason, service=service, status_code=status_code, **kwargs)
