"""SQLAlchemy model package for the logic deploy control plane."""

from logic_deploy.models.audit_log import AuditLog
from logic_deploy.models.checkpoint import Checkpoint, Rollback
from logic_deploy.models.deploy_approval import DeployApproval
from logic_deploy.models.deployment import Deployment
from logic_deploy.models.deployment_event import DeploymentEvent
from logic_deploy.models.release import Release
from logic_deploy.models.safety_check import SafetyCheck, SafetyCheckRun
from logic_deploy.models.user import User

__all__ = [
    "AuditLog",
    "Checkpoint",
    "DeployApproval",
    "Deployment",
    "DeploymentEvent",
    "Release",
    "Rollback",
    "SafetyCheck",
    "SafetyCheckRun",
    "User",
]
