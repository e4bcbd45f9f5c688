"""Step plans for the rollout strategies and the execution of single steps.

A plan is a list of plain dicts persisted on the deployment, so a paused or
restarted deployment resumes at ``current_step``. Steps talk to the target
runtimes only; persistence and state transitions stay in the orchestrator.
"""

from __future__ import annotations

from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable

from logic_deploy.core.errors import InvalidRequest, RuntimeCommunicationError
from logic_deploy.domain.deployment_state_machine import DeploymentStrategy, FailureReasonCode
from logic_deploy.domain.health_thresholds import HealthThresholds, evaluate_sample
from logic_deploy.domain.logic_facts import ExtractedFacts
from logic_deploy.services.target_runtime import TargetRuntime


@dataclass(frozen=True)
class StepContext:
    snapshot_id: str
    targets: list[str]
    files: list[dict[str, Any]]
    runtime: TargetRuntime
    thresholds: HealthThresholds = field(default_factory=HealthThresholds)
    max_parallel_chunks: int = 4


@dataclass(frozen=True)
class StepResult:
    ok: bool
    message: str
    failure_reason: FailureReasonCode | None = None
    detail: dict[str, Any] = field(default_factory=dict)
    state_updates: dict[str, Any] = field(default_factory=dict)


def _step(action: str, label: str, **extra: Any) -> dict[str, Any]:
    return {"action": action, "label": label, "status": "pending", **extra}


def dependency_levels(dependencies: dict[str, tuple[str, ...]]) -> tuple[list[list[str]], list[str]]:
    """Group chunks into levels whose members only depend on earlier levels.

    Returns the levels and the chunks left over because they sit on a dependency
    cycle; those run one at a time after the acyclic levels.
    """
    remaining = {node: {dep for dep in deps if dep in dependencies} for node, deps in dependencies.items()}
    levels: list[list[str]] = []
    while remaining:
        ready = sorted(node for node, deps in remaining.items() if not deps)
        if not ready:
            break
        levels.append(ready)
        for node in ready:
            remaining.pop(node)
        for deps in remaining.values():
            deps.difference_update(ready)
    return levels, sorted(remaining)


def build_plan(
    strategy: DeploymentStrategy | str,
    *,
    facts: ExtractedFacts | None = None,
    cohorts: list[int] | None = None,
) -> list[dict[str, Any]]:
    strategy = DeploymentStrategy(strategy)
    steps: list[dict[str, Any]] = [_step("upload", "upload release"), _step("validate", "validate on target")]

    if strategy == DeploymentStrategy.ATOMIC:
        steps.append(_step("activate", "atomic swap", percent=100))
    elif strategy == DeploymentStrategy.CANARY:
        for percent in sorted(set(cohorts or [100])):
            steps.append(_step("activate", f"activate cohort {percent}%", percent=percent))
            steps.append(_step("health_gate", f"health gate after {percent}%", percent=percent))
        if steps[-2].get("percent") != 100:
            steps.append(_step("activate", "activate cohort 100%", percent=100))
            steps.append(_step("health_gate", "health gate after 100%", percent=100))
    elif strategy == DeploymentStrategy.CHUNKED:
        if facts is None:
            raise InvalidRequest("chunked strategy needs extracted facts to order chunks")
        levels, cyclic = dependency_levels(facts.file_dependencies())
        for number, level in enumerate(levels, start=1):
            steps.append(_step("chunk_level", f"chunk level {number}", chunks=level))
        for chunk in cyclic:
            steps.append(_step("chunk_level", f"cyclic chunk {chunk}", chunks=[chunk], cyclic=True))
    elif strategy == DeploymentStrategy.MAINTENANCE_WINDOW:
        steps.append(_step("quiesce", "quiesce runtime"))
        steps.append(_step("activate", "apply release", percent=100))
        steps.append(_step("restart", "restart runtime"))

    steps.append(_step("cleanup", "clean up staged files"))
    for index, step in enumerate(steps):
        step["index"] = index
    return steps


@dataclass(frozen=True)
class _Attempt:
    ok: bool
    message: str = ""
    failure_reason: FailureReasonCode | None = None


def _attempt(
    runtime: TargetRuntime,
    target: str,
    invoke: Callable[[], Any],
    confirmed: Callable[[dict[str, Any]], bool],
) -> _Attempt:
    """Run one mutating call; on timeout, decide from the re-queried remote state."""
    try:
        invoke()
        return _Attempt(ok=True)
    except RuntimeCommunicationError as exc:
        if not exc.timed_out:
            return _Attempt(False, f"{target}: {exc.reason}", FailureReasonCode.RUNTIME_ERROR)
        try:
            state = runtime.query_state(target)
        except RuntimeCommunicationError as query_exc:
            return _Attempt(
                False,
                f"{target}: timed out and state could not be re-queried ({query_exc.reason})",
                FailureReasonCode.RUNTIME_STATE_UNKNOWN,
            )
        if confirmed(state):
            return _Attempt(ok=True, message=f"{target}: timed out, confirmed applied by state query")
        return _Attempt(False, f"{target}: timed out and state query shows the change was not applied", FailureReasonCode.RUNTIME_ERROR)


def _collect(attempts: dict[str, _Attempt], action: str, **state_updates: Any) -> StepResult:
    failures = {key: item for key, item in attempts.items() if not item.ok}
    notes = {key: item.message for key, item in attempts.items() if item.ok and item.message}
    if failures:
        reasons = {item.failure_reason for item in failures.values()}
        reason = (
            FailureReasonCode.RUNTIME_STATE_UNKNOWN
            if FailureReasonCode.RUNTIME_STATE_UNKNOWN in reasons
            else FailureReasonCode.RUNTIME_ERROR
        )
        return StepResult(
            ok=False,
            message=f"{action} failed on {len(failures)} target(s)",
            failure_reason=reason,
            detail={"errors": {key: item.message for key, item in failures.items()}, "notes": notes},
        )
    return StepResult(ok=True, message=f"{action} done", detail={"notes": notes} if notes else {}, state_updates=state_updates)


def _run_upload(step: dict[str, Any], context: StepContext) -> StepResult:
    runtime = context.runtime
    attempts = {
        target: _attempt(
            runtime,
            target,
            lambda target=target: runtime.upload(target, context.snapshot_id, context.files),
            lambda state: state.get("staged_snapshot_id") == context.snapshot_id,
        )
        for target in context.targets
    }
    return _collect(attempts, "upload")


def _run_validate(step: dict[str, Any], context: StepContext) -> StepResult:
    runtime = context.runtime
    rejected: dict[str, list[Any]] = {}
    attempts: dict[str, _Attempt] = {}
    for target in context.targets:
        outcome: dict[str, Any] = {}

        def invoke(target: str = target, outcome: dict[str, Any] = outcome) -> None:
            outcome.update(runtime.validate(target, context.snapshot_id))

        attempts[target] = _attempt(
            runtime,
            target,
            invoke,
            lambda state: state.get("validated_snapshot_id") == context.snapshot_id,
        )
        if attempts[target].ok and outcome and not outcome.get("valid", True):
            rejected[target] = list(outcome.get("errors") or [])

    if rejected:
        return StepResult(
            ok=False,
            message=f"target runtime rejected the release on {len(rejected)} target(s)",
            failure_reason=FailureReasonCode.VALIDATION_REJECTED,
            detail={"rejections": rejected},
        )
    return _collect(attempts, "validate")


def _run_activate(step: dict[str, Any], context: StepContext) -> StepResult:
    runtime = context.runtime
    percent = int(step.get("percent", 100))

    def confirmed(state: dict[str, Any]) -> bool:
        return state.get("active_snapshot_id") == context.snapshot_id and int(state.get("active_percent", 100)) >= percent

    attempts = {
        target: _attempt(
            runtime,
            target,
            lambda target=target: runtime.activate(target, context.snapshot_id, percent=percent),
            confirmed,
        )
        for target in context.targets
    }
    return _collect(attempts, step["label"], active_percent=percent)


def _run_health_gate(step: dict[str, Any], context: StepContext) -> StepResult:
    samples: dict[str, list[dict[str, Any]]] = defaultdict(list)
    breaches: dict[str, list[str]] = {}
    for target in context.targets:
        counters: dict[str, int] = {}
        for _ in range(context.thresholds.sustained_samples):
            try:
                sample = context.runtime.health(target)
            except RuntimeCommunicationError as exc:
                return StepResult(
                    ok=False,
                    message=f"health of '{target}' could not be read: {exc.reason}",
                    failure_reason=FailureReasonCode.RUNTIME_STATE_UNKNOWN,
                    detail={"target": target},
                )
            samples[target].append(sample.to_dict())
            counters, found = evaluate_sample(sample, counters, context.thresholds)
            if found:
                breaches[target] = found
                break

    percent = int(step.get("percent", 100))
    if breaches:
        return StepResult(
            ok=False,
            message=f"health threshold breached at cohort {percent}%: "
            + "; ".join(f"{target}: {', '.join(items)}" for target, items in sorted(breaches.items())),
            failure_reason=FailureReasonCode.HEALTH_THRESHOLD_BREACHED,
            detail={"breaches": breaches, "samples": dict(samples), "cohort_percent": percent},
        )
    return StepResult(
        ok=True,
        message=f"cohort {percent}% healthy",
        detail={"samples": dict(samples)},
        state_updates={"passed_cohorts": [percent]},
    )


def _run_chunk_level(step: dict[str, Any], context: StepContext) -> StepResult:
    runtime = context.runtime
    chunks = [str(item) for item in step.get("chunks") or []]
    jobs = [(target, chunk) for target in context.targets for chunk in chunks]

    def deploy(job: tuple[str, str]) -> _Attempt:
        target, chunk = job
        return _attempt(
            runtime,
            target,
            lambda: runtime.deploy_chunk(target, context.snapshot_id, chunk),
            lambda state: dict(state.get("chunks") or {}).get(chunk) == context.snapshot_id,
        )

    workers = max(1, min(context.max_parallel_chunks, len(jobs)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="chunk") as pool:
        results = list(pool.map(deploy, jobs))

    attempts = {f"{target}:{chunk}": result for (target, chunk), result in zip(jobs, results)}
    return _collect(attempts, step["label"], completed_chunks=chunks)


def _run_quiesce(step: dict[str, Any], context: StepContext) -> StepResult:
    runtime = context.runtime
    attempts = {
        target: _attempt(runtime, target, lambda target=target: runtime.quiesce(target), lambda state: state.get("mode") == "quiesced")
        for target in context.targets
    }
    return _collect(attempts, "quiesce")


def _run_restart(step: dict[str, Any], context: StepContext) -> StepResult:
    runtime = context.runtime
    attempts = {
        target: _attempt(
            runtime,
            target,
            lambda target=target: runtime.restart(target),
            lambda state: state.get("mode") == "running" and state.get("active_snapshot_id") == context.snapshot_id,
        )
        for target in context.targets
    }
    return _collect(attempts, "restart")


def _run_cleanup(step: dict[str, Any], context: StepContext) -> StepResult:
    leftovers: dict[str, str] = {}
    for target in context.targets:
        try:
            context.runtime.cleanup(target, context.snapshot_id)
        except RuntimeCommunicationError as exc:
            leftovers[target] = exc.reason
    # Staged files left behind do not affect the active logic.
    if leftovers:
        return StepResult(ok=True, message="cleanup incomplete", detail={"leftovers": leftovers})
    return StepResult(ok=True, message="cleanup done")


STEP_RUNNERS: dict[str, Callable[[dict[str, Any], StepContext], StepResult]] = {
    "upload": _run_upload,
    "validate": _run_validate,
    "activate": _run_activate,
    "health_gate": _run_health_gate,
    "chunk_level": _run_chunk_level,
    "quiesce": _run_quiesce,
    "restart": _run_restart,
    "cleanup": _run_cleanup,
}


def execute_step(step: dict[str, Any], context: StepContext) -> StepResult:
    runner = STEP_RUNNERS.get(str(step.get("action")))
    if runner is None:
        return StepResult(
            ok=False,
            message=f"unknown step action '{step.get('action')}'",
            failure_reason=FailureReasonCode.UNKNOWN_ERROR,
        )
    return runner(step, context)
