"""Ordered pre-deployment safety checks.

Each check is a pure function of a :class:`CheckContext` and of the outcomes of
the checks that ran before it. ``iter_safety_checks`` runs them strictly in
order and yields a ``running`` update followed by the final outcome for each.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import re
from typing import Any, Callable, Iterator, Mapping

from logic_deploy.domain.logic_facts import (
    DIALECTS,
    STRUCTURAL_NOTE_CODES,
    ExtractedFacts,
    normalize_address,
    resolve_dialect,
)


class CheckStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    WARNING = "warning"


class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


FINAL_STATUSES = {CheckStatus.PASSED, CheckStatus.FAILED, CheckStatus.WARNING}

_TYPE_SIZES = {
    "BOOL": 1, "BYTE": 1, "SINT": 1, "USINT": 1, "CHAR": 1,
    "WORD": 2, "INT": 2, "UINT": 2, "WCHAR": 2,
    "DWORD": 4, "DINT": 4, "UDINT": 4, "REAL": 4, "TIME": 4, "DATE": 4, "TOD": 4, "TIME_OF_DAY": 4,
    "LWORD": 8, "LINT": 8, "ULINT": 8, "LREAL": 8, "LTIME": 8, "DT": 8, "DATE_AND_TIME": 8,
    "TON": 32, "TOF": 32, "TP": 32, "CTU": 16, "CTD": 16, "CTUD": 24,
    "R_TRIG": 4, "F_TRIG": 4, "SR": 2, "RS": 2,
}
DEFAULT_STRING_LENGTH = 80
USER_TYPE_SIZE = 64

SCAN_MS_PER_STATEMENT = 0.01
SCAN_MS_PER_LOOP = 0.5
SCAN_MS_PER_MATH_OP = 0.1
SCAN_MS_PER_STRING_OP = 0.05
RESOURCE_WARNING_RATIO = 0.8

_ARRAY_RE = re.compile(r"^ARRAY\[(.+)\] OF (.+)$")
_STRING_RE = re.compile(r"^W?STRING(?:\((\d+)\))?$")
_PORTABLE_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class MaintenanceWindow:
    starts_at: datetime
    ends_at: datetime
    approved: bool = False

    def is_open(self, now: datetime) -> bool:
        return self.approved and self.starts_at <= now < self.ends_at

    def has_ended(self, now: datetime) -> bool:
        return now >= self.ends_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "starts_at": self.starts_at.isoformat(),
            "ends_at": self.ends_at.isoformat(),
            "approved": self.approved,
        }

    @classmethod
    def from_metadata(cls, value: Mapping[str, Any] | None) -> "MaintenanceWindow | None":
        if not value:
            return None
        try:
            starts_at = datetime.fromisoformat(str(value["starts_at"]))
            ends_at = datetime.fromisoformat(str(value["ends_at"]))
        except (KeyError, ValueError):
            return None
        if starts_at.tzinfo is None:
            starts_at = starts_at.replace(tzinfo=timezone.utc)
        if ends_at.tzinfo is None:
            ends_at = ends_at.replace(tzinfo=timezone.utc)
        return cls(starts_at=starts_at, ends_at=ends_at, approved=bool(value.get("approved", False)))


@dataclass(frozen=True)
class CheckContext:
    facts: ExtractedFacts
    now: datetime
    release_metadata: Mapping[str, Any] = field(default_factory=dict)
    # tag name (upper) -> registered address; None when the registry could not be read
    critical_tags: Mapping[str, str | None] | None = field(default_factory=dict)
    # target runtime -> current lock holder (None when unlocked)
    runtime_locks: Mapping[str, str | None] = field(default_factory=dict)
    unreachable_targets: tuple[str, ...] = ()
    lock_owner: str | None = None
    strategy: str | None = None
    maintenance_window: MaintenanceWindow | None = None
    accepted_dialects: tuple[str, ...] = tuple(DIALECTS)
    memory_limit_bytes: int = 262144
    scan_time_limit_ms: float = 10.0


@dataclass(frozen=True)
class CheckOutcome:
    position: int
    key: str
    name: str
    severity: Severity
    status: CheckStatus
    message: str | None = None
    details: tuple[dict[str, Any], ...] = ()

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_STATUSES

    @property
    def blocking(self) -> bool:
        return self.status == CheckStatus.FAILED and self.severity == Severity.CRITICAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": self.position,
            "key": self.key,
            "name": self.name,
            "severity": self.severity.value,
            "status": self.status.value,
            "message": self.message,
            "details": [dict(item) for item in self.details],
        }


CheckResult = tuple[CheckStatus, str, list[dict[str, Any]]]
CheckFunction = Callable[[CheckContext, Mapping[str, CheckOutcome]], CheckResult]


@dataclass(frozen=True)
class SafetyCheckDefinition:
    key: str
    name: str
    severity: Severity
    evaluate: CheckFunction


def estimate_type_size(data_type: str) -> int:
    value = data_type.strip().upper()
    array_match = _ARRAY_RE.match(value)
    if array_match:
        elements = 1
        for dimension in array_match.group(1).split(","):
            bounds = dimension.split("..")
            try:
                low, high = int(bounds[0]), int(bounds[-1])
            except ValueError:
                continue
            elements *= max(high - low + 1, 1)
        return elements * estimate_type_size(array_match.group(2))

    string_match = _STRING_RE.match(value)
    if string_match:
        length = int(string_match.group(1) or DEFAULT_STRING_LENGTH)
        width = 2 if value.startswith("W") else 1
        return (length + 1) * width

    return _TYPE_SIZES.get(value, USER_TYPE_SIZE)


def _declared_names(facts: ExtractedFacts) -> set[str]:
    names = {item.name for item in facts.all_declarations()}
    for file_facts in facts.files:
        names.update(block.name.upper() for block in file_facts.blocks)
    return names


def check_syntax(context: CheckContext, prior: Mapping[str, CheckOutcome]) -> CheckResult:
    facts = context.facts
    if not facts.files:
        return CheckStatus.FAILED, "Snapshot contains no logic files.", []

    structural = [note.to_dict() for note in facts.notes if note.code in STRUCTURAL_NOTE_CODES]
    if structural:
        return (
            CheckStatus.FAILED,
            f"{len(structural)} structural problem(s) found while scanning logic files.",
            structural,
        )

    known = _declared_names(facts)
    undeclared = [
        {"identifier": write.target, "file_path": write.file_path, "line": write.line}
        for write in facts.all_writes()
        if not write.is_address and write.target not in known
    ]
    if undeclared:
        return (
            CheckStatus.WARNING,
            f"{len(undeclared)} assignment(s) target undeclared identifiers.",
            undeclared,
        )
    return CheckStatus.PASSED, f"{len(facts.files)} file(s) scanned without structural problems.", []


def check_declarations(context: CheckContext, prior: Mapping[str, CheckOutcome]) -> CheckResult:
    facts = context.facts
    details: list[dict[str, Any]] = []
    for file_facts in facts.files:
        for duplicate in file_facts.duplicates:
            details.append({"problem": "duplicate_declaration", **duplicate.to_dict()})

    global_types: dict[str, set[str]] = defaultdict(set)
    global_sites: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for item in facts.all_declarations():
        if item.section not in {"VAR_GLOBAL", "VAR_EXTERNAL"}:
            continue
        global_types[item.name].add(item.data_type)
        global_sites[item.name].append({"file_path": item.file_path, "line": item.line, "data_type": item.data_type})
    for name in sorted(global_types):
        if len(global_types[name]) > 1:
            details.append({"problem": "conflicting_global_type", "name": name, "sites": global_sites[name]})

    if details:
        return CheckStatus.FAILED, f"{len(details)} declaration problem(s) found.", details

    if facts.files and not facts.declarations:
        return CheckStatus.WARNING, "Snapshot declares no identifiers.", []
    return CheckStatus.PASSED, f"{facts.totals['declarations']} unique identifier(s) declared.", []


def check_critical_tags(context: CheckContext, prior: Mapping[str, CheckOutcome]) -> CheckResult:
    if context.critical_tags is None:
        return CheckStatus.FAILED, "Critical tag registry is unavailable; writes cannot be verified.", []
    registry = {name.upper(): (normalize_address(address) if address else None) for name, address in context.critical_tags.items()}
    if not registry:
        return CheckStatus.PASSED, "No critical tags registered for this project.", []
    protected_addresses = {address: name for name, address in registry.items() if address}

    details: list[dict[str, Any]] = []
    for write in context.facts.all_writes():
        tag = write.target if write.target in registry else protected_addresses.get(write.target)
        if tag is not None:
            details.append(
                {
                    "problem": "critical_tag_write",
                    "tag": tag,
                    "target": write.target,
                    "file_path": write.file_path,
                    "line": write.line,
                }
            )

    for item in context.facts.io_mappings():
        registered = registry.get(item.name)
        remapped = item.name in registry and registered is not None and item.address != registered
        owner = protected_addresses.get(item.address or "")
        hijacked = owner is not None and owner != item.name
        if remapped or hijacked:
            details.append(
                {
                    "problem": "critical_tag_remap",
                    "tag": item.name if remapped else owner,
                    "identifier": item.name,
                    "address": item.address,
                    "registered_address": registered if remapped else item.address,
                    "file_path": item.file_path,
                    "line": item.line,
                }
            )

    if details:
        return CheckStatus.FAILED, f"{len(details)} write(s) or re-mapping(s) touch critical tags.", details
    return CheckStatus.PASSED, f"{len(registry)} critical tag(s) untouched.", []


def check_resource_limits(context: CheckContext, prior: Mapping[str, CheckOutcome]) -> CheckResult:
    facts = context.facts
    memory_bytes = sum(estimate_type_size(item.data_type) for item in facts.all_declarations())
    scan_time_ms = round(
        sum(
            item.statement_count * SCAN_MS_PER_STATEMENT
            + item.loop_count * SCAN_MS_PER_LOOP
            + item.math_op_count * SCAN_MS_PER_MATH_OP
            + item.string_op_count * SCAN_MS_PER_STRING_OP
            for item in facts.files
        ),
        3,
    )
    memory_ratio = memory_bytes / context.memory_limit_bytes if context.memory_limit_bytes > 0 else 0.0
    scan_ratio = scan_time_ms / context.scan_time_limit_ms if context.scan_time_limit_ms > 0 else 0.0
    details = [
        {
            "memory_bytes": memory_bytes,
            "memory_limit_bytes": context.memory_limit_bytes,
            "scan_time_ms": scan_time_ms,
            "scan_time_limit_ms": context.scan_time_limit_ms,
        }
    ]
    usage = max(memory_ratio, scan_ratio)
    summary = f"memory {memory_bytes} B ({memory_ratio:.0%}), scan {scan_time_ms} ms ({scan_ratio:.0%})"

    if usage > 1.0:
        return CheckStatus.FAILED, f"Estimated resources exceed the runtime limit: {summary}.", details
    if usage > RESOURCE_WARNING_RATIO:
        return CheckStatus.WARNING, f"Estimated resources above {RESOURCE_WARNING_RATIO:.0%} of the limit: {summary}.", details

    syntax = prior.get("syntax")
    if syntax is not None and syntax.status == CheckStatus.FAILED:
        return CheckStatus.WARNING, f"Estimate is incomplete because some declarations were unreadable: {summary}.", details
    return CheckStatus.PASSED, f"Estimated resources within limits: {summary}.", details


def _arbitrated(context: CheckContext) -> set[str]:
    values = context.release_metadata.get("arbitrated_identifiers") or []
    arbitrated = set()
    for value in values:
        text = str(value).strip()
        if not text:
            continue
        arbitrated.add(normalize_address(text) if text.startswith("%") else text.upper())
    return arbitrated


def check_race_conditions(context: CheckContext, prior: Mapping[str, CheckOutcome]) -> CheckResult:
    facts = context.facts
    addresses_by_name: dict[str, set[str]] = defaultdict(set)
    for item in facts.io_mappings():
        addresses_by_name[item.name].add(item.address or "")

    writers: dict[str, set[tuple[str, str]]] = defaultdict(set)
    via: dict[str, set[str]] = defaultdict(set)
    for write in facts.all_writes():
        if write.is_address:
            writers[write.target].add(write.writer)
            via[write.target].add(write.target)
            continue
        for address in addresses_by_name.get(write.target, ()):
            writers[address].add(write.writer)
            via[address].add(write.target)

    arbitrated = _arbitrated(context)
    details = []
    for address in sorted(writers):
        blocks = writers[address]
        if len(blocks) < 2:
            continue
        if address in arbitrated or via[address] & arbitrated:
            continue
        details.append(
            {
                "address": address,
                "identifiers": sorted(via[address]),
                "writers": [{"file_path": path, "block_name": block} for path, block in sorted(blocks)],
            }
        )

    if details:
        return (
            CheckStatus.FAILED,
            f"{len(details)} physical output(s) are written from more than one block without arbitration.",
            details,
        )
    return CheckStatus.PASSED, "Every mapped output has a single writer block.", []


def check_io_conflicts(context: CheckContext, prior: Mapping[str, CheckOutcome]) -> CheckResult:
    addresses_by_name: dict[str, set[str]] = defaultdict(set)
    names_by_address: dict[str, set[str]] = defaultdict(set)
    sites: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for item in context.facts.io_mappings():
        address = item.address or ""
        addresses_by_name[item.name].add(address)
        names_by_address[address].add(item.name)
        sites[address].append({"identifier": item.name, "file_path": item.file_path, "line": item.line})

    details: list[dict[str, Any]] = []
    for address in sorted(names_by_address):
        if len(names_by_address[address]) > 1:
            details.append(
                {
                    "problem": "address_shared",
                    "address": address,
                    "identifiers": sorted(names_by_address[address]),
                    "sites": sites[address],
                }
            )
    for name in sorted(addresses_by_name):
        if len(addresses_by_name[name]) > 1:
            details.append({"problem": "identifier_remapped", "identifier": name, "addresses": sorted(addresses_by_name[name])})

    if details:
        return CheckStatus.FAILED, f"{len(details)} I/O mapping conflict(s) found.", details
    return CheckStatus.PASSED, f"{len(names_by_address)} I/O address(es) mapped without conflicts.", []


def check_vendor_export(context: CheckContext, prior: Mapping[str, CheckOutcome]) -> CheckResult:
    accepted = {item.lower() for item in context.release_metadata.get("accepted_dialects") or context.accepted_dialects}
    unknown = {note.file_path for note in context.facts.notes if note.code == "unknown_dialect"}

    failures: list[dict[str, Any]] = []
    warnings: list[dict[str, Any]] = []
    for file_facts in context.facts.files:
        if file_facts.path in unknown:
            failures.append({"problem": "unknown_dialect", "file_path": file_facts.path})
            continue
        if file_facts.dialect not in accepted:
            failures.append({"problem": "dialect_not_accepted", "file_path": file_facts.path, "dialect": file_facts.dialect})
            continue

        profile = resolve_dialect(file_facts.dialect)
        if file_facts.size_bytes == 0 or file_facts.line_count == 0:
            warnings.append({"problem": "empty_file", "file_path": file_facts.path})
        if profile is not None and not file_facts.path.lower().endswith(profile.extensions):
            warnings.append(
                {"problem": "extension_mismatch", "file_path": file_facts.path, "expected": list(profile.extensions)}
            )
        for item in file_facts.declarations:
            if not _PORTABLE_IDENTIFIER_RE.match(item.declared_name):
                warnings.append(
                    {"problem": "non_portable_identifier", "file_path": file_facts.path, "line": item.line, "identifier": item.declared_name}
                )

    if failures:
        return CheckStatus.FAILED, f"{len(failures)} file(s) cannot be exported to the target runtimes.", failures + warnings
    if warnings:
        return CheckStatus.WARNING, f"{len(warnings)} export warning(s).", warnings
    return CheckStatus.PASSED, "All files export cleanly to the target runtimes.", []


def check_runtime_lock(context: CheckContext, prior: Mapping[str, CheckOutcome]) -> CheckResult:
    targets = [str(item) for item in context.release_metadata.get("target_runtimes") or []]
    if not targets:
        return CheckStatus.FAILED, "Release has no target runtimes configured.", []

    details: list[dict[str, Any]] = []
    for target in targets:
        if target in context.unreachable_targets:
            details.append({"problem": "runtime_unreachable", "target": target})
            continue
        holder = context.runtime_locks.get(target)
        if holder and holder != context.lock_owner:
            details.append({"problem": "runtime_locked", "target": target, "holder": holder})

    if context.strategy == "maintenance_window":
        window = context.maintenance_window
        if window is None:
            details.append({"problem": "maintenance_window_missing"})
        elif not window.approved:
            details.append({"problem": "maintenance_window_not_approved", **window.to_dict()})
        elif window.has_ended(context.now):
            details.append({"problem": "maintenance_window_ended", **window.to_dict()})

    if details:
        return CheckStatus.FAILED, f"{len(details)} target availability problem(s).", details
    return CheckStatus.PASSED, f"{len(targets)} target runtime(s) available.", []


SAFETY_CHECKS: tuple[SafetyCheckDefinition, ...] = (
    SafetyCheckDefinition("syntax", "Syntax validation", Severity.CRITICAL, check_syntax),
    SafetyCheckDefinition("declarations", "Declaration consistency", Severity.CRITICAL, check_declarations),
    SafetyCheckDefinition("critical_tags", "Critical tag protection", Severity.CRITICAL, check_critical_tags),
    SafetyCheckDefinition("resource_limits", "Resource limits", Severity.WARNING, check_resource_limits),
    SafetyCheckDefinition("race_conditions", "Race condition detection", Severity.CRITICAL, check_race_conditions),
    SafetyCheckDefinition("io_conflicts", "I/O mapping conflicts", Severity.CRITICAL, check_io_conflicts),
    SafetyCheckDefinition("vendor_export", "Vendor export compatibility", Severity.WARNING, check_vendor_export),
    SafetyCheckDefinition("runtime_lock", "Target runtime availability", Severity.CRITICAL, check_runtime_lock),
)


def list_safety_checks() -> list[dict[str, Any]]:
    return [
        {"position": position, "key": item.key, "name": item.name, "severity": item.severity.value}
        for position, item in enumerate(SAFETY_CHECKS, start=1)
    ]


def iter_safety_checks(context: CheckContext) -> Iterator[CheckOutcome]:
    prior: dict[str, CheckOutcome] = {}
    for position, definition in enumerate(SAFETY_CHECKS, start=1):
        yield CheckOutcome(
            position=position,
            key=definition.key,
            name=definition.name,
            severity=definition.severity,
            status=CheckStatus.RUNNING,
        )
        try:
            status, message, details = definition.evaluate(context, prior)
        except Exception as exc:
            status, message, details = (
                CheckStatus.FAILED,
                f"Check raised {type(exc).__name__}: {exc}",
                [{"problem": "check_error", "error": str(exc)}],
            )
        outcome = CheckOutcome(
            position=position,
            key=definition.key,
            name=definition.name,
            severity=definition.severity,
            status=status,
            message=message,
            details=tuple(details),
        )
        prior[definition.key] = outcome
        yield outcome


def run_all_checks(context: CheckContext) -> list[CheckOutcome]:
    return [outcome for outcome in iter_safety_checks(context) if outcome.is_final]


@dataclass(frozen=True)
class CheckSummary:
    evaluated: bool
    blocking: tuple[str, ...]
    warnings: tuple[str, ...]

    @property
    def passed(self) -> bool:
        return self.evaluated and not self.blocking


def summarize_outcomes(outcomes: list[CheckOutcome]) -> CheckSummary:
    final = {item.key: item for item in outcomes if item.is_final}
    evaluated = all(definition.key in final for definition in SAFETY_CHECKS)
    blocking = tuple(key for key, item in final.items() if item.blocking)
    warnings = tuple(
        key
        for key, item in final.items()
        if not item.blocking and item.status in {CheckStatus.WARNING, CheckStatus.FAILED}
    )
    return CheckSummary(evaluated=evaluated, blocking=blocking, warnings=warnings)
