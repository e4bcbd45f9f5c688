from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from logic_deploy.core.config import Settings


@dataclass(frozen=True)
class HealthThresholds:
    cpu_percent_max: float = 85.0
    memory_percent_max: float = 90.0
    error_count_max: int = 5
    critical_failures_max: int = 1
    sustained_samples: int = 3

    @classmethod
    def from_settings(cls, settings: Settings) -> "HealthThresholds":
        return cls(
            cpu_percent_max=settings.health_cpu_percent_max,
            memory_percent_max=settings.health_memory_percent_max,
            error_count_max=max(1, settings.health_error_count_max),
            critical_failures_max=max(1, settings.health_critical_failures_max),
            sustained_samples=max(1, settings.monitor_sustained_samples),
        )


def evaluate_sample(
    sample: Any,
    counters: Mapping[str, int] | None,
    thresholds: HealthThresholds,
) -> tuple[dict[str, int], list[str]]:
    """Fold one health sample into the per-target counters.

    Returns the updated counters and the breach reasons (empty when healthy).
    CPU and memory only breach after ``sustained_samples`` consecutive samples
    above the limit; errors, critical failures and tag excursions breach at once.
    """
    current = dict(counters or {})
    cpu_run = current.get("cpu", 0) + 1 if sample.cpu_percent > thresholds.cpu_percent_max else 0
    memory_run = current.get("memory", 0) + 1 if sample.memory_percent > thresholds.memory_percent_max else 0
    updated = {"cpu": cpu_run, "memory": memory_run}

    breaches: list[str] = []
    if cpu_run >= thresholds.sustained_samples:
        breaches.append(
            f"cpu {sample.cpu_percent:.1f}% above {thresholds.cpu_percent_max:.1f}% for {cpu_run} samples"
        )
    if memory_run >= thresholds.sustained_samples:
        breaches.append(
            f"memory {sample.memory_percent:.1f}% above {thresholds.memory_percent_max:.1f}% for {memory_run} samples"
        )
    if sample.error_count >= thresholds.error_count_max:
        breaches.append(f"{sample.error_count} runtime errors (limit {thresholds.error_count_max})")
    if sample.critical_failures >= thresholds.critical_failures_max:
        breaches.append(f"{sample.critical_failures} critical failures (limit {thresholds.critical_failures_max})")
    if sample.tag_excursions:
        breaches.append("critical tag excursion: " + ", ".join(sample.tag_excursions))
    return updated, breaches
