"""Read-only queue status report.

``build_status_report`` gathers per-stage counts, totals, the success rate,
long-running active jobs, the most recent problem jobs and alerts.
``format_report`` renders it as a plain-text table for operators. Nothing
here mutates queues or the ledger.

The ``failed`` column comes from the problem-jobs table so it survives
restarts and is the same for every queue backend.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Mapping, Optional

from media_pipeline.config import Settings
from media_pipeline.constants import STAGES
from media_pipeline.ledger import TransactionLedger
from media_pipeline.problems import ProblemJobStore
from media_pipeline.queues import QueueCounts, StageQueue

AlertLevel = Literal["warning", "critical"]


@dataclass
class Alert:
    level: AlertLevel
    message: str


@dataclass
class StatusReport:
    generated_at: float
    stages: dict[str, QueueCounts]
    totals: QueueCounts
    success_rate: Optional[float]
    long_running: list[dict[str, Any]] = field(default_factory=list)
    recent_problems: list[dict[str, Any]] = field(default_factory=list)
    transactions: Optional[dict[str, Any]] = None
    circuit_state: Optional[str] = None
    alerts: list[Alert] = field(default_factory=list)


def success_rate(counts: QueueCounts) -> Optional[float]:
    """Completed share of finished jobs as a percentage; None when nothing finished."""
    finished = counts.completed + counts.failed
    if finished == 0:
        return None
    return round(counts.completed / finished * 100, 1)


def compute_alerts(totals: QueueCounts, settings: Settings) -> list[Alert]:
    alerts: list[Alert] = []
    if totals.waiting > settings.alert_waiting_critical:
        alerts.append(Alert("critical", f"{totals.waiting} jobs waiting; check processing capacity"))
    elif totals.waiting > settings.alert_waiting_warning:
        alerts.append(Alert("warning", f"{totals.waiting} jobs waiting; keep an eye on it"))

    if totals.failed > 0 and totals.completed > 0:
        fail_rate = totals.failed / (totals.failed + totals.completed) * 100
        if fail_rate > settings.alert_fail_rate_critical:
            alerts.append(Alert("critical", f"failure rate {fail_rate:.1f}%; check the error logs"))
        elif fail_rate > settings.alert_fail_rate_warning:
            alerts.append(Alert("warning", f"failure rate {fail_rate:.1f}%; look for recurring problems"))
    return alerts


async def build_status_report(
    queues: Mapping[str, StageQueue],
    problems: ProblemJobStore,
    settings: Optional[Settings] = None,
    *,
    ledger: Optional[TransactionLedger] = None,
    circuit_state: Optional[str] = None,
    now: Optional[float] = None,
) -> StatusReport:
    settings = settings or Settings()
    now = time.time() if now is None else now
    failed_by_stage = await problems.count_by_stage()

    stages: dict[str, QueueCounts] = {}
    totals = QueueCounts()
    long_running: list[dict[str, Any]] = []
    for stage in STAGES:
        queue = queues.get(stage)
        counts = await queue.counts() if queue is not None else QueueCounts()
        counts.failed = failed_by_stage.get(stage, 0)
        stages[stage] = counts
        totals = totals + counts
        if queue is None:
            continue
        for active in queue.active_jobs():
            running = active.running_for(now)
            if running > settings.long_running_job_s:
                long_running.append({
                    "stage": stage,
                    "job_id": active.job_id,
                    "transaction_id": active.job.transaction_id,
                    "running_s": round(running, 1),
                })

    return StatusReport(
        generated_at=now,
        stages=stages,
        totals=totals,
        success_rate=success_rate(totals),
        long_running=long_running,
        recent_problems=await problems.recent(limit=10),
        transactions=await ledger.stats() if ledger is not None else None,
        circuit_state=circuit_state,
        alerts=compute_alerts(totals, settings),
    )


def _row(label: str, c: QueueCounts) -> str:
    return (
        f"| {label:<16} | {c.waiting:>7} | {c.active:>6} | {c.completed:>9} | {c.failed:>6} | {c.delayed:>7} |"
    )


def format_report(report: StatusReport) -> str:
    sep = "+" + "-" * 18 + "+" + "-" * 9 + "+" + "-" * 8 + "+" + "-" * 11 + "+" + "-" * 8 + "+" + "-" * 9 + "+"
    lines = [
        "MEDIA PIPELINE STATUS",
        sep,
        f"| {'Stage':<16} | {'Waiting':>7} | {'Active':>6} | {'Completed':>9} | {'Failed':>6} | {'Delayed':>7} |",
        sep,
    ]
    for stage, counts in report.stages.items():
        lines.append(_row(stage, counts))
    lines.append(sep)
    lines.append(_row("TOTAL", report.totals))
    lines.append(sep)
    rate = "N/A" if report.success_rate is None else f"{report.success_rate:.1f}%"
    lines.append(f"Success rate: {rate}")
    if report.circuit_state:
        lines.append(f"Circuit breaker: {report.circuit_state}")

    if report.transactions:
        by_status = ", ".join(f"{k}={v}" for k, v in report.transactions["by_status"].items() if v)
        lines.append(
            f"Transactions: {report.transactions['total']} total, "
            f"{report.transactions['success_rate']}% delivered ({by_status or 'none'})"
        )

    if report.long_running:
        lines.append("")
        lines.append("LONG-RUNNING JOBS")
        for job in report.long_running:
            lines.append(
                f"  {job['job_id']} ({job['stage']}, transaction {job['transaction_id']}): running {job['running_s']:.0f}s"
            )

    if report.recent_problems:
        lines.append("")
        lines.append("RECENT PROBLEM JOBS")
        for problem in report.recent_problems:
            lines.append(
                f"  {problem['job_id']} ({problem['stage']}, transaction {problem['transaction_id']}): "
                f"{problem['classification']}, {problem['error']}"
            )

    lines.append("")
    lines.append("ALERTS")
    if report.alerts:
        for alert in report.alerts:
            lines.append(f"  [{alert.level.upper()}] {alert.message}")
    else:
        lines.append(f"  none ({report.totals.waiting} waiting)")

    generated = datetime.fromtimestamp(report.generated_at, tz=timezone.utc).isoformat()
    lines.append("")
    lines.append(f"Generated at {generated}")
    return "\n".join(lines)
