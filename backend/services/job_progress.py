"""
Progress read model for staging jobs.

Everything is derived from the job row's ``results`` list, which the
processor appends to once per image.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Optional

from models.staging_job import StagingJob
from models.status import JobStatus


@dataclass(frozen=True)
class JobProgress:
    total: int
    processed: int
    successful: int
    failed: int
    percent: float
    eta_seconds: Optional[float]
    eta_label: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _format_eta(seconds: float) -> str:
    if seconds <= 0:
        return "done"
    if seconds < 60:
        return f"{int(round(seconds))}s"
    minutes = int(seconds // 60)
    remainder = int(round(seconds - minutes * 60))
    return f"{minutes}m {remainder}s"


def compute_progress(job: StagingJob, now: datetime) -> JobProgress:
    """Counts, percent complete and a naive ETA for ``job`` at time ``now``."""
    results = list(job.results or [])
    total = len(job.image_ids or [])
    processed = len(results)
    successful = sum(1 for r in results if r.get("success"))
    failed = processed - successful
    percent = round(processed / total * 100, 1) if total else 0.0

    if JobStatus(job.status).is_terminal:
        return JobProgress(total, processed, successful, failed, percent, 0.0, "done")
    if processed == 0:
        return JobProgress(total, processed, successful, failed, percent, None, "estimating")

    elapsed = max((now - job.created_at).total_seconds(), 0.0)
    average = elapsed / processed
    eta = round(average * max(total - processed, 0), 1)
    return JobProgress(total, processed, successful, failed, percent, eta, _format_eta(eta))
