import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional

from tqdm import tqdm

from .utils import utc_now_iso

logger = logging.getLogger(__name__)

NOT_AVAILABLE = "N/A"


@dataclass
class RunStatistics:
    """Counters accumulated during a run; written by the driver, read at report time."""

    start_time: Optional[float] = None
    end_time: Optional[float] = None
    resume_from: int = 0
    pages_processed: int = 0
    users_processed: int = 0
    batches_completed: int = 0
    quota_used: int = 0
    quota_waits: int = 0
    checkpoints_written: int = 0
    errors: list = field(default_factory=list)
    errors_by_type: Counter = field(default_factory=Counter)
    last_budget: Optional[dict] = None

    def record_error(self, error_type, exc, batch_number=None, progress=None, cursor=None):
        self.errors.append(
            {
                "type": error_type,
                "batch_number": batch_number,
                "progress": progress,
                "cursor": cursor,
                "error": str(exc),
                "timestamp": utc_now_iso(),
            }
        )
        self.errors_by_type[error_type] += 1

    def snapshot(self):
        """JSON-friendly view embedded in checkpoints."""
        return {
            "resumeFrom": self.resume_from,
            "pagesProcessed": self.pages_processed,
            "usersProcessed": self.users_processed,
            "batchesCompleted": self.batches_completed,
            "quotaUsed": self.quota_used,
            "quotaWaits": self.quota_waits,
            "errors": len(self.errors),
            "lastRateLimit": self.last_budget,
        }


def format_duration(seconds):
    """Render seconds as 'Xh Ym' (or 'Ym' under an hour)."""
    seconds = max(0, int(seconds))
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


class ProgressReporter:
    def __init__(self, resume_from=0, clock=time.time, show_progress=True):
        self.resume_from = resume_from
        self._clock = clock
        self.show_progress = show_progress
        self._bar = None

    def speed(self, current, start_time):
        """Items per second processed in this run (recovered progress excluded)."""
        processed = current - self.resume_from
        elapsed = self._clock() - start_time
        if processed <= 0 or elapsed <= 0:
            return 0.0
        return processed / elapsed

    def eta(self, current, start_time, total):
        """Estimated time to ``total``; N/A until this run has made progress."""
        if current <= self.resume_from or current >= total:
            return NOT_AVAILABLE
        rate = self.speed(current, start_time)
        if rate <= 0:
            return NOT_AVAILABLE
        return format_duration((total - current) / rate)

    def quota_summary(self, stats):
        last = stats.last_budget or {}
        return {
            "quotaUsed": stats.quota_used,
            "quotaRemaining": last.get("remaining"),
            "quotaResetAt": last.get("resetAt"),
            "quotaWaits": stats.quota_waits,
        }

    def start(self, total, initial=0, desc="Pulling pages", unit="page"):
        self._bar = tqdm(total=total, initial=initial, desc=desc, unit=unit, disable=not self.show_progress)
        return self._bar

    def update(self, current, start_time, total, info=None):
        if self._bar is None:
            return
        delta = current - self._bar.n
        if delta > 0:
            self._bar.update(delta)
        postfix = {
            "speed": f"{self.speed(current, start_time):.1f}/s",
            "eta": self.eta(current, start_time, total),
        }
        if info:
            postfix["page"] = info[:25]
        self._bar.set_postfix(postfix, refresh=False)

    def close(self):
        if self._bar is not None:
            self._bar.close()
            self._bar = None

    def log_snapshot(self, current, counts, stats):
        elapsed_minutes = (self._clock() - stats.start_time) / 60 if stats.start_time else 0
        processed = current - self.resume_from
        rate = processed / elapsed_minutes if elapsed_minutes > 0 else 0.0
        remaining = (stats.last_budget or {}).get("remaining")
        logger.info(
            "[*] Progress %s (this run %s, %.1f pages/min) votes=%s revisions=%s quota_remaining=%s",
            current,
            processed,
            rate,
            counts.get("votes", 0),
            counts.get("revisions", 0),
            remaining if remaining is not None else NOT_AVAILABLE,
        )

    def build_report(self, stats, record_counts, state, dedup_stats=None, error=None):
        start = stats.start_time if stats.start_time is not None else self._clock()
        end = stats.end_time if stats.end_time is not None else self._clock()
        duration_seconds = max(end - start, 0.0)
        new_pages = max(stats.pages_processed - stats.resume_from, 0)
        hours = duration_seconds / 3600
        report = {
            "state": state,
            "duration": f"{hours:.2f} hours",
            "durationSeconds": round(duration_seconds, 3),
            "resumeFrom": stats.resume_from,
            "pagesProcessed": stats.pages_processed,
            "newPagesProcessed": new_pages,
            "usersProcessed": stats.users_processed,
            "batchesCompleted": stats.batches_completed,
            "avgSpeed": f"{(new_pages / hours) if hours > 0 else 0.0:.1f} pages/hour",
            "checkpointsWritten": stats.checkpoints_written,
            "errors": list(stats.errors),
            "errorsByType": dict(stats.errors_by_type),
            "recordCounts": dict(record_counts),
        }
        report.update(self.quota_summary(stats))
        if dedup_stats is not None:
            report["dedup"] = dedup_stats
        if error is not None:
            report["fatalError"] = str(error)
        return report
