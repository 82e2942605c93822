"""Main ingestion loop: recover, walk the paginated API, checkpoint, finalize.

One request is in flight at a time. The loop only yields inside the rate
limiter (window gate and quota waits) and inside retry backoff sleeps.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from . import config
from .checkpoint import CheckpointStore
from .config import PullConfig
from .dedup import merge_records
from .errors import FatalPullError, FetchError, MalformedResponseError, QuotaExhausted
from .fetcher import PageBatchFetcher
from .normalizer import RecordCollector, normalize_page, normalize_user
from .output import SQLiteRecordSink, handoff, output_path_for, write_output
from .progress import ProgressReporter, RunStatistics
from .ratelimit import RateLimiter
from .records import count_collections
from .retry import ABORT, WAIT, RetryPolicy

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    RECOVERING = "recovering"
    INGESTING = "ingesting"
    FINALIZING = "finalizing"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class RunState:
    """Everything one run mutates; owned by the driver and never shared."""

    cursor: Optional[str] = None
    progress: int = 0
    batch_number: int = 0
    last_checkpoint_progress: int = 0
    has_next_page: bool = True
    stop_reason: Optional[str] = None
    fatal_error: Optional[Exception] = None
    last_checkpoint_path: Optional[object] = None
    collector: RecordCollector = field(default_factory=RecordCollector)
    stats: RunStatistics = field(default_factory=RunStatistics)


@dataclass
class RunResult:
    state: PipelineState
    records: dict
    report: dict
    output_path: Optional[object] = None
    checkpoint_path: Optional[object] = None
    handoff_counts: Optional[dict] = None
    error: Optional[Exception] = None


def _error_type(exc):
    if isinstance(exc, MalformedResponseError):
        return "malformed"
    if isinstance(exc, FetchError):
        return "transient"
    return type(exc).__name__


class PipelineDriver:
    def __init__(
        self,
        pull_config=None,
        fetcher=None,
        rate_limiter=None,
        retry_policy=None,
        checkpoint_store=None,
        sink=None,
        clock=time.time,
        write_output_file=True,
    ):
        self.config = (pull_config or PullConfig()).validate()
        self.fetcher = fetcher or PageBatchFetcher(endpoint=self.config.endpoint, base_url=self.config.base_url)
        self.rate_limiter = rate_limiter or RateLimiter(
            max_requests_per_second=self.config.max_requests_per_second,
            quota_threshold=self.config.rate_limit_threshold,
        )
        self.retry_policy = retry_policy or RetryPolicy(
            threshold=self.config.retry_threshold,
            window_seconds=self.config.retry_window_seconds,
            backoff_seconds=self.config.retry_backoff_seconds,
            backoff_max=self.config.retry_backoff_max_seconds,
            exponential=self.config.retry_exponential,
            clock=clock,
        )
        self.checkpoints = checkpoint_store or CheckpointStore(
            directory=self.config.checkpoint_dir,
            compress=self.config.checkpoint_compress,
        )
        if sink is None and self.config.sink_db:
            sink = SQLiteRecordSink(self.config.sink_db)
        self.sink = sink
        self.write_output_file = write_output_file
        self._clock = clock
        self._stop_requested = False
        self.state = PipelineState.IDLE
        self.transitions = [PipelineState.IDLE]
        self.reporter = None

    def request_stop(self):
        """Ask the loop to stop after the batch in flight; honoured between batches."""
        if not self._stop_requested:
            logger.warning("[!] Stop requested; finishing current batch before checkpointing.")
        self._stop_requested = True

    @property
    def stop_requested(self):
        return self._stop_requested

    def _transition(self, state):
        logger.info("[*] Pipeline %s -> %s", self.state.value, state.value)
        self.state = state
        self.transitions.append(state)

    def run(self):
        """Run one full ingestion pass and return its RunResult."""
        self._transition(PipelineState.RECOVERING)
        run = self._recover()
        self._transition(PipelineState.INGESTING)
        try:
            self._ingest(run)
            if self.config.include_users and run.fatal_error is None and not self._stop_requested:
                self._pull_users(run)
        except FatalPullError as exc:
            logger.error("[!] Fatal failure, aborting ingestion: %s", exc)
            run.fatal_error = exc
            run.stop_reason = "fatal error"
        except BaseException:
            # Interrupts and unexpected errors still leave a resumable checkpoint behind.
            self._persist_best_effort(run)
            raise
        return self._finalize(run)

    def _recover(self):
        run = RunState()
        recovered = self.checkpoints.recover()
        if recovered is not None:
            run.progress = recovered.progress
            run.cursor = recovered.cursor
            run.last_checkpoint_progress = recovered.progress
            run.last_checkpoint_path = recovered.latest_path
            run.collector.seed(recovered.records)
            logger.info(
                "[*] Resuming at progress %s (%s recovered pages, %s remaining to target).",
                recovered.progress,
                len(recovered.records.get("pages", [])),
                max(self.config.target_pages - recovered.progress, 0),
            )
        else:
            logger.info("[*] No checkpoint found; starting a fresh walk.")
        run.stats.resume_from = run.progress
        run.stats.pages_processed = run.progress
        run.stats.start_time = self._clock()
        self.reporter = ProgressReporter(
            resume_from=run.progress, clock=self._clock, show_progress=self.config.show_progress
        )
        return run

    def _ingest(self, run):
        target = self.config.target_pages
        if run.progress >= target:
            run.stop_reason = "target already reached"
            logger.info("[*] Progress %s already at target %s; skipping page walk.", run.progress, target)
            return
        self.reporter.start(total=target, initial=run.progress)
        while True:
            if run.progress >= target:
                run.stop_reason = "target reached"
                break
            if not run.has_next_page:
                run.stop_reason = "no more pages"
                break
            if self._stop_requested:
                run.stop_reason = "stop requested"
                break

            size = min(self.config.batch_size, target - run.progress)
            batch_number = run.batch_number + 1
            batch = self._request(
                run,
                lambda: self.fetcher.fetch(run.cursor, size, batch_number=batch_number),
                batch_number,
            )
            run.batch_number = batch_number
            if not batch.edges:
                run.has_next_page = False
                run.stop_reason = "empty page"
                break

            self._process_batch(run, batch)
            if run.progress - run.last_checkpoint_progress >= self.config.checkpoint_interval:
                self._persist(run)
        self.reporter.close()
        logger.info(
            "[+] Page walk finished at %s (%s new this run): %s",
            run.progress,
            run.progress - run.stats.resume_from,
            run.stop_reason,
        )

    def _request(self, run, call, batch_number):
        """Issue one request through the gate, retrying per the retry policy."""
        while True:
            if self.rate_limiter.check_quota() > 0:
                run.stats.quota_waits += 1
            self.rate_limiter.gate()
            try:
                response = call()
            except (FetchError, QuotaExhausted) as exc:
                decision = self.retry_policy.record_failure(exc)
                if decision.action == WAIT:
                    run.stats.quota_waits += 1
                    self.rate_limiter.wait_for_reset(exc.budget)
                    continue
                run.stats.record_error(
                    _error_type(exc), exc, batch_number=batch_number, progress=run.progress, cursor=run.cursor
                )
                if decision.action == ABORT:
                    run.stats.record_error(
                        "fatal", decision.reason, batch_number=batch_number, progress=run.progress, cursor=run.cursor
                    )
                    raise FatalPullError(
                        "RETRY_EXHAUSTED",
                        decision.reason,
                        {"batch_number": batch_number, "cursor": run.cursor, "progress": run.progress},
                        cause=exc,
                    ) from exc
                logger.warning(
                    "[!] Batch %s failed (%s/%s in window): %s",
                    batch_number,
                    decision.errors_in_window,
                    self.retry_policy.threshold,
                    exc,
                )
                self.retry_policy.backoff(decision)
                continue

            self.retry_policy.record_success()
            budget = response.budget
            self.rate_limiter.observe(budget)
            if budget is not None:
                run.stats.quota_used += budget.cost
                run.stats.last_budget = budget.to_dict()
            return response

    def _process_batch(self, run, batch):
        target = self.config.target_pages
        consumed = 0
        for edge in batch.edges:
            normalized = normalize_page(edge.node)
            run.collector.add(normalized)
            run.progress += 1
            consumed += 1
            if edge.cursor:
                run.cursor = edge.cursor
            self.reporter.update(run.progress, run.stats.start_time, target, info=normalized.page.title or "")
            if run.progress >= target:
                break
        if consumed == len(batch.edges):
            if batch.next_cursor:
                run.cursor = batch.next_cursor
            run.has_next_page = batch.has_next_page
        run.stats.batches_completed += 1
        run.stats.pages_processed = run.progress

    def _pull_users(self, run):
        batch_number = run.batch_number + 1
        try:
            batch = self._request(run, lambda: self.fetcher.fetch_users(batch_number=batch_number), batch_number)
        except FatalPullError as exc:
            # Pages are already complete; a failed user pull is reported, not fatal.
            logger.error("[!] User pull failed: %s", exc)
            run.stats.record_error("users", exc, batch_number=batch_number, progress=run.progress)
            return
        run.batch_number = batch_number
        users = [normalize_user(node) for node in batch.nodes]
        run.collector.add_users(users)
        run.stats.users_processed = sum(1 for user in users if user is not None)
        logger.info("[+] User pull complete: %s users.", run.stats.users_processed)

    def _persist(self, run):
        delta = run.collector.drain_delta()
        try:
            path = self.checkpoints.persist(
                run.progress, run.cursor, delta, run.collector.counts(), run.stats.snapshot()
            )
        except OSError as exc:
            raise FatalPullError(
                "CHECKPOINT_WRITE_FAILED", f"Could not write checkpoint: {exc}", {"progress": run.progress}, cause=exc
            ) from exc
        run.last_checkpoint_progress = run.progress
        run.last_checkpoint_path = path
        run.stats.checkpoints_written += 1
        self.reporter.log_snapshot(run.progress, run.collector.counts(), run.stats)
        return path

    def _persist_best_effort(self, run):
        try:
            return self._persist(run)
        except FatalPullError as exc:
            logger.error("[!] Final checkpoint could not be written: %s", exc)
            return None

    def _finalize(self, run):
        self._transition(PipelineState.FINALIZING)
        self.reporter.close()
        if run.fatal_error is None:
            try:
                self._persist(run)
            except FatalPullError as exc:
                run.fatal_error = exc
                run.stop_reason = "checkpoint write failed"
        else:
            self._persist_best_effort(run)

        run.stats.end_time = self._clock()
        merged, dedup_stats = merge_records(run.collector.recovered, run.collector.collections)
        final_state = PipelineState.ABORTED if run.fatal_error is not None else PipelineState.DONE
        report = self.reporter.build_report(
            run.stats, count_collections(merged), final_state.value, dedup_stats=dedup_stats, error=run.fatal_error
        )
        report["stopReason"] = run.stop_reason
        report["finalCursor"] = run.cursor

        output_path = None
        if self.write_output_file:
            output_path = write_output(output_path_for(self.config.output_dir), merged, report)

        handoff_counts = None
        if self.sink is not None and final_state == PipelineState.DONE:
            handoff_counts = handoff(self.sink, merged, chunk_size=config.HANDOFF_CHUNK_SIZE)

        self._transition(final_state)
        logger.info(
            "[+] Run %s: pages=%s votes=%s revisions=%s quota_used=%s errors=%s",
            final_state.value,
            report["recordCounts"].get("pages", 0),
            report["recordCounts"].get("votes", 0),
            report["recordCounts"].get("revisions", 0),
            run.stats.quota_used,
            len(run.stats.errors),
        )
        return RunResult(
            state=final_state,
            records=merged,
            report=report,
            output_path=output_path,
            checkpoint_path=run.last_checkpoint_path,
            handoff_counts=handoff_counts,
            error=run.fatal_error,
        )
