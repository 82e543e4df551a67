from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from .errors import (
    EXIT_RATE_LIMITED,
    DltrackError,
    NotFoundError,
    ParseError,
    TransientNetworkError,
    exit_code_for,
)
from .fetcher import BatchFetcher, BatchResult
from .models import validate_match
from .sources import MatchIdSource
from .store import MatchWriteResult, Store


logger = logging.getLogger(__name__)


class RunState(str, Enum):
    START = "start"
    RESOLVING = "resolving"
    FETCHING = "fetching"
    PERSISTING = "persisting"
    VALIDATING = "validating"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class RunOptions:
    batch_size: int = 100
    dry_run: bool = False
    max_consecutive_failures: int = 3

    @classmethod
    def from_config(cls, cfg: Dict[str, Any], **overrides: Any) -> "RunOptions":
        ing = cfg.get("ingest", {}) or {}
        opts = cls(
            batch_size=int(ing.get("batch_size", cls.batch_size)),
            max_consecutive_failures=int(ing.get("max_consecutive_failures", cls.max_consecutive_failures)),
        )
        for k, v in overrides.items():
            if v is not None:
                setattr(opts, k, v)
        return opts


@dataclass
class BatchFailure:
    match_ids: List[int]
    reason: str


@dataclass
class RunReport:
    label: str = ""
    dry_run: bool = False
    states: List[RunState] = field(default_factory=list)
    account_id: Optional[int] = None
    batches: int = 0
    matches_written: int = 0
    matches_already_stored: int = 0
    participants_written: int = 0
    players_created: int = 0
    matches_validated: int = 0
    skipped_existing: int = 0
    not_found: List[int] = field(default_factory=list)
    unresolved: Optional[str] = None
    failed_batches: List[BatchFailure] = field(default_factory=list)
    cancelled: bool = False
    error: Optional[DltrackError] = None

    @property
    def state(self) -> RunState:
        return self.states[-1] if self.states else RunState.START

    @property
    def exit_code(self) -> int:
        return exit_code_for(self.error)

    @property
    def ok(self) -> bool:
        return self.error is None


class IngestionCoordinator:
    """Runs one bounded ingestion: source -> fetcher -> store.

    Chunks are handled strictly one after the other. Fatal errors, store
    failures included, move the run to ``ABORTED``; per-batch problems are
    recorded in the report and the next chunk proceeds. A dry run passes
    through ``VALIDATING`` where a real run is ``PERSISTING``.
    """

    def __init__(
        self,
        store: Store,
        source: MatchIdSource,
        fetcher: BatchFetcher,
        options: Optional[RunOptions] = None,
        should_stop: Optional[Callable[[], bool]] = None,
        label: str = "",
    ) -> None:
        self.store = store
        self.source = source
        self.fetcher = fetcher
        self.options = options or RunOptions()
        self.should_stop = should_stop or (lambda: False)
        self.label = label

    def _enter(self, report: RunReport, state: RunState) -> None:
        report.states.append(state)
        logger.debug("%s -> %s", self.label or "run", state.value)

    def run(self) -> RunReport:
        report = RunReport(label=self.label, dry_run=self.options.dry_run)
        self._enter(report, RunState.START)
        consecutive_failures = 0
        try:
            if self.source.needs_resolution:
                self._enter(report, RunState.RESOLVING)
                try:
                    report.account_id = self.source.resolve()
                except NotFoundError as e:
                    logger.warning("skipping %s: %s", self.source.player, e)
                    report.unresolved = self.source.player
                    self._enter(report, RunState.DONE)
                    return report
            for chunk in self.source.chunks(self.options.batch_size):
                if self.should_stop():
                    logger.info("stop requested; ending before next chunk")
                    report.cancelled = True
                    break
                self._enter(report, RunState.FETCHING)
                result = self._fetch(chunk, report)
                if result is None:
                    consecutive_failures += 1
                    if consecutive_failures >= self.options.max_consecutive_failures:
                        raise TransientNetworkError(
                            f"{consecutive_failures} consecutive batches failed; giving up"
                        )
                    continue
                consecutive_failures = 0
                if not result.matches:
                    continue
                self._enter(report, RunState.VALIDATING if self.options.dry_run else RunState.PERSISTING)
                self._persist(result, report)
            if not self.options.dry_run and report.matches_written:
                self.store.set_meta("last_ingest_at", datetime.now(timezone.utc).isoformat())
        except DltrackError as e:
            report.error = e
            report.skipped_existing = self.source.skipped_existing
            self._enter(report, RunState.ABORTED)
            logger.error("run aborted: %s", e)
            return report
        report.skipped_existing = self.source.skipped_existing
        self._enter(report, RunState.DONE)
        return report

    def _fetch(self, chunk: Sequence[int], report: RunReport) -> Optional[BatchResult]:
        """Fetch one chunk; ``None`` when it failed transiently."""
        report.batches += 1
        try:
            result = self.fetcher.fetch(chunk)
        except ParseError as e:
            logger.warning("dropping batch of %s ids: %s", len(chunk), e)
            report.failed_batches.append(BatchFailure(list(chunk), f"parse error: {e}"))
            return BatchResult(requested=list(chunk))
        except TransientNetworkError as e:
            logger.warning("batch of %s ids failed: %s", len(chunk), e)
            report.failed_batches.append(BatchFailure(list(chunk), f"network: {e}"))
            return None
        report.not_found.extend(result.not_found)
        # invalid records drop the whole batch, like a malformed payload
        try:
            for rec in result.matches:
                validate_match(rec)
        except ParseError as e:
            logger.warning("dropping batch of %s ids: %s", len(chunk), e)
            report.failed_batches.append(BatchFailure(list(chunk), f"invalid record: {e}"))
            result.matches = []
        return result

    def _persist(self, result: BatchResult, report: RunReport) -> None:
        if self.options.dry_run:
            report.matches_validated += len(result.matches)
            logger.info("dry-run: %s matches validated, nothing written", len(result.matches))
            return
        res: MatchWriteResult = self.store.write_matches(result.matches)
        report.matches_written += res.matches_inserted
        report.matches_already_stored += res.matches_existing
        report.participants_written += res.participants_inserted
        report.players_created += res.players_created
        logger.info(
            "batch: matches=%s existing=%s participants=%s",
            res.matches_inserted,
            res.matches_existing,
            res.participants_inserted,
        )


def ingest_concurrently(
    jobs: Sequence[Callable[[], RunReport]],
    max_workers: int = 4,
) -> List[RunReport]:
    """Run independent per-player pipelines side by side.

    Each job must build its own source, fetcher and backoff state.
    """
    if len(jobs) <= 1 or max_workers <= 1:
        return [job() for job in jobs]
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dltrack-ingest") as pool:
        futures = [pool.submit(job) for job in jobs]
        return [f.result() for f in futures]


def combined_exit_code(reports: Sequence[RunReport]) -> int:
    codes = [r.exit_code for r in reports]
    if EXIT_RATE_LIMITED in codes:
        return EXIT_RATE_LIMITED
    return max(codes, default=0)
