from collections.abc import Callable
from datetime import date
import logging
from pathlib import Path
import threading
from typing import Protocol

from sqlalchemy.orm import Session, sessionmaker

from credcheck.config import Settings
from credcheck.db_models import utc_now
from credcheck.export import OutcomeExport, export_filename
from credcheck.portal import KRA_ITAX, RETRYABLE_ERRORS, PortalChecker, PortalProfile
from credcheck.retry import RetryExhaustedError, run_with_retries
from credcheck.run_store import create_batch_run, finish_batch_run, list_credentials
from credcheck.schemas import (
    BatchResult,
    CredentialData,
    ExportRow,
    Outcome,
    Progress,
    ProgressEntry,
    RunOptions,
)
from credcheck.sink import ResultSink


logger = logging.getLogger(__name__)


class BatchAlreadyRunning(RuntimeError):
    pass


class CredentialChecker(Protocol):
    def check(self, credential: CredentialData) -> Outcome: ...

    def close(self) -> None: ...


def missing_field_outcome(credential: CredentialData) -> Outcome | None:
    if not credential.has_identifier and not credential.has_secret:
        return Outcome.BOTH_MISSING
    if not credential.has_identifier:
        return Outcome.IDENTIFIER_MISSING
    if not credential.has_secret:
        return Outcome.SECRET_MISSING
    return None


class RunState:
    """Progress of the batch in flight, shared with the control surface."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.is_running = False
        self.cancel_requested = False
        self.processed_count = 0
        self.total_count = 0
        self.current_record_id: int | None = None
        self.entries: list[ProgressEntry] = []

    def begin(self) -> None:
        with self._lock:
            if self.is_running:
                raise BatchAlreadyRunning("a batch is already running")
            self.is_running = True
            self.cancel_requested = False
            self.processed_count = 0
            self.total_count = 0
            self.current_record_id = None
            self.entries = []

    def set_total(self, total_count: int) -> None:
        with self._lock:
            self.total_count = total_count

    def set_current(self, record_id: int) -> None:
        with self._lock:
            self.current_record_id = record_id

    def record(self, entry: ProgressEntry) -> None:
        with self._lock:
            self.entries.append(entry)
            self.processed_count += 1
            self.current_record_id = None

    def request_cancel(self) -> bool:
        with self._lock:
            if not self.is_running:
                return False
            self.cancel_requested = True
            return True

    def should_stop(self) -> bool:
        with self._lock:
            return self.cancel_requested

    def finish(self) -> None:
        # Counts and entries stay readable until the next batch begins.
        with self._lock:
            self.is_running = False
            self.cancel_requested = False
            self.current_record_id = None

    def snapshot(self) -> Progress:
        with self._lock:
            return Progress(
                processed_count=self.processed_count,
                total_count=self.total_count,
                is_running=self.is_running,
                current_record_id=self.current_record_id,
                entries=tuple(self.entries),
            )


class BatchRunner:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        profile: PortalProfile = KRA_ITAX,
        checker_factory: Callable[[], CredentialChecker] | None = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.profile = profile
        self.checker_factory = checker_factory or (lambda: PortalChecker(settings, profile))
        self.state = RunState()

    def request_stop(self) -> bool:
        return self.state.request_cancel()

    def progress(self) -> Progress:
        return self.state.snapshot()

    def run(self, records: list[CredentialData] | None = None, options: RunOptions | None = None) -> BatchResult:
        options = options or RunOptions()
        self.state.begin()
        try:
            return self._run(records, options)
        finally:
            self.state.finish()

    def _run(self, records: list[CredentialData] | None, options: RunOptions) -> BatchResult:
        with self.session_factory() as db:
            if records is None:
                records = list_credentials(
                    db,
                    selected_ids=options.selected_ids,
                    only_unchecked=options.only_unchecked,
                )
            elif options.selected_ids:
                wanted = set(options.selected_ids)
                records = [record for record in records if record.id in wanted]

            self.state.set_total(len(records))
            run = create_batch_run(
                db,
                portal=self.profile.name,
                trigger_source=options.trigger_source,
                total_records=len(records),
            )
            export_path = Path(self.settings.output_dir) / export_filename(
                self.profile.name, f"{date.today():%d.%m.%Y}-{run.id}"
            )
            sink = ResultSink(db, batch_run_id=run.id, export=OutcomeExport(export_path))
            logger.info(
                "batch started",
                extra={"batch_run_id": run.id, "portal": self.profile.name, "total_records": len(records)},
            )

            outcomes: list[tuple[int, Outcome]] = []
            stopped = False
            checker = self.checker_factory()
            try:
                for record in records:
                    if self.state.should_stop():
                        stopped = True
                        logger.info(
                            "batch stopped on request",
                            extra={"batch_run_id": run.id, "processed_records": len(outcomes)},
                        )
                        break

                    self.state.set_current(record.id)
                    outcome = self._process(record, checker, sink)
                    checked_at = utc_now()
                    sink.record(record.id, outcome, checked_at)
                    sink.append(ExportRow(record.organization_name, record.identifier, record.secret, outcome))
                    outcomes.append((record.id, outcome))
                    sink.progress(len(outcomes))
                    self.state.record(
                        ProgressEntry(record.id, record.organization_name, record.identifier, outcome, checked_at)
                    )
            except Exception as exc:
                finish_batch_run(
                    db,
                    run,
                    status="failed",
                    processed_records=len(outcomes),
                    export_path=self._existing(export_path),
                    error=str(exc),
                )
                logger.exception("batch failed", extra={"batch_run_id": run.id})
                raise
            finally:
                checker.close()

            status = "stopped" if stopped else "completed"
            finish_batch_run(
                db,
                run,
                status=status,
                processed_records=len(outcomes),
                export_path=self._existing(export_path),
            )
            logger.info(
                "batch finished",
                extra={"batch_run_id": run.id, "status": status, "processed_records": len(outcomes)},
            )
            return BatchResult(
                batch_run_id=run.id,
                status=status,
                total_records=len(records),
                processed_records=len(outcomes),
                export_path=run.export_path,
                outcomes=outcomes,
            )

    def _process(self, record: CredentialData, checker: CredentialChecker, sink: ResultSink) -> Outcome:
        missing = missing_field_outcome(record)
        if missing is not None:
            logger.info(
                "credential incomplete, portal not contacted",
                extra={"credential_id": record.id, "outcome": missing.value},
            )
            return missing

        def check_once(attempt: int) -> Outcome:
            started_at = utc_now()
            try:
                outcome = checker.check(record)
            except Exception as exc:
                sink.record_attempt(record.id, attempt, started_at=started_at, error=str(exc))
                raise
            sink.record_attempt(record.id, attempt, started_at=started_at)
            return outcome

        try:
            outcome = run_with_retries(
                check_once,
                max_retries=self.settings.max_login_retries,
                backoff_seconds=self.settings.retry_backoff_seconds,
                on_attempt_failure=lambda attempt, exc: logger.warning(
                    "credential check attempt failed",
                    extra={"credential_id": record.id, "attempt": attempt, "reason": str(exc)},
                ),
                should_retry=lambda exc: isinstance(exc, RETRYABLE_ERRORS),
            )
        except RetryExhaustedError as exc:
            logger.error(
                "credential check gave up",
                extra={"credential_id": record.id, "attempts": exc.attempts, "reason": str(exc)},
            )
            return Outcome.ERROR

        logger.info("credential checked", extra={"credential_id": record.id, "outcome": outcome.value})
        return outcome

    @staticmethod
    def _existing(path: Path) -> str | None:
        return str(path) if path.exists() else None
