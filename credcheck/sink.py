from datetime import datetime
import logging

from openpyxl.utils.exceptions import IllegalCharacterError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from credcheck.export import OutcomeExport
from credcheck.run_store import (
    mark_batch_progress,
    record_check_attempt,
    update_credential_status,
    upsert_check_result,
)
from credcheck.schemas import ExportRow, Outcome


logger = logging.getLogger(__name__)


class ResultSink:
    def __init__(self, db: Session, *, batch_run_id: int, export: OutcomeExport) -> None:
        self.db = db
        self.batch_run_id = batch_run_id
        self.export = export

    def record(self, credential_id: int, outcome: Outcome, timestamp: datetime) -> bool:
        try:
            update_credential_status(self.db, credential_id=credential_id, status=outcome.value, checked_at=timestamp)
            upsert_check_result(
                self.db,
                batch_run_id=self.batch_run_id,
                credential_id=credential_id,
                outcome=outcome.value,
                checked_at=timestamp,
            )
        except (SQLAlchemyError, LookupError):
            self.db.rollback()
            logger.exception(
                "failed to persist outcome",
                extra={"batch_run_id": self.batch_run_id, "credential_id": credential_id, "outcome": outcome.value},
            )
            return False
        return True

    def append(self, row: ExportRow) -> bool:
        try:
            self.export.append(row)
        except (OSError, ValueError, IllegalCharacterError):
            logger.exception(
                "failed to write export row",
                extra={"batch_run_id": self.batch_run_id, "export_path": str(self.export.path)},
            )
            return False
        return True

    def progress(self, processed_records: int) -> bool:
        try:
            mark_batch_progress(self.db, batch_run_id=self.batch_run_id, processed_records=processed_records)
        except (SQLAlchemyError, LookupError):
            self.db.rollback()
            logger.exception(
                "failed to persist batch progress",
                extra={"batch_run_id": self.batch_run_id, "processed_records": processed_records},
            )
            return False
        return True

    def record_attempt(
        self,
        credential_id: int,
        attempt: int,
        *,
        started_at: datetime,
        error: str | None = None,
    ) -> bool:
        try:
            record_check_attempt(
                self.db,
                batch_run_id=self.batch_run_id,
                credential_id=credential_id,
                attempt=attempt,
                started_at=started_at,
                error=error,
            )
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(
                "failed to persist check attempt",
                extra={"batch_run_id": self.batch_run_id, "credential_id": credential_id, "attempt": attempt},
            )
            return False
        return True
