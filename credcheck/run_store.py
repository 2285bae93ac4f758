from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from credcheck.db_models import BatchRun, CheckAttempt, CheckResult, CredentialRecord, utc_now
from credcheck.schemas import CredentialData


def to_credential_data(record: CredentialRecord) -> CredentialData:
    return CredentialData(
        id=record.id,
        organization_name=record.organization_name,
        identifier=record.identifier,
        secret=record.secret,
        last_status=record.last_status,
        last_checked_at=record.last_checked_at,
    )


def list_credentials(
    db: Session,
    *,
    selected_ids: list[int] | None = None,
    only_unchecked: bool = False,
) -> list[CredentialData]:
    stmt = select(CredentialRecord).order_by(CredentialRecord.id)
    # An empty selection means every record.
    if selected_ids:
        stmt = stmt.where(CredentialRecord.id.in_(selected_ids))
    if only_unchecked:
        stmt = stmt.where(CredentialRecord.last_status.is_(None))
    return [to_credential_data(record) for record in db.execute(stmt).scalars().all()]


def add_credentials(db: Session, rows: list[dict[str, object]]) -> int:
    added = 0
    for row in rows:
        record_id = row.get("id")
        existing = db.get(CredentialRecord, int(record_id)) if record_id is not None else None
        record = existing or CredentialRecord()
        if record_id is not None:
            record.id = int(record_id)
        record.organization_name = str(row.get("organization_name", "")).strip()
        record.identifier = _optional_text(row.get("identifier"))
        record.secret = _optional_text(row.get("secret"))
        if existing is None:
            db.add(record)
            added += 1
    db.commit()
    return added


def _optional_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def update_credential_status(db: Session, *, credential_id: int, status: str, checked_at: datetime) -> None:
    record = db.get(CredentialRecord, credential_id)
    if record is None:
        raise LookupError(f"credential {credential_id} not found")
    record.last_status = status
    record.last_checked_at = checked_at
    db.commit()


def upsert_check_result(
    db: Session,
    *,
    batch_run_id: int,
    credential_id: int,
    outcome: str,
    checked_at: datetime,
) -> None:
    stmt = select(CheckResult).where(
        CheckResult.batch_run_id == batch_run_id,
        CheckResult.credential_id == credential_id,
    )
    result = db.execute(stmt).scalar_one_or_none()
    if result is None:
        db.add(
            CheckResult(
                batch_run_id=batch_run_id,
                credential_id=credential_id,
                outcome=outcome,
                checked_at=checked_at,
            )
        )
    else:
        result.outcome = outcome
        result.checked_at = checked_at
    db.commit()


def create_batch_run(db: Session, *, portal: str, trigger_source: str, total_records: int) -> BatchRun:
    run = BatchRun(
        portal=portal,
        trigger_source=trigger_source,
        status="running",
        started_at=utc_now(),
        total_records=total_records,
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def mark_batch_progress(db: Session, *, batch_run_id: int, processed_records: int) -> None:
    run = db.get(BatchRun, batch_run_id)
    if run is None:
        raise LookupError(f"batch run {batch_run_id} not found")
    run.processed_records = processed_records
    db.commit()


def finish_batch_run(
    db: Session,
    run: BatchRun,
    *,
    status: str,
    processed_records: int,
    export_path: str | None,
    error: str | None = None,
) -> None:
    run.status = status
    run.processed_records = processed_records
    run.export_path = export_path
    run.error = error
    run.completed_at = utc_now()
    db.commit()


def record_check_attempt(
    db: Session,
    *,
    batch_run_id: int,
    credential_id: int,
    attempt: int,
    started_at: datetime,
    error: str | None,
) -> CheckAttempt:
    finished_at = utc_now()
    row = CheckAttempt(
        batch_run_id=batch_run_id,
        credential_id=credential_id,
        attempt=attempt,
        status="failed" if error else "succeeded",
        started_at=started_at,
        completed_at=finished_at,
        duration_ms=(finished_at - started_at).total_seconds() * 1000,
        error=error,
    )
    db.add(row)
    db.commit()
    return row
