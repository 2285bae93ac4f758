from datetime import datetime
from pathlib import Path

from openpyxl import load_workbook
from openpyxl.utils.exceptions import IllegalCharacterError
import pytest
from sqlalchemy import select

from credcheck.db_models import BatchRun, CheckResult, CredentialRecord
from credcheck.export import STATUS_FILLS, OutcomeExport
from credcheck.run_store import create_batch_run
from credcheck.schemas import ExportRow, Outcome
from credcheck.sink import ResultSink


CHECKED_AT = datetime(2026, 3, 2, 9, 30)


@pytest.fixture()
def sink_factory(session_factory, seed, temp_workspace: Path):
    seed([{"id": 1, "organization_name": "Alpha Traders Ltd", "identifier": "P051111111A", "secret": "pw"}])
    db = session_factory()
    run = create_batch_run(db, portal="KRA", trigger_source="manual", total_records=1)

    def _make(export_path: Path | None = None) -> ResultSink:
        path = export_path or temp_workspace / "outputs" / "export.xlsx"
        return ResultSink(db, batch_run_id=run.id, export=OutcomeExport(path))

    yield _make
    db.close()


def snapshot(session_factory) -> tuple:
    with session_factory() as db:
        record = db.get(CredentialRecord, 1)
        results = db.execute(select(CheckResult)).scalars().all()
        return (
            record.last_status,
            record.last_checked_at,
            [(row.batch_run_id, row.credential_id, row.outcome, row.checked_at) for row in results],
        )


def test_record_is_idempotent(sink_factory, session_factory) -> None:
    sink = sink_factory()

    assert sink.record(1, Outcome.LOCKED, CHECKED_AT) is True
    once = snapshot(session_factory)
    assert sink.record(1, Outcome.LOCKED, CHECKED_AT) is True
    twice = snapshot(session_factory)

    assert once == twice
    assert once[0] == "Locked"
    assert len(once[2]) == 1


def test_record_overwrites_previous_outcome_for_same_batch(sink_factory, session_factory) -> None:
    sink = sink_factory()

    sink.record(1, Outcome.ERROR, CHECKED_AT)
    sink.record(1, Outcome.VALID, datetime(2026, 3, 2, 9, 45))

    status, checked_at, results = snapshot(session_factory)
    assert status == "Valid"
    assert checked_at == datetime(2026, 3, 2, 9, 45)
    assert [row[2] for row in results] == ["Valid"]


def test_record_unknown_credential_returns_false(sink_factory) -> None:
    sink = sink_factory()

    assert sink.record(404, Outcome.VALID, CHECKED_AT) is False
    # The session is still usable afterwards.
    assert sink.record(1, Outcome.VALID, CHECKED_AT) is True


def test_append_writes_highlighted_rows(sink_factory, temp_workspace: Path) -> None:
    sink = sink_factory()

    assert sink.append(ExportRow("Alpha Traders Ltd", "P051111111A", "pw", Outcome.VALID)) is True
    assert sink.append(ExportRow("Beta Holdings Ltd", None, None, Outcome.BOTH_MISSING)) is True

    sheet = load_workbook(temp_workspace / "outputs" / "export.xlsx").active
    assert [cell.value for cell in sheet[1]] == ["Organization", "Identifier", "Secret", "Status"]
    assert sheet.cell(row=2, column=4).value == "Valid"
    assert sheet.cell(row=3, column=1).value == "Beta Holdings Ltd"
    assert sheet.cell(row=3, column=4).value == "Pin and Password Missing"
    assert sheet.cell(row=2, column=4).fill.start_color.rgb.endswith(STATUS_FILLS[Outcome.VALID])


def test_append_failure_is_reported_not_raised(sink_factory, temp_workspace: Path) -> None:
    blocker = temp_workspace / "not-a-dir"
    blocker.write_text("occupied", encoding="utf-8")
    sink = sink_factory(blocker / "export.xlsx")

    assert sink.append(ExportRow("Alpha Traders Ltd", "P051111111A", "pw", Outcome.VALID)) is False


def test_record_attempt_is_stored(sink_factory, session_factory) -> None:
    sink = sink_factory()

    assert sink.record_attempt(1, 1, started_at=CHECKED_AT, error="Timeout 10000ms exceeded") is True
    assert sink.record_attempt(1, 1, started_at=CHECKED_AT) is False


class RejectingExport:
    path = Path("rejecting.xlsx")

    def append(self, row: ExportRow) -> None:
        raise IllegalCharacterError(f"{row.organization_name} cannot be used in worksheets.")


def test_append_worksheet_error_is_reported_not_raised(session_factory, seed) -> None:
    seed([{"id": 1, "organization_name": "Alpha Traders Ltd", "identifier": "P051111111A", "secret": "pw"}])
    with session_factory() as db:
        run = create_batch_run(db, portal="KRA", trigger_source="manual", total_records=1)
        sink = ResultSink(db, batch_run_id=run.id, export=RejectingExport())

        assert sink.append(ExportRow("Alpha Traders Ltd", "P051111111A", "pw", Outcome.VALID)) is False


def test_progress_updates_batch_row(sink_factory, session_factory) -> None:
    sink = sink_factory()

    assert sink.progress(1) is True

    with session_factory() as db:
        assert db.execute(select(BatchRun)).scalar_one().processed_records == 1
