from pathlib import Path

from openpyxl import Workbook
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.styles import Alignment, Font, PatternFill

from credcheck.schemas import ExportRow, Outcome


HEADERS = ["Organization", "Identifier", "Secret", "Status"]
COLUMN_WIDTHS = {"A": 40, "B": 16, "C": 20, "D": 26}
STATUS_COLUMN = 4

STATUS_FILLS = {
    Outcome.VALID: "B6FBC0",
    Outcome.INVALID: "F56B00",
    Outcome.PASSWORD_EXPIRED: "FF0000",
    Outcome.LOCKED: "FFE066",
    Outcome.ERROR: "FF0000",
    Outcome.IDENTIFIER_MISSING: "FFE066",
    Outcome.SECRET_MISSING: "FFE066",
    Outcome.BOTH_MISSING: "FFE066",
}


def _cell_text(value: str | None) -> str | None:
    # Worksheets reject control characters such as vertical tabs from pasted names.
    return ILLEGAL_CHARACTERS_RE.sub("", value) if isinstance(value, str) else value


def export_filename(portal: str, run_label: str) -> str:
    return f"PASSWORD VALIDATION - {portal} - {run_label}.xlsx"


class OutcomeExport:
    def __init__(self, path: Path, *, sheet_title: str = "Password Validation") -> None:
        self.path = path
        self.workbook = Workbook()
        self.sheet = self.workbook.active
        self.sheet.title = sheet_title
        self.sheet.append(HEADERS)
        for cell in self.sheet[1]:
            cell.font = Font(bold=True)
            cell.alignment = Alignment(horizontal="center", vertical="center")
        for column, width in COLUMN_WIDTHS.items():
            self.sheet.column_dimensions[column].width = width
        self.sheet.freeze_panes = "A2"

    def append(self, row: ExportRow) -> None:
        values = [row.organization_name, row.identifier, row.secret, row.outcome.value]
        self.sheet.append([_cell_text(value) for value in values])
        color = STATUS_FILLS.get(row.outcome)
        if color:
            status_cell = self.sheet.cell(row=self.sheet.max_row, column=STATUS_COLUMN)
            status_cell.fill = PatternFill(start_color=color, end_color=color, fill_type="solid")
        self.save()

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.workbook.save(self.path)
