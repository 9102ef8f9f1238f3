"""Export a change request as a fixed-structure field/value document.

The row labels and their order are consumed downstream and must not change.
"""

import csv
import io
from dataclasses import dataclass

from app.models.change_request import ChangeRequest

DOCUMENT_TITLE = "Change Request Document"
PLACEHOLDER = "N/A"

EXPORT_FIELDS: tuple[tuple[str, str], ...] = (
    ("Title", "title"),
    ("Description", "description"),
    ("Change Type", "change_type"),
    ("Impact Level", "impact_level"),
    ("Expected Downtime", "expected_downtime"),
    ("Rollback Plan", "rollback_plan"),
    ("Status", "status"),
)


@dataclass(frozen=True)
class ExportDocument:
    request_id: str
    title: str
    rows: tuple[tuple[str, str], ...]

    @property
    def filename_stem(self) -> str:
        return f"change-request-{self.request_id}"


def _cell(value) -> str:
    if value is None:
        return PLACEHOLDER
    text = str(value).strip()
    return text or PLACEHOLDER


def render(change_request: ChangeRequest) -> ExportDocument:
    rows = tuple((label, _cell(getattr(change_request, attr, None))) for label, attr in EXPORT_FIELDS)
    return ExportDocument(request_id=change_request.id, title=DOCUMENT_TITLE, rows=rows)


def to_csv(document: ExportDocument) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["Field", "Value"])
    writer.writerows(document.rows)
    return buffer.getvalue()


def to_xlsx(document: ExportDocument) -> bytes:
    from openpyxl import Workbook
    from openpyxl.styles import Font

    wb = Workbook()
    ws = wb.active
    ws.title = "Change Request"
    ws.append([document.title])
    ws["A1"].font = Font(bold=True, size=14)
    ws.append([])
    for label, value in document.rows:
        ws.append([label, value])
        ws.cell(row=ws.max_row, column=1).font = Font(bold=True)
    ws.column_dimensions["A"].width = 22
    ws.column_dimensions["B"].width = 80

    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def to_docx(document: ExportDocument) -> bytes:
    """Word document: a title paragraph followed by a two-column field table."""
    from docx import Document

    doc = Document()
    doc.add_heading(document.title, level=0)
    table = doc.add_table(rows=0, cols=2)
    table.style = "Table Grid"
    for label, value in document.rows:
        cells = table.add_row().cells
        cells[0].text = label
        cells[1].text = value

    buffer = io.BytesIO()
    doc.save(buffer)
    return buffer.getvalue()


EXPORT_FORMATS = {
    "docx": (
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        to_docx,
    ),
    "csv": ("text/csv; charset=utf-8", lambda doc: to_csv(doc).encode("utf-8")),
    "xlsx": (
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        to_xlsx,
    ),
}
