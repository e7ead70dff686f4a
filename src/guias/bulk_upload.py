"""Create users in bulk from an Excel workbook."""

import io
import logging
import os
import zipfile
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

import xlrd
from email_validator import EmailNotValidError, validate_email
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from . import services
from .errors import InvalidInputError, ServiceError

logger = logging.getLogger(__name__)

REQUIRED_HEADERS = ("username", "password", "email", "names", "surnames", "role")
EXCEL_EXTENSIONS = (".xlsx", ".xls")


@dataclass
class BulkUploadResult:
    total_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    errors: List[str] = field(default_factory=list)

    def fail(self, row_number: int, reason: str) -> None:
        self.failed_records += 1
        self.errors.append(f"Row {row_number}: {reason}")


def cell_text(value) -> str:
    """String form of a cell; whole floats lose their ``.0``."""
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def is_row_empty(row: Sequence) -> bool:
    return all(cell_text(value) == "" for value in row)


def read_rows(content: bytes, filename: str) -> List[Sequence]:
    """All rows of the first sheet as value tuples."""
    extension = os.path.splitext(filename or "")[1].lower()
    if extension not in EXCEL_EXTENSIONS:
        raise InvalidInputError("The file must be an Excel workbook (.xlsx or .xls)")
    if not content:
        raise InvalidInputError("No file was provided")

    try:
        if extension == ".xlsx":
            workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
            try:
                return [tuple(row) for row in workbook.worksheets[0].iter_rows(values_only=True)]
            finally:
                workbook.close()
        book = xlrd.open_workbook(file_contents=content)
        sheet = book.sheet_by_index(0)
        return [tuple(sheet.row_values(index)) for index in range(sheet.nrows)]
    except (InvalidFileException, zipfile.BadZipFile, xlrd.XLRDError, KeyError, IndexError) as exc:
        logger.warning("unreadable workbook %s: %s", filename, exc)
        raise InvalidInputError("The Excel file could not be read") from exc


def header_indexes(header: Sequence) -> Optional[Dict[str, int]]:
    indexes = {}
    for position, value in enumerate(header):
        name = cell_text(value).lower()
        if name in REQUIRED_HEADERS:
            indexes.setdefault(name, position)
    if all(name in indexes for name in REQUIRED_HEADERS):
        return indexes
    return None


def _row_record(row: Sequence, indexes: Dict[str, int]) -> Dict[str, str]:
    return {name: cell_text(row[pos]) if pos < len(row) else "" for name, pos in indexes.items()}


def _row_error(record: Dict[str, str]) -> Optional[str]:
    for name in ("username", "password", "email", "role"):
        if not record[name]:
            return f"{name} is required"
    try:
        validate_email(record["email"], check_deliverability=False)
    except EmailNotValidError:
        return f"Email {record['email']} is not valid"
    return None


def import_rows(rows: Iterable[Sequence], result: Optional[BulkUploadResult] = None) -> BulkUploadResult:
    """Validate and create one user per non-empty data row."""
    rows = list(rows)
    result = result or BulkUploadResult()
    if len(rows) < 2:
        raise InvalidInputError("The file is empty or has no data rows")

    indexes = header_indexes(rows[0])
    if indexes is None:
        raise InvalidInputError(
            "The file must contain the headers: " + ", ".join(REQUIRED_HEADERS)
        )

    for offset, row in enumerate(rows[1:], start=2):
        if is_row_empty(row):
            continue
        result.total_records += 1
        record = _row_record(row, indexes)

        error = _row_error(record)
        if error is not None:
            result.fail(offset, error)
            continue

        try:
            services.create_user(
                username=record["username"],
                password=record["password"],
                email=record["email"],
                first_names=record["names"],
                last_names=record["surnames"],
                role=record["role"],
            )
        except ServiceError as exc:
            result.fail(offset, exc.message)
            continue
        result.successful_records += 1

    logger.info(
        "bulk upload finished total=%d ok=%d failed=%d",
        result.total_records,
        result.successful_records,
        result.failed_records,
    )
    return result


def import_workbook(content: bytes, filename: str) -> BulkUploadResult:
    return import_rows(read_rows(content, filename))
