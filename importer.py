"""
Spreadsheet import: maps workbook rows onto catalog fields by position.
"""

from __future__ import annotations
import io
import logging
import zipfile
from typing import Any, Iterable, Sequence

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from errors import ValidationError

logger = logging.getLogger(__name__)

# Name, Brand, Type, Stock, OriginalPrice, SalePrice, Image, Material
COLUMNS = ["name", "brand", "type", "stock", "originalPrice", "salePrice", "imageUrl", "material"]


def row_to_fields(row: Sequence[Any]) -> dict[str, Any]:
    cells = list(row)[: len(COLUMNS)]
    cells += [None] * (len(COLUMNS) - len(cells))
    return {
        column: value.strip() if isinstance(value, str) else value
        for column, value in zip(COLUMNS, cells)
    }


def map_rows(rows: Iterable[Sequence[Any]], first_row: int = 2) -> list[tuple[int, dict[str, Any]]]:
    """Pair every non-empty row with its 1-based sheet row number."""
    mapped = []
    for number, row in enumerate(rows, start=first_row):
        if all(cell is None or (isinstance(cell, str) and not cell.strip()) for cell in row):
            continue
        mapped.append((number, row_to_fields(row)))
    return mapped


def read_workbook(data: bytes) -> list[tuple[int, dict[str, Any]]]:
    """Rows of the first sheet, header row skipped."""
    try:
        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
        logger.warning(f"Rejected import file: {e}")
        raise ValidationError("File is not a valid .xlsx workbook", field="file") from None
    try:
        sheet = workbook.worksheets[0]
        rows = map_rows(sheet.iter_rows(min_row=2, values_only=True))
    finally:
        workbook.close()
    logger.info(f"Read {len(rows)} rows from workbook")
    return rows
