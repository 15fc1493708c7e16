"""
excel_export.py — product list as an .xlsx workbook (openpyxl).

One sheet, Chinese headers, fixed column widths.  Returned as bytes so the
web handler can stream it without touching disk.  Dates are UTC, matching
the serial numbers.
"""
from __future__ import annotations

import io
from datetime import date, datetime, timezone
from typing import Optional, Sequence

from openpyxl import Workbook
from openpyxl.utils import get_column_letter

from product_store import ProductRecord

SHEET_TITLE = "产品列表"
XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

# (header, column width in characters)
COLUMNS: list[tuple[str, int]] = [
    ("序号",       8),
    ("产品序列号", 15),
    ("产品名称",   25),
    ("品牌",       15),
    ("价格",       12),
    ("条形码",     18),
    ("描述",       30),
    ("图片数量",   10),
    ("创建时间",   20),
]


def _format_created(record: ProductRecord) -> str:
    if not record.created_at:
        return ""
    return record.created_datetime.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def product_row(index: int, record: ProductRecord) -> list:
    return [
        index,
        record.serial_number,
        record.name,
        record.brand,
        record.price,
        record.barcode,
        record.description,
        len(record.image_paths),
        _format_created(record),
    ]


def build_workbook(records: Sequence[ProductRecord]) -> Workbook:
    wb = Workbook()
    ws = wb.active
    ws.title = SHEET_TITLE

    ws.append([header for header, _ in COLUMNS])
    for index, record in enumerate(records, start=1):
        ws.append(product_row(index, record))
        # openpyxl stores any "=..." string as a formula; product text is data.
        for cell in ws[ws.max_row]:
            if isinstance(cell.value, str):
                cell.data_type = "s"

    for col, (_, width) in enumerate(COLUMNS, start=1):
        ws.column_dimensions[get_column_letter(col)].width = width
    return wb


def export_products(records: Sequence[ProductRecord]) -> bytes:
    buffer = io.BytesIO()
    build_workbook(records).save(buffer)
    return buffer.getvalue()


def export_filename(day: Optional[date] = None) -> str:
    day = day or datetime.now(timezone.utc).date()
    return f"{SHEET_TITLE}_{day.isoformat()}.xlsx"
