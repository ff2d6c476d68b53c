"""
Payout summary spreadsheet for admins.

Creates a 2-tab .xlsx file:
  Tab 1: "Creator Payout Summary": one row per creator (user_id)
  Tab 2: "Payout Records"        : one row per PayoutRecord

File naming: "Payout Summary {YYYY-MM-DD HHMMSS}.xlsx"

Formatting:
  - Bold header rows on all tabs
  - Auto-fit column widths (with min/max constraints)
  - Freeze top row (header) on all tabs
  - Currency format for amount columns ($#,##0.00)
  - Comma-separated number format for view counts (#,##0)
"""

import os
import logging
from datetime import date, datetime
from typing import Optional

from openpyxl import Workbook
from openpyxl.styles import Font, Alignment
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet

import config
from db.models import PayoutRecord
from models.schemas import CreatorTotal, PayoutRecordOut
from services.payout import build_creator_totals

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
MIN_COL_WIDTH = 10      # Minimum column width (characters)
MAX_COL_WIDTH = 50      # Maximum column width (avoid super-wide columns)
HEADER_FONT = Font(bold=True)
CURRENCY_FORMAT = '$#,##0.00'
NUMBER_FORMAT = '#,##0'


# ===========================================================================
# Public API
# ===========================================================================

def generate_payout_report(
    records: list[PayoutRecord],
    output_dir: Optional[str] = None,
    generated_at: Optional[datetime] = None,
) -> str:
    """
    Generate the .xlsx payout summary.

    Args:
        records:      Payout records to include (typically all PENDING ones)
        output_dir:   Directory to save the file (defaults to config.OUTPUT_DIR)
        generated_at: Timestamp used in the filename (defaults to now)

    Returns:
        Absolute file path of the generated .xlsx report.
    """
    if output_dir is None:
        output_dir = config.OUTPUT_DIR
    generated_at = generated_at or datetime.now()

    os.makedirs(output_dir, exist_ok=True)

    filename = f"Payout Summary {generated_at.strftime('%Y-%m-%d %H%M%S')}.xlsx"
    filepath = os.path.join(output_dir, filename)

    logger.info(f"Generating payout report: {filepath}")

    payouts = [PayoutRecordOut.model_validate(r) for r in records]
    totals = build_creator_totals(payouts)

    wb = Workbook()

    ws1 = wb.active
    ws1.title = "Creator Payout Summary"
    _build_creator_summary_tab(ws1, totals)

    ws2 = wb.create_sheet("Payout Records")
    _build_records_tab(ws2, payouts)

    wb.save(filepath)
    logger.info(
        f"Report saved: {filepath} "
        f"({len(totals)} creators, {len(payouts)} payout records)"
    )

    return filepath


# ===========================================================================
# Tab 1: Creator Payout Summary
# ===========================================================================

def _build_creator_summary_tab(ws: Worksheet, totals: list[CreatorTotal]) -> None:
    """
    Columns:
      User ID | Clip Count | Period Views | Total Payout | Budget-Limited Payouts

    Sorted by Total Payout descending.
    """
    ws.append([
        "User ID",
        "Clip Count",
        "Period Views",
        "Total Payout",
        "Budget-Limited Payouts",
    ])

    for t in sorted(totals, key=lambda t: t.total_amount, reverse=True):
        ws.append([
            t.user_id,
            t.clip_count,
            t.total_views,
            float(t.total_amount),
            t.budget_limited_count,
        ])

    _format_header_row(ws)
    _freeze_top_row(ws)
    _apply_column_format(ws, col_idx=4, fmt=CURRENCY_FORMAT, start_row=2)
    for col_idx in [2, 3, 5]:
        _apply_column_format(ws, col_idx=col_idx, fmt=NUMBER_FORMAT, start_row=2)
    _auto_fit_columns(ws)


# ===========================================================================
# Tab 2: Payout Records
# ===========================================================================

def _build_records_tab(ws: Worksheet, payouts: list[PayoutRecordOut]) -> None:
    """One row per record, in the order given (user, then computed time)."""
    ws.append([
        "Payout ID",
        "Campaign ID",
        "User ID",
        "Clip ID",
        "Observed On",
        "Baseline Views",
        "Views Through",
        "Period Views",
        "Raw Amount",
        "Amount",
        "Budget Limited",
        "Status",
        "Computed At",
    ])

    for p in payouts:
        ws.append([
            p.id,
            p.campaign_id,
            p.user_id,
            p.clip_id,
            _format_date(p.observed_on),
            p.baseline_views,
            p.views_through,
            p.period_views,
            float(p.raw_amount),
            float(p.amount),
            "Yes" if p.budget_limited else "No",
            p.status,
            _format_datetime(p.computed_at),
        ])

    _format_header_row(ws)
    _freeze_top_row(ws)
    for col_idx in [9, 10]:
        _apply_column_format(ws, col_idx=col_idx, fmt=CURRENCY_FORMAT, start_row=2)
    for col_idx in [6, 7, 8]:
        _apply_column_format(ws, col_idx=col_idx, fmt=NUMBER_FORMAT, start_row=2)
    _auto_fit_columns(ws)


# ===========================================================================
# Formatting helpers
# ===========================================================================

def _format_header_row(ws: Worksheet) -> None:
    """Bold the entire header row (row 1)."""
    for cell in ws[1]:
        cell.font = HEADER_FONT
        cell.alignment = Alignment(horizontal="center", vertical="center")


def _freeze_top_row(ws: Worksheet) -> None:
    ws.freeze_panes = "A2"


def _apply_column_format(
    ws: Worksheet,
    col_idx: int,
    fmt: str,
    start_row: int = 2,
) -> None:
    for row in range(start_row, ws.max_row + 1):
        cell = ws.cell(row=row, column=col_idx)
        if cell.value is not None:
            cell.number_format = fmt


def _auto_fit_columns(ws: Worksheet) -> None:
    """Width = longest value in the column + 2, clamped to [MIN_COL_WIDTH, MAX_COL_WIDTH]."""
    for col_idx in range(1, ws.max_column + 1):
        max_length = 0
        for row in range(1, ws.max_row + 1):
            value = ws.cell(row=row, column=col_idx).value
            if value is not None:
                max_length = max(max_length, len(str(value)))

        width = min(max(max_length + 2, MIN_COL_WIDTH), MAX_COL_WIDTH)
        ws.column_dimensions[get_column_letter(col_idx)].width = width


def _format_date(d: Optional[date]) -> Optional[str]:
    if d is None:
        return None
    return d.isoformat()


def _format_datetime(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.strftime("%Y-%m-%d %H:%M:%S")
