from __future__ import annotations

import calendar
import re
from datetime import datetime
from io import BytesIO
from typing import Iterable, Sequence

import pandas as pd

from promodesk.core.formatting import format_display_datetime, month_label
from promodesk.schemas import MergedMember

REPORT_COLUMNS = ["#", "Name", "Phone", "UPI ID", "Status"]
_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9]")


def _members_df(members: Iterable[MergedMember], status: str) -> pd.DataFrame:
    rows = []
    for position, member in enumerate(members, start=1):
        rows.append(
            {
                "#": position,
                "Name": member.name or "N/A",
                "Phone": member.phone or "N/A",
                "UPI ID": member.upi_id or "N/A",
                "Status": status,
            }
        )
    return pd.DataFrame(rows, columns=REPORT_COLUMNS)


def _summary_df(
    group_name: str,
    year: int,
    month: int,
    members: Sequence[MergedMember],
    generated_at: datetime,
) -> pd.DataFrame:
    paid = sum(1 for member in members if member.payment_completed)
    return pd.DataFrame(
        [
            {"Field": "Group", "Value": group_name or "Group"},
            {"Field": "Period", "Value": month_label(year, month)},
            {"Field": "Generated on", "Value": format_display_datetime(generated_at)},
            {"Field": "Total Members", "Value": len(members)},
            {"Field": "Total Paid", "Value": paid},
            {"Field": "Total Unpaid", "Value": len(members) - paid},
        ]
    )


def build_payment_report(
    group_name: str,
    year: int,
    month: int,
    members: Sequence[MergedMember],
    generated_at: datetime | None = None,
) -> bytes:
    """Return an XLSX workbook (bytes) listing paid and unpaid members."""

    if not members:
        raise ValueError("No members found to generate a report.")

    paid_df = _members_df((m for m in members if m.payment_completed), "Paid")
    unpaid_df = _members_df((m for m in members if not m.payment_completed), "Pending")
    summary_df = _summary_df(group_name, year, month, members, generated_at or datetime.now())

    buffer = BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        paid_df.to_excel(writer, sheet_name="Paid Members", index=False)
        unpaid_df.to_excel(writer, sheet_name="Unpaid Members", index=False)
        summary_df.to_excel(writer, sheet_name="Summary", index=False)

    buffer.seek(0)
    return buffer.getvalue()


def report_filename(group_name: str, year: int, month: int) -> str:
    clean_group = _UNSAFE_FILENAME_CHARS.sub("_", group_name or "Group")
    return f"PromoDesk_{clean_group}_{calendar.month_name[month]}_{year}_Report.xlsx"
