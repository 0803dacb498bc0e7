"""Export helpers."""
from .report import build_payment_report, report_filename

__all__ = ["build_payment_report", "report_filename"]
