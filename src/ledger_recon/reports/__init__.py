"""Report generators."""

from .excel_generator import ExcelReportGenerator
from .ledger_export import export_ledger_csv, ledger_frame

__all__ = ["ExcelReportGenerator", "export_ledger_csv", "ledger_frame"]
