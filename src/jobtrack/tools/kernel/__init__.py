"""Google API clients."""

from .google_auth import AuthError, TokenManager
from .google_sheets_job_apps import (
    RecordNotFoundError,
    SheetLayoutError,
    SheetSnapshot,
    SheetsApiError,
    SheetsTableClient,
    create_spreadsheet,
)

__all__ = [
    "AuthError",
    "RecordNotFoundError",
    "SheetLayoutError",
    "SheetSnapshot",
    "SheetsApiError",
    "SheetsTableClient",
    "TokenManager",
    "create_spreadsheet",
]
