"""Error taxonomy for merge-doctor.

Only import failures and bad configuration are exceptions. Reconciliation and
substitution gaps are ordinary values (see ``models.MatchReason`` and the
sentinel markers in ``substitution``).
"""

from __future__ import annotations


class DataImportError(ValueError):
    """Terminal failure while turning raw bytes into records. Never retried."""

    code = "import_failed"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class EmptyInputError(DataImportError):
    code = "empty_input"


class UnsupportedFormatError(DataImportError):
    code = "unsupported_format"


class UnreadableInputError(DataImportError):
    code = "unreadable_input"


class NoWorksheetsError(DataImportError):
    code = "no_worksheets"


class NoValidRowsError(DataImportError):
    code = "no_valid_rows"


class ConfigError(ValueError):
    pass
