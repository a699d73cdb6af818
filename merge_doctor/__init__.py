"""merge-doctor: turn a bracketed message template and a messy spreadsheet into one message per row."""

__version__ = "0.1.0"
