import io
import tempfile
import unittest
from datetime import datetime
from pathlib import Path
from unittest import mock

from openpyxl import Workbook

from merge_doctor.config import MergeConfig
from merge_doctor.errors import (
    DataImportError,
    EmptyInputError,
    NoValidRowsError,
    UnreadableInputError,
    UnsupportedFormatError,
)
from merge_doctor.loader import (
    build_header_set,
    clean_header,
    detect_delimiter,
    discover_header_row,
    import_table,
    load_file,
)


def workbook_bytes(sheets: dict) -> bytes:
    wb = Workbook()
    wb.remove(wb.active)
    for name, rows in sheets.items():
        ws = wb.create_sheet(name)
        for row in rows:
            ws.append(row)
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


class DelimitedImportTests(unittest.TestCase):
    def test_csv_first_row_is_header_and_sparse_rows_are_dropped(self):
        raw = (
            "Name,Email,Phone\n"
            "Alice Smith,alice@example.com,7725551234\n"
            ",,\n"
            "Bob,,\n"
            "Carol,carol@example.com,\n"
        ).encode("utf-8")
        result = import_table(raw, ".csv")

        self.assertEqual(result.headers, ("Name", "Email", "Phone"))
        self.assertEqual(result.detected_format, "csv")
        self.assertEqual(result.delimiter, ",")
        self.assertEqual([r["Name"] for r in result.records], ["Alice Smith", "Carol"])
        self.assertEqual(result.records[0]["Phone"], 7725551234)
        self.assertEqual(result.records[1]["Phone"], "")

    def test_semicolon_delimiter_and_leading_zero_values_stay_text(self):
        raw = b"Name;City;Zip\nAnn;Paris;75001\nBen;Rome;00100\n"
        result = import_table(raw, "csv")

        self.assertEqual(result.delimiter, ";")
        self.assertEqual(result.records[0]["Zip"], 75001)
        self.assertEqual(result.records[1]["Zip"], "00100")

    def test_pipe_delimited_text(self):
        raw = b"Name|Plan|Renewal Date\nAnn|Gold|2024-01-31\nBen|Silver|2024-02-29\n"
        result = import_table(raw, ".csv")

        self.assertEqual(result.delimiter, "|")
        self.assertEqual(result.records[1]["Plan"], "Silver")

    def test_bom_is_removed_from_first_header(self):
        raw = "\ufeffName,Email,City\nAnn,ann@example.com,Oslo\n".encode("utf-8")
        result = import_table(raw, ".csv")
        self.assertEqual(result.headers[0], "Name")

    def test_latin1_bytes_decode(self):
        raw = "Name,City,Note\nJosé,Málaga,olé\n".encode("latin-1")
        result = import_table(raw, ".csv")
        self.assertEqual(result.records[0]["Name"], "José")

    def test_plain_txt_is_rejected(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "notes.txt"
            path.write_text("This is a text file.\n", encoding="utf-8")

            with self.assertRaisesRegex(ValueError, "does not appear to contain delimited/tabular data"):
                load_file(path)

    def test_header_only_csv_has_no_valid_rows(self):
        with self.assertRaises(NoValidRowsError) as ctx:
            import_table(b"Name,Email\n", ".csv")
        self.assertEqual(ctx.exception.code, "no_valid_rows")

    def test_numeric_cells_can_be_disabled(self):
        raw = b"Name,Account,Plan\nAnn,12345,Gold\n"
        result = import_table(raw, ".csv", config=MergeConfig(numeric_cells=False))
        self.assertEqual(result.records[0]["Account"], "12345")


class SpreadsheetImportTests(unittest.TestCase):
    def test_title_block_is_skipped_and_dates_become_display_strings(self):
        raw = workbook_bytes({
            "Customers": [
                ["Customer Renewal Report"],
                [],
                ["Customer Name", "Email", "Expiration Date"],
                ["Alice Smith", "ALICE@Example.com", datetime(2024, 3, 5)],
                ["Bob Jones", "bob@example.com", datetime(2024, 12, 25)],
                ["Total", None, None],
            ]
        })
        result = import_table(raw, ".xlsx")

        self.assertEqual(result.headers, ("Customer Name", "Email", "Expiration Date"))
        self.assertEqual(result.header_row_index, 1)
        self.assertEqual(result.sheet_name, "Customers")
        self.assertEqual(len(result.records), 2)
        self.assertEqual(result.records[0]["Expiration Date"], "3/5/2024")
        self.assertEqual(result.records[1]["Expiration Date"], "12/25/2024")
        self.assertEqual(result.records[0]["Email"], "ALICE@Example.com")

    def test_sheet_with_most_rows_wins(self):
        raw = workbook_bytes({
            "Notes": [["read me", "first", "please"]],
            "Data": [
                ["Name", "Email", "Plan"],
                ["Ann", "ann@example.com", "Gold"],
                ["Ben", "ben@example.com", "Silver"],
            ],
        })
        result = import_table(raw, ".xlsx")

        self.assertEqual(result.sheet_name, "Data")
        self.assertEqual(result.sheet_names, ("Notes", "Data"))
        self.assertTrue(any("Multiple sheets" in w for w in result.warnings))

    def test_header_fallback_uses_first_row_with_warning(self):
        raw = workbook_bytes({"Sheet1": [["Name", "Plan"], ["Ann", "Gold"], ["Ben", "Silver"]]})
        result = import_table(raw, ".xlsx")

        self.assertEqual(result.header_row_index, 0)
        self.assertEqual(result.headers, ("Name", "Plan"))
        self.assertTrue(any("Could not detect a header row" in w for w in result.warnings))
        self.assertEqual(len(result.records), 2)

    def test_numbers_pass_through(self):
        raw = workbook_bytes({"Sheet1": [["Name", "Balance", "Phone"], ["Ann", 12.5, 7725551234]]})
        record = import_table(raw, ".xlsx").records[0]
        self.assertEqual(record["Balance"], 12.5)
        self.assertEqual(record["Phone"], 7725551234)

    def test_format_is_sniffed_when_not_declared(self):
        raw = workbook_bytes({"Sheet1": [["Name", "Email", "Plan"], ["Ann", "ann@example.com", "Gold"]]})
        self.assertEqual(import_table(raw).detected_format, "xlsx")

    def test_corrupt_workbook_is_unreadable(self):
        with self.assertRaises(UnreadableInputError):
            import_table(b"definitely not a zip", ".xlsx")

    def test_missing_xlrd_raises_clear_importerror(self):
        original_import = __import__

        def fake_import(name, globals=None, locals=None, fromlist=(), level=0):
            if name == "xlrd":
                raise ImportError("simulated missing xlrd")
            return original_import(name, globals, locals, fromlist, level)

        with mock.patch("builtins.__import__", side_effect=fake_import):
            with self.assertRaisesRegex(ImportError, r"\.xls files require xlrd"):
                import_table(b"not-a-real-xls", ".xls")

    def test_missing_odfpy_raises_clear_importerror(self):
        original_import = __import__

        def fake_import(name, globals=None, locals=None, fromlist=(), level=0):
            if name == "odf":
                raise ImportError("simulated missing odf")
            return original_import(name, globals, locals, fromlist, level)

        with mock.patch("builtins.__import__", side_effect=fake_import):
            with self.assertRaisesRegex(ImportError, r"\.ods files require odfpy"):
                import_table(b"not-a-real-ods", ".ods")


class ImportFailureTests(unittest.TestCase):
    def test_empty_input(self):
        with self.assertRaises(EmptyInputError):
            import_table(b"", ".csv")
        with self.assertRaises(EmptyInputError):
            import_table(b"   \n\n", ".csv")

    def test_unsupported_format(self):
        with self.assertRaises(UnsupportedFormatError) as ctx:
            import_table(b"a,b\n1,2\n", ".pdf")
        self.assertIn("Unsupported format", str(ctx.exception))

    def test_all_failures_share_a_value_error_base(self):
        for exc_type in (EmptyInputError, NoValidRowsError, UnreadableInputError, UnsupportedFormatError):
            self.assertTrue(issubclass(exc_type, DataImportError))
            self.assertTrue(issubclass(exc_type, ValueError))

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            load_file("/nonexistent/customers.csv")


class HeaderHelperTests(unittest.TestCase):
    def test_clean_header(self):
        self.assertEqual(clean_header("  First   Name! ", 0), "First Name")
        self.assertEqual(clean_header("Name (Legal)", 1), "Name Legal")
        self.assertEqual(clean_header("Expiration_Date", 2), "Expiration_Date")
        self.assertEqual(clean_header("", 3), "Unknown_3")
        self.assertEqual(clean_header("$$$", 4), "Unknown_4")
        self.assertEqual(clean_header(None, 5), "Unknown_5")

    def test_duplicate_headers_get_suffixes(self):
        self.assertEqual(build_header_set(["Name", "name", "Name "]), ("Name", "name_2", "Name_3"))

    def test_discover_header_row_scan_window(self):
        rows = [["Title"]] * 30 + [["a", "b", "c"]]
        self.assertIsNone(discover_header_row(rows, 25, 3))
        self.assertEqual(discover_header_row(rows, 31, 3), 30)

    def test_detect_delimiter_tab(self):
        self.assertEqual(detect_delimiter("a\tb\tc\n1\t2\t3\n"), "\t")


if __name__ == "__main__":
    unittest.main()
