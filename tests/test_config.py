import io
import json
import logging
import tempfile
import unittest
from datetime import date
from pathlib import Path

import yaml

from merge_doctor.config import (
    DEFAULT_CONFIG,
    default_config_yaml,
    load_config,
    load_mapping_overrides,
)
from merge_doctor.contracts import CONTRACT_VERSIONS, build_contract, build_run_summary
from merge_doctor.errors import ConfigError
from merge_doctor.log import LOGGER_NAME, SUMMARY_LEVEL, log_summary, reset_logging, setup_logging
from merge_doctor.models import SemanticCategory


class ConfigTests(unittest.TestCase):
    def write(self, tmpdir, name, text):
        path = Path(tmpdir) / name
        path.write_text(text, encoding="utf-8")
        return path

    def test_none_returns_defaults(self):
        self.assertIs(load_config(None), DEFAULT_CONFIG)

    def test_overlay_keeps_unspecified_defaults(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = self.write(tmpdir, "cfg.yml", (
                "import:\n  header_scan_rows: 10\n"
                "categories:\n  phone: [whatsapp]\n"
                "dates:\n  serial_epoch: '1904-01-01'\n"
                "markers:\n  missing: '{{{name}}}?'\n"
            ))
            config = load_config(path)

        self.assertEqual(config.header_scan_rows, 10)
        self.assertEqual(config.header_min_cells, 3)
        self.assertEqual(config.keywords_for(SemanticCategory.PHONE), ("whatsapp",))
        self.assertEqual(config.keywords_for(SemanticCategory.EMAIL), ("email", "e-mail", "mail"))
        self.assertEqual(config.serial_epoch, date(1904, 1, 1))
        self.assertEqual(config.missing_marker, "{{{name}}}?")

    def test_default_yaml_round_trips(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = self.write(tmpdir, "cfg.yml", default_config_yaml())
            config = load_config(path)
        self.assertEqual(config, DEFAULT_CONFIG)
        self.assertIn("categories", yaml.safe_load(default_config_yaml()))

    def test_invalid_configs_raise_config_error(self):
        cases = {
            "unknown.yml": "nonsense: true\n",
            "type.yml": "import:\n  header_scan_rows: many\n",
            "marker.yml": "markers:\n  unmapped: 'no placeholder'\n",
            "root.yml": "- a\n- b\n",
            "yaml.yml": "import: [unclosed\n",
        }
        with tempfile.TemporaryDirectory() as tmpdir:
            for name, text in cases.items():
                with self.subTest(name=name):
                    with self.assertRaises(ConfigError):
                        load_config(self.write(tmpdir, name, text))
            with self.assertRaises(ConfigError):
                load_config(Path(tmpdir) / "missing.yml")


class MappingFileTests(unittest.TestCase):
    def test_plain_object_and_map_report(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            plain = Path(tmpdir) / "plain.json"
            plain.write_text(json.dumps({"[Name]": "Customer", "[Code]": None}), encoding="utf-8")
            report = Path(tmpdir) / "report.json"
            report.write_text(json.dumps({"mapping": [{"field": "[Name]", "column": "Customer", "match": "exact"}]}), encoding="utf-8")

            self.assertEqual(load_mapping_overrides(plain), {"[Name]": "Customer", "[Code]": None})
            self.assertEqual(load_mapping_overrides(report), {"[Name]": "Customer"})

    def test_bad_mapping_files(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            bad = Path(tmpdir) / "bad.json"
            bad.write_text("[1, 2]", encoding="utf-8")
            with self.assertRaises(ConfigError):
                load_mapping_overrides(bad)
            bad.write_text("{not json", encoding="utf-8")
            with self.assertRaises(ConfigError):
                load_mapping_overrides(bad)
            bad.write_text(json.dumps({"[Name]": 3}), encoding="utf-8")
            with self.assertRaises(ConfigError):
                load_mapping_overrides(bad)


class LoggingTests(unittest.TestCase):
    def setUp(self):
        reset_logging()

    def tearDown(self):
        reset_logging()

    def test_labeled_output_and_levels(self):
        stream = io.StringIO()
        logger = setup_logging(stream=stream)
        self.assertEqual(logger.name, LOGGER_NAME)
        self.assertEqual(len(logger.handlers), 1)

        logging.getLogger("merge_doctor.loader").warning("header fallback")
        log_summary("3 rows rendered")
        logging.getLogger("merge_doctor.loader").debug("hidden")

        lines = stream.getvalue().splitlines()
        self.assertEqual(lines, ["WARN header fallback", "SUMMARY 3 rows rendered"])

    def test_setup_is_idempotent_and_adjusts_level(self):
        first = setup_logging(stream=io.StringIO())
        second = setup_logging(verbose=True)
        self.assertIs(first, second)
        self.assertEqual(len(second.handlers), 1)
        self.assertEqual(second.level, logging.DEBUG)
        self.assertEqual(setup_logging(quiet=True).level, logging.WARNING)

    def test_summary_level_sits_between_info_and_warning(self):
        self.assertLess(logging.INFO, SUMMARY_LEVEL)
        self.assertLess(SUMMARY_LEVEL, logging.WARNING)


class ContractTests(unittest.TestCase):
    def test_contract_and_run_summary(self):
        self.assertEqual(build_contract("merge_doctor.render"), {"name": "merge_doctor.render", "version": "1.0.0"})
        self.assertIn("merge_doctor.mapping", CONTRACT_VERSIONS)
        summary = build_run_summary(
            command="render",
            input_paths=[Path("t.html"), Path("d.csv")],
            warnings=["one"],
            metrics={"processed": 2},
        )
        self.assertEqual(summary["input_files"], ["t.html", "d.csv"])
        self.assertEqual(summary["warnings_count"], 1)
        self.assertTrue(summary["generated_at"].endswith("Z"))
        with self.assertRaises(KeyError):
            build_contract("merge_doctor.unknown")


if __name__ == "__main__":
    unittest.main()
