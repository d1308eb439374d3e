import io
import json
import logging
import sys
import unittest
from unittest.mock import patch

from scriptdock.logging_setup import JSONFormatter, setup_logging


class TestSetupLogging(unittest.TestCase):
    def setUp(self) -> None:
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        root.handlers = []

        def _restore() -> None:
            for handler in root.handlers:
                handler.close()
            root.handlers = saved_handlers
            root.setLevel(saved_level)

        self.addCleanup(_restore)

    def test_json_output_writes_one_object_per_record(self) -> None:
        with patch("sys.stderr", new=io.StringIO()) as err:
            setup_logging("INFO", json_output=True)
            logging.getLogger("scriptdock.test").info("Installed %s", "alpha")

        root = logging.getLogger()
        self.assertEqual(len(root.handlers), 1)
        self.assertIsInstance(root.handlers[0].formatter, JSONFormatter)
        entry = json.loads(err.getvalue().strip())
        self.assertEqual(entry["level"], "INFO")
        self.assertEqual(entry["logger"], "scriptdock.test")
        self.assertEqual(entry["message"], "Installed alpha")
        self.assertIn("timestamp", entry)

    def test_repeated_setup_does_not_duplicate_handlers(self) -> None:
        setup_logging("DEBUG")
        setup_logging("warning")

        root = logging.getLogger()
        self.assertEqual(len(root.handlers), 1)
        self.assertNotIsInstance(root.handlers[0].formatter, JSONFormatter)
        self.assertEqual(root.level, logging.WARNING)

    def test_exception_is_included(self) -> None:
        try:
            raise RuntimeError("disk full")
        except RuntimeError:
            record = logging.LogRecord("scriptdock", logging.ERROR, __file__, 1, "boom", None, sys.exc_info())

        entry = json.loads(JSONFormatter().format(record))

        self.assertEqual(entry["message"], "boom")
        self.assertIn("RuntimeError: disk full", entry["exception"])


if __name__ == "__main__":
    unittest.main()
