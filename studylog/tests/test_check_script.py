import contextlib
import importlib.util
import io
import unittest
from pathlib import Path
from unittest.mock import patch

from studylog.db import SqlBackendClient, metadata
from studylog.setup_flow import USER_DATABASE_SQL

SCRIPT = Path(__file__).resolve().parents[2] / "scripts" / "check_personal_backend.py"


def load_script():
    spec = importlib.util.spec_from_file_location("check_personal_backend", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class CheckPersonalBackendScriptTests(unittest.TestCase):
    def setUp(self):
        self.script = load_script()

    def _run(self, argv):
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            code = self.script.main(argv)
        return code, out.getvalue()

    def test_missing_tables_print_sql(self):
        code, out = self._run(["sqlite+pysqlite:///:memory:"])
        self.assertEqual(code, 1)
        self.assertIn(USER_DATABASE_SQL.strip(), out)

    def test_ready_backend(self):
        ready = SqlBackendClient("sqlite+pysqlite:///:memory:")
        metadata.create_all(ready.engine)
        with patch.object(self.script, "create_backend_client", return_value=ready):
            code, out = self._run(["sqlite+pysqlite:///:memory:"])
        self.assertEqual(code, 0)
        self.assertEqual(out, "")

    def test_unknown_driver(self):
        code, _ = self._run(["nosuchdriver://host/db"])
        self.assertEqual(code, 2)


if __name__ == "__main__":
    unittest.main()
