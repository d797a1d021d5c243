from __future__ import annotations

import importlib
import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout


class ManageCommandTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self._tmp.name, "data", "test_manage.db")
        self._old_env = {k: os.environ.get(k) for k in ("DB_PATH", "TIMEZONE")}
        os.environ["DB_PATH"] = self.db_path
        os.environ["TIMEZONE"] = "UTC"

        import healthsync.settings as settings_mod
        importlib.reload(settings_mod)
        import manage as manage_mod

        self.manage = manage_mod

    def tearDown(self) -> None:
        for k, v in self._old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v
        import healthsync.settings as settings_mod
        importlib.reload(settings_mod)
        self._tmp.cleanup()

    def _run(self, *argv: str) -> tuple[int, str]:
        out = io.StringIO()
        with redirect_stdout(out), redirect_stderr(io.StringIO()):
            code = self.manage.main(["--db", self.db_path, *argv])
        return code, out.getvalue()

    def test_init_ingest_replay_and_stats(self) -> None:
        code, _ = self._run("init-db")
        self.assertEqual(code, 0)
        self.assertTrue(os.path.exists(self.db_path))

        from healthsync.db import Store
        from healthsync.writer import DedupWriter

        first = DedupWriter(Store(self.db_path)).ingest(
            {"data": {"metrics": [{"name": "steps", "units": "count", "data": [{"date": "2024-03-10 08:00:00 +0000", "qty": 9}]}]}}
        )

        code, out = self._run("replay", str(first.importId))
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out)["samplesStored"], 0)

        code, out = self._run("stats")
        stats = json.loads(out)
        self.assertEqual(stats["total_imports"], 2)
        self.assertEqual(stats["total_samples_stored"], 1)

        code, out = self._run("query", "steps", "--start", "2024-03-10", "--end", "2024-03-10")
        self.assertEqual(json.loads(out)["groups"][0]["value"], 9.0)

    def test_replay_unknown_import(self) -> None:
        self._run("init-db")
        code, _ = self._run("replay", "42")
        self.assertEqual(code, 1)

    def test_query_error_exit_code(self) -> None:
        self._run("init-db")
        code, _ = self._run("query", "caffeine")
        self.assertEqual(code, 2)

    def test_backfill_units(self) -> None:
        self._run("init-db")
        code, out = self._run("backfill-units")
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out), {})


if __name__ == "__main__":
    unittest.main()
