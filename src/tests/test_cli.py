import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest import mock

from fakedists import make_bubble, write_script

import isolaunch
from isolaunch import cli
from isolaunch.core import ConfigManager, IsolatedRunner


class CliTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.config_dir = self.root / "config"
        patcher = mock.patch.dict(os.environ, {"ISOLAUNCH_CONFIG_DIR": str(self.config_dir)})
        patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        self.tmp.cleanup()

    def run_cli(self, *argv):
        buffer = io.StringIO()
        with redirect_stdout(buffer):
            code = cli.main(list(argv))
        return code, buffer.getvalue()


class TestConfigManager(CliTestCase):
    def test_creates_defaults(self):
        cm = ConfigManager(suppress_init_messages=True)
        self.assertEqual(cm.config_path, self.config_dir / "config.json")
        self.assertTrue(cm.config_path.is_file())
        self.assertEqual(cm.get("conflict_policy"), "script_wins")
        self.assertFalse(cm.get("install_if_missing"))

    def test_set_persists(self):
        ConfigManager(suppress_init_messages=True).set("autoload", True)
        self.assertTrue(ConfigManager(suppress_init_messages=True).get("autoload"))

    def test_corrupted_file_starts_fresh(self):
        self.config_dir.mkdir(parents=True)
        (self.config_dir / "config.json").write_text("{not json", encoding="utf-8")
        with redirect_stdout(io.StringIO()):
            cm = ConfigManager(suppress_init_messages=True)
        self.assertEqual(cm.get("log_level"), "WARNING")
        json.loads(cm.config_path.read_text(encoding="utf-8"))

    def test_missing_keys_are_filled_from_defaults(self):
        self.config_dir.mkdir(parents=True)
        (self.config_dir / "config.json").write_text('{"autoload": true}', encoding="utf-8")
        cm = ConfigManager(suppress_init_messages=True)
        self.assertTrue(cm.get("autoload"))
        self.assertEqual(cm.get("pypi_json_url"), "https://pypi.org/pypi")


class TestCommands(CliTestCase):
    def test_parse_kwargs(self):
        self.assertEqual(cli.parse_kwargs(["a=1", "b=", "c=x=y"]), {"a": "1", "b": "", "c": "x=y"})
        with self.assertRaises(ValueError):
            cli.parse_kwargs(["novalue"])

    def test_config_set_and_show(self):
        code, _ = self.run_cli("config", "set", "install_if_missing", "yes")
        self.assertEqual(code, 0)
        self.assertTrue(ConfigManager(suppress_init_messages=True).get("install_if_missing"))
        code, out = self.run_cli("config", "show")
        self.assertEqual(code, 0)
        self.assertIn("install_if_missing: True", out)

    def test_config_set_rejects_bad_values(self):
        self.assertEqual(self.run_cli("config", "set", "autoload", "maybe")[0], 1)
        self.assertEqual(self.run_cli("config", "set", "conflict_policy", "nobody")[0], 1)
        self.assertEqual(self.run_cli("config", "set", "language", "xx")[0], 1)

    def test_config_set_nullable(self):
        self.run_cli("config", "set", "index_url", "none")
        self.assertIsNone(ConfigManager(suppress_init_messages=True).get("index_url"))

    def test_verbose_is_not_persisted(self):
        code, _ = self.run_cli("--verbose", "config", "set", "autoload", "false")
        self.assertEqual(code, 0)
        stored = json.loads((self.config_dir / "config.json").read_text(encoding="utf-8"))
        self.assertEqual(stored["log_level"], "WARNING")
        self.assertFalse(stored["autoload"])

    def test_verbose_reaches_the_child_request(self):
        script = write_script(self.root, "s.py", "")
        with mock.patch.object(IsolatedRunner, "launch", return_value=0) as launch:
            self.assertEqual(cli.main(["--verbose", "run", str(script)]), 0)
        self.assertEqual(launch.call_args[0][0].log_level, "DEBUG")
        self.assertEqual(ConfigManager(suppress_init_messages=True).get("log_level"), "WARNING")

    def test_version_output(self):
        buffer = io.StringIO()
        with redirect_stdout(buffer), self.assertRaises(SystemExit) as ctx:
            cli.main(["--version"])
        self.assertEqual(ctx.exception.code, 0)
        self.assertIn(isolaunch.__version__, buffer.getvalue())

    def test_run_missing_script(self):
        code = cli.main(["run", str(self.root / "missing.py")])
        self.assertEqual(code, 2)

    def test_run_rejects_unsupported_operator(self):
        script = write_script(self.root, "s.py", "")
        self.assertEqual(cli.main(["run", "-r", "rich~=13.0", str(script)]), 2)

    def test_inspect_reports_resolution(self):
        versions_root = self.root / "versions"
        make_bubble(versions_root, "fake-lib", "2.30.0", module="isolaunch_cli_lib")
        ConfigManager(suppress_init_messages=True).set("versions_root", str(versions_root))
        script = write_script(
            self.root,
            "s.py",
            "# requires libraries: {name: fake-lib, version: 2.30.0}\n",
        )
        code, out = self.run_cli("inspect", str(script))
        self.assertEqual(code, 0)
        self.assertIn("fake-lib", out)
        self.assertIn("2.30.0", out)

    def test_inspect_reports_missing(self):
        script = write_script(
            self.root,
            "s.py",
            "# requires libraries: {name: isolaunch-not-installed, version: 1.0}\n",
        )
        code, _ = self.run_cli("inspect", str(script))
        self.assertEqual(code, 4)

    def test_no_command_prints_help(self):
        code, out = self.run_cli()
        self.assertEqual(code, 0)
        self.assertIn("isolaunch", out)


if __name__ == "__main__":
    unittest.main()
