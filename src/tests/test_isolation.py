"""
End-to-end runs: every test here starts a real sterile child on the running interpreter.

Libraries are fake distributions laid out in temporary bubbles or vendored directories,
so nothing touches the network. Scripts report back by writing files because the child
inherits the test runner's standard streams.
"""
import sys
import tempfile
import time
import unittest
from pathlib import Path

from fakedists import make_bubble, make_dist, write_script

from isolaunch.common_utils import NotFound
from isolaunch.core import ConfigManager, IsolatedRunner
from isolaunch.isolation.runners import flatten_statements, temporary_script
from isolaunch.isolation.sterile import (
    STERILE_FLAGS,
    IsolatedLauncher,
    find_interpreter,
    package_root,
    terminate_process_tree,
)
from isolaunch.request import TargetKind, build_request
from isolaunch.requirements import Requirement


class IsolationTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.versions_root = self.root / "versions"
        self.out = self.root / "out.txt"
        config = ConfigManager(config_dir=self.root / "config", suppress_init_messages=True)
        config.set("versions_root", str(self.versions_root))
        config.set("interpreter", sys.executable)
        self.runner = IsolatedRunner(config)

    def tearDown(self):
        self.tmp.cleanup()

    def report(self, expression):
        """Script body that writes `expression` to the output file."""
        return f"with open({str(self.out)!r}, 'w') as f:\n    f.write(str({expression}))\n"

    def read_report(self):
        return self.out.read_text(encoding="utf-8")


class TestLauncher(IsolationTestCase):
    def test_argv_shape(self):
        launcher = IsolatedLauncher(sys.executable)
        script = write_script(self.root, "s.py", "")
        argv = launcher.build_argv(build_request(TargetKind.SCRIPT, script))
        self.assertEqual(argv[0], sys.executable)
        self.assertEqual(tuple(argv[1:3]), STERILE_FLAGS)
        self.assertEqual(argv[3], "-c")
        self.assertEqual(argv[5], package_root())
        self.assertEqual(len(argv), 7)

    def test_package_root_holds_the_package(self):
        self.assertTrue((Path(package_root()) / "isolaunch" / "bootstrap.py").is_file())

    def test_unknown_interpreter(self):
        with self.assertRaises(NotFound):
            find_interpreter("isolaunch-no-such-python")

    def test_auto_detected_interpreter(self):
        self.assertTrue(Path(find_interpreter()).exists())

    def test_exit_code_propagates(self):
        script = write_script(self.root, "s.py", "import sys\nsys.exit(5)\n")
        self.assertEqual(self.runner.run_script(script), 5)

    def test_dispatch_failure_exit_code(self):
        script = write_script(self.root, "s.py", "raise RuntimeError('boom')\n")
        self.assertEqual(self.runner.run_script(script), 1)

    def test_child_does_not_see_site_packages(self):
        script = write_script(
            self.root,
            "s.py",
            "import sys\n"
            + self.report("any(d in p for p in sys.path for d in ('site-packages', 'dist-packages'))"),
        )
        self.assertEqual(self.runner.run_script(script), 0)
        self.assertEqual(self.read_report(), "False")

    def test_undeclared_third_party_imports_fail(self):
        script = write_script(
            self.root,
            "s.py",
            "import importlib\n"
            "leaked = []\n"
            "for name in ('requests', 'urllib3', 'packaging'):\n"
            "    try:\n"
            "        importlib.import_module(name)\n"
            "    except ImportError:\n"
            "        continue\n"
            "    leaked.append(name)\n" + self.report("','.join(leaked) or 'none'"),
        )
        for install in (False, True):
            with self.subTest(install_if_missing=install):
                self.assertEqual(self.runner.run_script(script, install_if_missing=install), 0)
                self.assertEqual(self.read_report(), "none")

    def test_autoload_keeps_site_packages(self):
        script = write_script(self.root, "s.py", "import packaging\n" + self.report("'ok'"))
        self.assertEqual(self.runner.run_script(script, autoload=True), 0)
        self.assertEqual(self.read_report(), "ok")

    def test_terminate_process_tree(self):
        script = write_script(self.root, "s.py", "import time\ntime.sleep(60)\n")
        launcher = IsolatedLauncher(sys.executable)
        process = launcher.spawn(build_request(TargetKind.SCRIPT, script))
        time.sleep(0.5)
        terminate_process_tree(process)
        self.assertIsNotNone(process.poll())
        # Already gone: must not raise.
        terminate_process_tree(process)


class TestPinnedResolution(IsolationTestCase):
    def setUp(self):
        super().setUp()
        make_bubble(self.versions_root, "fake-lib", "2.30.0", module="isolaunch_e2e_lib")
        make_bubble(self.versions_root, "fake-lib", "2.31.0", module="isolaunch_e2e_lib")

    def test_script_directive_pins_version(self):
        script = write_script(
            self.root,
            "s.py",
            "# requires libraries: {name: fake-lib, version: 2.30.0}\n"
            "import isolaunch_e2e_lib\n" + self.report("isolaunch_e2e_lib.__version__"),
        )
        self.assertEqual(self.runner.run_script(script), 0)
        self.assertEqual(self.read_report(), "2.30.0")

    def test_external_override_wins_when_asked(self):
        script = write_script(
            self.root,
            "s.py",
            "# requires libraries: {name: fake-lib, version: 2.30.0}\n"
            "import isolaunch_e2e_lib\n" + self.report("isolaunch_e2e_lib.__version__"),
        )
        override = {"name": "fake-lib", "version": "2.31.0"}
        self.assertEqual(
            self.runner.run_script(script, requirements=[override], policy="external_wins"), 0
        )
        self.assertEqual(self.read_report(), "2.31.0")

    def test_missing_pin_exits_before_script_runs(self):
        script = write_script(
            self.root,
            "s.py",
            "# requires libraries: {name: fake-lib, version: 9.0.0}\n" + self.report("'ran'"),
        )
        self.assertEqual(self.runner.run_script(script), 4)
        self.assertFalse(self.out.exists())

    def test_vendored_pin(self):
        vendor = make_dist(self.root / "vendor", "vend-lib", "0.7.1", module="isolaunch_vend_lib")
        script = write_script(
            self.root, "s.py", "import isolaunch_vend_lib\n" + self.report("isolaunch_vend_lib.__version__")
        )
        code = self.runner.run_script(
            script,
            requirements=[Requirement("vend-lib", required_version="0.7.1")],
            vendored_path=vendor,
        )
        self.assertEqual(code, 0)
        self.assertEqual(self.read_report(), "0.7.1")

    def test_vendored_library_imports_its_sibling(self):
        vendor = self.root / "vendor"
        make_dist(vendor, "dep-lib", "2.0", module="isolaunch_dep_mod")
        make_dist(
            vendor,
            "top-lib",
            "1.0",
            module="isolaunch_top_lib",
            body="import isolaunch_dep_mod\n\nDEP_VERSION = isolaunch_dep_mod.__version__\n",
        )
        script = write_script(
            self.root, "s.py", "import isolaunch_top_lib\n" + self.report("isolaunch_top_lib.DEP_VERSION")
        )
        code = self.runner.run_script(
            script,
            requirements=[Requirement("top-lib", required_version="1.0")],
            vendored_path=vendor,
        )
        self.assertEqual(code, 0)
        self.assertEqual(self.read_report(), "2.0")

    def test_shadowed_module_fails_verification(self):
        stale = make_dist(self.root / "stale", "shadow-lib", "0.5", module="isolaunch_shadow_lib")
        vendor = make_dist(self.root / "vendor", "shadow-lib", "1.5", module="isolaunch_shadow_lib")
        shadowed = vendor / "isolaunch_shadow_lib.py"
        shadowed.unlink()
        # The metadata says 1.5 but the module file really belongs to the 0.5 install.
        shadowed.symlink_to(stale / "isolaunch_shadow_lib.py")
        script = write_script(self.root, "s.py", self.report("'ran'"))
        code = self.runner.run_script(
            script,
            requirements=[Requirement("shadow-lib", minimum_version="1.0")],
            vendored_path=vendor,
        )
        self.assertEqual(code, 5)
        self.assertFalse(self.out.exists())

    def test_console_script_receives_arguments_through_argv(self):
        vendor = make_dist(
            self.root / "vendor",
            "hello-cli",
            "1.0",
            module="isolaunch_hello_cli",
            body=(
                "import sys\n\n"
                "def main():\n"
                f"    with open({str(self.out)!r}, 'w') as f:\n"
                "        f.write(' '.join(sys.argv[1:]))\n"
            ),
            entry_points={"console_scripts": {"isolaunch-e2e-hello": "isolaunch_hello_cli:main"}},
        )
        code = self.runner.run_command(
            "isolaunch-e2e-hello",
            args=["a", "b"],
            requirements=[Requirement("hello-cli", required_version="1.0")],
            vendored_path=vendor,
        )
        self.assertEqual(code, 0)
        self.assertEqual(self.read_report(), "a b")

    def test_bounds_with_no_installed_match(self):
        make_bubble(self.versions_root, "bound-lib", "1.0", module="isolaunch_bound_lib")
        script = write_script(self.root, "s.py", self.report("'ran'"))
        code = self.runner.run_script(
            script, requirements=[Requirement("bound-lib", minimum_version="1.5")]
        )
        self.assertEqual(code, 4)
        self.assertFalse(self.out.exists())

    def test_command_with_kwargs(self):
        module_dir = self.root / "mods"
        make_dist(
            module_dir,
            "cmd-lib",
            "3.0",
            module="isolaunch_cmd_lib",
            body=(
                "def main(path, mode=None):\n"
                "    with open(path, 'w') as f:\n"
                "        f.write(repr(mode))\n"
                "    return 3\n"
            ),
        )
        code = self.runner.run_command(
            "isolaunch_cmd_lib:main",
            kwargs={"path": str(self.out), "mode": ""},
            requirements=[Requirement("cmd-lib")],
            vendored_path=module_dir,
        )
        self.assertEqual(code, 3)
        self.assertEqual(self.read_report(), "None")

    def test_statements_run_in_order_and_temp_script_is_removed(self):
        statements = [
            "import isolaunch_e2e_lib",
            "seen = [isolaunch_e2e_lib.__version__, __file__]",
            self.report("'|'.join(seen)"),
        ]
        code = self.runner.run_statements(
            statements, requirements=[Requirement("fake-lib", required_version="2.31.0")]
        )
        self.assertEqual(code, 0)
        version, script_path = self.read_report().split("|")
        self.assertEqual(version, "2.31.0")
        self.assertFalse(Path(script_path).exists())


class TestRunners(unittest.TestCase):
    def test_flatten_statements(self):
        body = flatten_statements(["x = 1", "", "    if x:\n        y = 2\n"])
        self.assertEqual(body, "x = 1\nif x:\n    y = 2\n")

    def test_temporary_script_is_removed(self):
        with temporary_script(["print(1)"], header="# requires libraries: rich") as path:
            text = path.read_text(encoding="utf-8")
            self.assertTrue(path.name.startswith("isolaunch_seq_"))
        self.assertEqual(text, "# requires libraries: rich\nprint(1)\n")
        self.assertFalse(path.exists())

    def test_temporary_script_removed_on_error(self):
        with self.assertRaises(RuntimeError):
            with temporary_script(["print(1)"]) as path:
                raise RuntimeError("boom")
        self.assertFalse(path.exists())


if __name__ == "__main__":
    unittest.main()
