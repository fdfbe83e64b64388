from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from isolaunch import __version__
from isolaunch.common_utils import IsolaunchError, VersionNotFound, print_header, safe_print
from isolaunch.core import ConfigManager, IsolatedRunner
from isolaunch.i18n import SUPPORTED_LANGUAGES, _
from isolaunch.loader import LibraryInventory, SearchPath, strip_ambient_entries
from isolaunch.requirements import ConflictPolicy, requirement_from_spec

logger = logging.getLogger(__name__)

VERSION = __version__

BOOLEAN_KEYS = {"install_if_missing", "autoload"}
NULLABLE_KEYS = {"interpreter", "index_url"}


def _shared_options() -> argparse.ArgumentParser:
    shared = argparse.ArgumentParser(add_help=False)
    shared.add_argument(
        "--require",
        "-r",
        action="append",
        default=[],
        metavar="SPEC",
        help=_("Add a library requirement, e.g. requests==2.30.0 or 'rich>=13,<=14' (repeatable)"),
    )
    shared.add_argument(
        "--policy",
        choices=[p.value for p in ConflictPolicy],
        default=None,
        help=_("Who wins when a --require names a library the script already declares"),
    )
    shared.add_argument(
        "--vendored",
        metavar="PATH",
        help=_("Directory searched for libraries before anything else"),
    )
    shared.add_argument(
        "--install",
        action="store_true",
        default=None,
        help=_("Install missing library versions into isolated bubbles before running"),
    )
    shared.add_argument(
        "--autoload",
        action="store_true",
        default=None,
        help=_("Keep the interpreter's site-packages importable in the child"),
    )
    shared.add_argument("--cwd", metavar="DIR", help=_("Working directory for the child"))
    shared.add_argument("--python", metavar="EXE", help=_("Interpreter to run the child on"))
    return shared


def create_parser():
    """Creates and configures the argument parser."""
    epilog_parts = [
        _("💡 Quick Start:"),
        _("  isolaunch run script.py            # Honor the script's '# requires libraries:' lines"),
        _("  isolaunch run -r requests==2.30.0 script.py"),
        _("  isolaunch exec json.tool data.json  # Run a module like python -m"),
        _("  isolaunch statements -c 'import rich' -c 'print(rich.__file__)'"),
        _("  isolaunch inspect script.py        # Show what a script requires"),
        "",
        _("Version: {}").format(VERSION),
    ]
    parser = argparse.ArgumentParser(
        prog="isolaunch",
        description=_("🧪 Run Python code in a sterile interpreter with exact library versions"),
        formatter_class=argparse.RawTextHelpFormatter,
        epilog="\n".join(epilog_parts),
    )
    parser.add_argument(
        "-v", "--version", action="version", version=_("%(prog)s {}").format(VERSION)
    )
    parser.add_argument(
        "--lang",
        metavar="CODE",
        help=_("Override the display language for this command (e.g., es, de, ja)"),
    )
    parser.add_argument(
        "--verbose",
        "-V",
        action="store_true",
        help=_("Enable verbose output for detailed debugging"),
    )
    subparsers = parser.add_subparsers(dest="command", help=_("Available commands:"))
    shared = _shared_options()

    run_parser = subparsers.add_parser(
        "run", parents=[shared], help=_("Run a script in a sterile interpreter")
    )
    run_parser.add_argument(
        "--ignore-script-requirements",
        action="store_true",
        help=_("Ignore the script's own requirement directives"),
    )
    run_parser.add_argument("script", help=_("Path to the script"))
    run_parser.add_argument(
        "script_args", nargs=argparse.REMAINDER, help=_("Arguments passed to the script")
    )

    exec_parser = subparsers.add_parser(
        "exec",
        parents=[shared],
        help=_("Run a module, console script or module:callable in a sterile interpreter"),
    )
    exec_parser.add_argument(
        "--kwarg",
        "-k",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help=_("Keyword argument for a module:callable target (repeatable)"),
    )
    exec_parser.add_argument(
        "--preload",
        action="append",
        default=[],
        metavar="MODULE",
        help=_("Import a module before dispatch, best-effort (repeatable)"),
    )
    exec_parser.add_argument("target", help=_("Module name, console script or module:callable"))
    exec_parser.add_argument(
        "target_args", nargs=argparse.REMAINDER, help=_("Arguments passed to the command")
    )

    statements_parser = subparsers.add_parser(
        "statements",
        parents=[shared],
        help=_("Run a sequence of statements as one throwaway script"),
    )
    statements_parser.add_argument(
        "-c",
        dest="statements",
        action="append",
        required=True,
        metavar="STMT",
        help=_("A statement or block to run (repeatable, runs in order)"),
    )
    statements_parser.add_argument(
        "--preload",
        action="append",
        default=[],
        metavar="MODULE",
        help=_("Import a module before dispatch, best-effort (repeatable)"),
    )

    inspect_parser = subparsers.add_parser(
        "inspect",
        parents=[shared],
        help=_("Show the requirements a script declares and what they resolve to"),
    )
    inspect_parser.add_argument(
        "--ignore-script-requirements",
        action="store_true",
        help=_("Ignore the script's own requirement directives"),
    )
    inspect_parser.add_argument("script", help=_("Path to the script"))

    config_parser = subparsers.add_parser("config", help=_("View or edit isolaunch configuration"))
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)
    config_subparsers.add_parser("show", help=_("Display the current configuration"))
    config_set_parser = config_subparsers.add_parser("set", help=_("Set a configuration value"))
    config_set_parser.add_argument(
        "key",
        choices=sorted(ConfigManager.default_config()),
        help=_("Configuration key to set"),
    )
    config_set_parser.add_argument("value", help=_("Value to set for the key"))
    return parser


def parse_kwargs(pairs):
    """Turns repeated KEY=VALUE options into a keyword map."""
    kwargs = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(_("Invalid --kwarg '{}', expected KEY=VALUE").format(pair))
        kwargs[key.strip()] = value
    return kwargs


def _launch_options(args):
    return {
        "vendored_path": args.vendored,
        "install_if_missing": args.install,
        "autoload": args.autoload,
        "working_directory": args.cwd,
    }


def _coerce_config_value(key, value):
    lowered = value.strip().lower()
    if key in BOOLEAN_KEYS:
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ValueError(_("'{}' expects true or false, got '{}'").format(key, value))
    if key in NULLABLE_KEYS and lowered in ("", "none", "null"):
        return None
    if key == "conflict_policy":
        return ConflictPolicy.coerce(value).value
    if key == "log_level":
        level = value.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(_("Unknown log level '{}'").format(value))
        return level
    return value


def config_command(args, cm: ConfigManager) -> int:
    if args.config_command == "show":
        print_header(_("isolaunch Configuration"))
        safe_print(_("  (file: {})").format(cm.config_path))
        for key, value in sorted(cm.config.items()):
            safe_print(_("  - {}: {}").format(key, value))
        return 0
    if args.key == "language" and args.value not in SUPPORTED_LANGUAGES:
        safe_print(
            _("❌ Error: Language '{}' not supported. Supported: {}").format(
                args.value, ", ".join(SUPPORTED_LANGUAGES.keys())
            )
        )
        return 1
    try:
        value = _coerce_config_value(args.key, args.value)
    except ValueError as e:
        safe_print(_("❌ Error: {}").format(e))
        return 1
    cm.set(args.key, value)
    if args.key == "language":
        _.set_language(value)
    safe_print(_("✅ {} permanently set to: {}").format(args.key, value))
    return 0


def inspect_command(args, runner: IsolatedRunner) -> int:
    """Prints the merged requirement set and the version each would resolve to here."""
    overrides = [requirement_from_spec(spec) for spec in args.require]
    requirements = runner.collect_requirements(
        args.script, overrides, args.policy, args.ignore_script_requirements
    )
    console = Console()
    if not requirements:
        console.print(_("[bold yellow]{} declares no library requirements.[/]").format(args.script))
        return 0

    cm = runner.config_manager
    versions_root = cm.get("versions_root")
    search_path = SearchPath(
        ambient=[Path(p) for p in strip_ambient_entries(list(sys.path)) if p and Path(p).is_dir()],
        vendored=Path(args.vendored).resolve() if args.vendored else None,
        versions_root=Path(versions_root).expanduser() if versions_root else None,
    )
    inventory = LibraryInventory(search_path)

    table = Table(title=_("Requirements of {}").format(Path(args.script).name))
    table.add_column(_("Library"), style="cyan", no_wrap=True)
    table.add_column(_("Constraint"), style="yellow", no_wrap=True)
    table.add_column(_("Resolves to"), style="green", no_wrap=True)
    table.add_column(_("Location"), style="magenta", overflow="fold")
    missing = 0
    for requirement in requirements:
        try:
            library = inventory.select(requirement)
            resolved, location = library.version, str(library.location)
        except VersionNotFound as e:
            missing += 1
            available = ", ".join(e.available) or _("none installed")
            resolved, location = _("[red]missing[/] ({})").format(available), "-"
        table.add_row(requirement.name, requirement.describe(), resolved, location)
    console.print(table)
    return 4 if missing else 0


def main(argv=None):
    """Main application entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(name)s - %(levelname)s - %(message)s",
    )
    try:
        cm = ConfigManager()
        user_lang = args.lang or cm.get("language")
        if user_lang:
            _.set_language(user_lang)
        if args.command is None:
            parser.print_help()
            return 0
        if args.command == "config":
            return config_command(args, cm)

        runner = IsolatedRunner(cm, log_level="DEBUG" if args.verbose else None)
        if args.command == "inspect":
            return inspect_command(args, runner)

        overrides = [requirement_from_spec(spec) for spec in args.require]
        if args.command == "run":
            return runner.run_script(
                args.script,
                args=args.script_args,
                requirements=overrides,
                policy=args.policy,
                ignore_script_requirements=args.ignore_script_requirements,
                interpreter=args.python,
                **_launch_options(args),
            )
        if args.command == "exec":
            return runner.run_command(
                args.target,
                args=args.target_args,
                kwargs=parse_kwargs(args.kwarg),
                requirements=overrides,
                policy=args.policy,
                preload=args.preload,
                interpreter=args.python,
                **_launch_options(args),
            )
        if args.command == "statements":
            return runner.run_statements(
                args.statements,
                requirements=overrides,
                policy=args.policy,
                preload=args.preload,
                interpreter=args.python,
                **_launch_options(args),
            )
        parser.print_help()
        return 1
    except IsolaunchError as e:
        safe_print(_("❌ {}").format(e), file=sys.stderr)
        return e.exit_code
    except ValueError as e:
        safe_print(_("❌ Error: {}").format(e), file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        safe_print(_("\n❌ Operation cancelled by user."))
        return 130


if __name__ == "__main__":
    sys.exit(main())
