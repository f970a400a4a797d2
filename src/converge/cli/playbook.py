"""
Playbook CLI entrypoint for converge-playbook.

Usage:
    converge-playbook --version
    converge-playbook --help
    converge-playbook -i inventory playbook.yml
"""

import argparse
import json
import logging
import platform
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from converge import __version__
from converge.engine.config import load_config, split_tags
from converge.engine.errors import ConvergeError, ExitCode, ParseError

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def get_version_string() -> str:
    """Generate a detailed version string."""
    python_version = platform.python_version()
    os_info = f"{platform.system()} {platform.release()}"
    return (
        f"converge-playbook {__version__}\n"
        f"  python: {python_version}\n"
        f"  platform: {os_info}"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for converge-playbook."""
    parser = argparse.ArgumentParser(
        prog="converge-playbook",
        description="Converge hosts to the state declared in YAML playbooks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  converge-playbook -i inventory.ini site.yml
  converge-playbook -i hosts.yml deploy.yml --check --diff
  converge-playbook -i inventory/ site.yml -t config --limit web1 -v
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=get_version_string(),
    )

    parser.add_argument(
        "playbook",
        nargs="*",
        help="Playbook file(s) to run",
    )

    parser.add_argument(
        "-i", "--inventory",
        dest="inventory",
        default=None,
        help="Inventory file or directory",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=None,
        help="Increase verbosity (-v, -vv, -vvv)",
    )

    parser.add_argument(
        "-C", "--check",
        action="store_true",
        default=None,
        help="Run in check mode (dry run)",
    )

    parser.add_argument(
        "--diff",
        action="store_true",
        default=None,
        help="Show differences when changing files",
    )

    parser.add_argument(
        "-l", "--limit",
        dest="limit",
        default=None,
        help="Limit to specific hosts/groups",
    )

    parser.add_argument(
        "-t", "--tags",
        dest="tags",
        action="append",
        default=[],
        help="Only run plays and tasks tagged with these values",
    )

    parser.add_argument(
        "--skip-tags",
        dest="skip_tags",
        action="append",
        default=[],
        help="Skip plays and tasks tagged with these values",
    )

    parser.add_argument(
        "-f", "--forks",
        dest="forks",
        type=int,
        default=None,
        help="Number of hosts to run in parallel (default: 5)",
    )

    parser.add_argument(
        "-e", "--extra-vars",
        dest="extra_vars",
        action="append",
        default=[],
        help="Extra variables as key=value, JSON or @file (can be repeated)",
    )

    vault = parser.add_mutually_exclusive_group()
    vault.add_argument(
        "--vault-password-file",
        dest="vault_password_file",
        default=None,
        help="File (or executable script) holding the vault password",
    )
    vault.add_argument(
        "--ask-vault-pass",
        action="store_true",
        help="Prompt for the vault password",
    )

    parser.add_argument(
        "--timeout",
        dest="task_timeout",
        type=float,
        default=None,
        help="Per-task timeout in seconds",
    )

    parser.add_argument(
        "--any-errors-fatal",
        action="store_true",
        default=None,
        help="Stop the whole run on the first host failure",
    )

    parser.add_argument(
        "--force-handlers",
        action="store_true",
        default=None,
        help="Run notified handlers even on hosts that failed",
    )

    parser.add_argument(
        "--json",
        action="store_true",
        default=None,
        help="Output results in JSON format",
    )

    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Config file (default: $CONVERGE_CONFIG or ./converge.yml)",
    )

    parser.add_argument(
        "--log-level",
        dest="log_level",
        default="WARNING",
        type=str.upper,
        choices=LOG_LEVELS,
        help="Logging level for diagnostic output (default: WARNING)",
    )

    return parser


def _parse_extra_vars(extra_vars_list: List[str]) -> Dict[str, Any]:
    """
    Parse extra vars from command line.

    Raises:
        ParseError: an @file is missing or does not hold a mapping
    """
    result: Dict[str, Any] = {}
    for item in extra_vars_list:
        item = item.strip()
        if not item:
            continue

        if item.startswith('@'):
            path = Path(item[1:])
            if not path.is_file():
                raise ParseError("Extra vars file not found", file_path=str(path))
            try:
                file_vars = yaml.safe_load(path.read_text())
            except yaml.YAMLError as e:
                raise ParseError(f"Invalid YAML: {e}", file_path=str(path))
            if not isinstance(file_vars, dict):
                raise ParseError("Extra vars file must hold a mapping", file_path=str(path))
            result.update(file_vars)
            continue

        # Try JSON first
        if item.startswith('{'):
            try:
                data = json.loads(item)
            except json.JSONDecodeError as e:
                raise ParseError(f"Invalid JSON in extra vars: {e}")
            if not isinstance(data, dict):
                raise ParseError("Extra vars JSON must be an object")
            result.update(data)
            continue

        for pair in item.split():
            key, sep, value = pair.partition('=')
            if not sep or not key:
                raise ParseError(f"Extra vars must be key=value, JSON or @file: {pair!r}")

            # Values that parse as JSON keep their type
            try:
                result[key] = json.loads(value)
            except json.JSONDecodeError:
                result[key] = value

    return result


def _tags(values: List[str]) -> Optional[tuple]:
    tags: tuple = ()
    for value in values:
        tags += split_tags(value)
    return tags or None


def main(args: Optional[List[str]] = None) -> int:
    """Main entrypoint for converge-playbook CLI."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    logging.basicConfig(
        level=getattr(logging, parsed.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # If no playbook provided, show help
    if not parsed.playbook:
        parser.print_help()
        return ExitCode.SUCCESS

    if not parsed.inventory:
        print("ERROR: Inventory (-i/--inventory) is required", file=sys.stderr)
        return ExitCode.PARSE_ERROR

    try:
        config = load_config(Path(parsed.config) if parsed.config else None)
        config = config.replace(
            forks=parsed.forks,
            check_mode=parsed.check,
            diff_mode=parsed.diff,
            tags=_tags(parsed.tags),
            skip_tags=_tags(parsed.skip_tags),
            limit=parsed.limit,
            extra_vars={**config.extra_vars, **_parse_extra_vars(parsed.extra_vars)},
            any_errors_fatal=parsed.any_errors_fatal,
            force_handlers=parsed.force_handlers,
            task_timeout=parsed.task_timeout,
            verbosity=parsed.verbose,
            json_output=parsed.json,
        )
    except ConvergeError as e:
        print(f"ERROR! {e}", file=sys.stderr)
        return e.exit_code
    except ValueError as e:
        print(f"ERROR! {e}", file=sys.stderr)
        return ExitCode.PARSE_ERROR

    # Create and run the playbook runner
    from converge.engine.runner import PlaybookRunner

    runner = PlaybookRunner(
        inventory_source=parsed.inventory,
        playbook_paths=parsed.playbook,
        config=config,
        vault_password_file=parsed.vault_password_file,
        ask_vault_pass=parsed.ask_vault_pass,
    )

    return runner.run()


if __name__ == "__main__":
    sys.exit(main())
