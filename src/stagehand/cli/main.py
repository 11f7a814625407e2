# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Main CLI entrypoint for stagehand.

Usage:
    stagehand --version
    stagehand run -i inventory.yml site.yml
    stagehand vault encrypt|decrypt|view|encrypt-string ...
    stagehand inventory -i inventory.yml --list|--graph|--host <name>
"""

import argparse
import json
import logging
import platform
import re
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from stagehand import __version__
from stagehand.cli import inventory as inventory_cli
from stagehand.cli import vault as vault_cli
from stagehand.engine.config import StagehandConfig, configure, set_config
from stagehand.engine.errors import ExitCode, ParseError, StagehandError
from stagehand.engine.loader import DataLoader

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Start of the next ``key=`` in a list of pairs
PAIR_SEPARATOR = re.compile(r'[,\s]+(?=[A-Za-z_]\w*=)')


def get_version_string() -> str:
    """Generate a detailed version string."""
    python_version = platform.python_version()
    os_info = f"{platform.system()} {platform.release()}"
    return (
        f"stagehand {__version__}\n"
        f"  python: {python_version}\n"
        f"  platform: {os_info}"
    )


def configure_logging(verbosity: int = 0, level: Optional[str] = None) -> None:
    """
    Route engine logging to stderr.

    ``--log-level`` wins over the ``-v`` count: none is WARNING, ``-v`` INFO,
    ``-vv`` and above DEBUG.
    """
    if level is None:
        if verbosity >= 2:
            level = "DEBUG"
        elif verbosity == 1:
            level = "INFO"
        else:
            level = "WARNING"
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )


def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '-v', '--verbose',
        action='count',
        default=0,
        help='Increase verbosity (-v, -vv, -vvv)'
    )
    parser.add_argument(
        '--log-level',
        choices=LOG_LEVELS,
        type=str.upper,
        default=None,
        help='Log level for engine messages (overrides -v)'
    )


def add_vault_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--vault-id',
        action='append',
        default=[],
        dest='vault_ids',
        help='Vault identity as id@source (password file, script or "prompt"); repeatable'
    )
    parser.add_argument(
        '--vault-password-file',
        default=None,
        help='File holding the vault password (or a script printing it)'
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for stagehand."""
    parser = argparse.ArgumentParser(
        prog='stagehand',
        description='Stagehand - minimal agentless configuration management',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  stagehand run -i inventory.yml site.yml
  stagehand run -i inventory.yml site.yml --limit webservers --check
  stagehand run -i inventory.yml site.yml -e version=1.2 --json
  stagehand vault encrypt-string --name db_password 's3cret'
  stagehand inventory -i inventory.yml --graph
        """
    )

    parser.add_argument(
        '--version',
        action='version',
        version=get_version_string(),
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # run command
    run_parser = subparsers.add_parser(
        'run',
        help='Run a playbook',
        description='Execute a playbook against inventory hosts'
    )

    run_parser.add_argument(
        'playbook',
        type=str,
        help='Path to playbook YAML file'
    )

    run_parser.add_argument(
        '-i', '--inventory',
        action='append',
        default=[],
        dest='inventory',
        help='Inventory file or directory (repeatable)'
    )

    run_parser.add_argument(
        '--limit', '-l',
        type=str,
        default=None,
        help='Limit execution to hosts matching a pattern'
    )

    run_parser.add_argument(
        '--tags', '-t',
        action='append',
        default=[],
        help='Only run tasks tagged with these values (comma separated, repeatable)'
    )

    run_parser.add_argument(
        '--skip-tags',
        action='append',
        default=[],
        help='Skip tasks tagged with these values (comma separated, repeatable)'
    )

    run_parser.add_argument(
        '--forks', '-f',
        type=int,
        default=None,
        help='Maximum concurrent task executions (default: from config, 5)'
    )

    run_parser.add_argument(
        '--json',
        action='store_true',
        dest='json_output',
        help='Output results as JSON'
    )

    run_parser.add_argument(
        '--events',
        default=None,
        dest='events_path',
        help='Write JSON-lines run events to this file ("-" for stdout)'
    )

    run_parser.add_argument(
        '--check', '-C',
        action='store_true',
        help='Run in check mode (dry run)'
    )

    run_parser.add_argument(
        '--list-hosts',
        action='store_true',
        help='List the hosts each play would run on, then exit'
    )

    run_parser.add_argument(
        '-e', '--extra-vars',
        action='append',
        default=[],
        help='Extra variables: k=v,k2=v2, a JSON object or @file.yml (repeatable)'
    )

    add_vault_arguments(run_parser)
    add_common_arguments(run_parser)

    vault_parser = subparsers.add_parser(
        'vault',
        help='Encrypt and decrypt vault data',
        description='Manage vault-encrypted files and strings'
    )
    vault_cli.add_arguments(vault_parser)
    add_vault_arguments(vault_parser)
    add_common_arguments(vault_parser)

    inventory_parser = subparsers.add_parser(
        'inventory',
        help='Show inventory information',
        description='Show resolved inventory groups and variables'
    )
    inventory_cli.add_arguments(inventory_parser)
    add_vault_arguments(inventory_parser)
    add_common_arguments(inventory_parser)

    return parser


def _split_tags(values: List[str]) -> List[str]:
    return [tag.strip() for value in values for tag in value.split(',') if tag.strip()]


def _decode(value: str) -> Any:
    try:
        return json.loads(value)
    except ValueError:
        return value


def parse_extra_vars(items: List[str], loader: Optional[DataLoader] = None) -> Dict[str, Any]:
    """
    Parse ``--extra-vars`` values; later values win.

    Accepts ``k=v`` pairs separated by commas or spaces, a JSON object, or
    ``@file`` naming a YAML/JSON vars file. Pair values are JSON-decoded
    when they parse, so ``n=3`` gives an int and ``x=foo`` a string.

    Raises:
        ParseError: An item is none of the accepted forms
    """
    loader = loader or DataLoader()
    result: Dict[str, Any] = {}

    for item in items:
        item = item.strip()
        if not item:
            continue

        if item.startswith('@'):
            vars_file = Path(item[1:])
            if not vars_file.is_file():
                raise ParseError(f"Extra vars file not found: {vars_file}")
            result.update(loader.load_vars_file(vars_file))
            continue

        if item.startswith('{'):
            try:
                data = json.loads(item)
            except ValueError as e:
                raise ParseError(f"Invalid JSON in extra vars: {e}")
            if not isinstance(data, dict):
                raise ParseError("Extra vars JSON must be an object")
            result.update(data)
            continue

        for pair in PAIR_SEPARATOR.split(item):
            key, sep, value = pair.partition('=')
            key = key.strip()
            if not sep or not key.isidentifier():
                raise ParseError(f"Invalid extra vars '{pair}': expected key=value, JSON or @file")
            result[key] = _decode(value.strip())

    return result


def run_playbook(args: argparse.Namespace) -> int:
    """Run the playbook command."""
    from stagehand.engine.runner import PlaybookRunner, build_vault, list_hosts

    try:
        vault = build_vault(args.vault_ids, args.vault_password_file)
        extra_vars = parse_extra_vars(args.extra_vars, DataLoader(vault))
    except StagehandError as e:
        if args.json_output:
            print(json.dumps({"error": True, "error_type": type(e).__name__,
                              "message": str(e), "exit_code": int(e.exit_code)}, indent=2))
        else:
            print(f"ERROR! {e}", file=sys.stderr)
        return e.exit_code

    runner = PlaybookRunner(
        playbook_path=args.playbook,
        inventory_sources=args.inventory,
        forks=args.forks,
        limit=args.limit,
        check_mode=args.check,
        verbosity=args.verbose,
        extra_vars=extra_vars,
        only_tags=_split_tags(args.tags),
        skip_tags=_split_tags(args.skip_tags),
        json_output=args.json_output,
        events_path=args.events_path,
        vault=vault,
    )

    if args.list_hosts:
        try:
            for line in list_hosts(runner):
                print(line)
        except StagehandError as e:
            print(f"ERROR! {e}", file=sys.stderr)
            return e.exit_code
        return ExitCode.SUCCESS

    return runner.run()


def load_config(forks: Optional[int] = None) -> None:
    """Install the config from stagehand.cfg and STAGEHAND_* variables."""
    config = StagehandConfig.load()
    set_config(config)
    if forks is not None:
        configure(forks=forks)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the stagehand CLI."""
    parser = create_parser()
    args, extras = parser.parse_known_args(argv)
    if extras:
        # argparse fills the vault targets before reading options, so
        # positionals given after an option arrive here
        if args.command == 'vault' and not any(extra.startswith('-') for extra in extras):
            args.targets.extend(extras)
        else:
            parser.error(f"unrecognized arguments: {' '.join(extras)}")

    if args.command is None:
        parser.print_help()
        return ExitCode.SUCCESS

    configure_logging(args.verbose, args.log_level)

    try:
        load_config(getattr(args, 'forks', None))
    except ValueError as e:
        print(f"ERROR! Invalid configuration: {e}", file=sys.stderr)
        return ExitCode.GENERIC_ERROR

    if args.command == 'run':
        return run_playbook(args)
    if args.command == 'vault':
        return vault_cli.vault_command(args)
    if args.command == 'inventory':
        return inventory_cli.inventory_command(args)

    parser.print_help()
    return ExitCode.SUCCESS


if __name__ == '__main__':
    sys.exit(main())
