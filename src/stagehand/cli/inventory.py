# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Inventory subcommand for stagehand.

Usage:
    stagehand inventory -i inventory.yml --list
    stagehand inventory -i inventory.yml --host <hostname>
    stagehand inventory -i inventory/ --graph [group]
"""

import argparse
import json
import sys
from typing import Any

import yaml

from stagehand.engine.errors import ExitCode, StagehandError
from stagehand.engine.inventory import InventoryManager
from stagehand.engine.loader import DataLoader
from stagehand.engine.runner import build_vault
from stagehand.engine.vault import VaultEncryptedValue


def add_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '-i', '--inventory',
        action='append',
        default=[],
        dest='inventory',
        help='Inventory file or directory (repeatable)'
    )
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument(
        '--list',
        action='store_true',
        dest='list_hosts',
        help='Output all groups and host variables'
    )
    group.add_argument(
        '--host',
        default=None,
        help='Output the variables of one host'
    )
    group.add_argument(
        '--graph',
        nargs='?',
        const='all',
        default=None,
        help='Output the group tree (from a group, default all)'
    )
    parser.add_argument(
        '-y', '--yaml',
        action='store_true',
        help='Output in YAML instead of JSON'
    )


def _plain(value: Any) -> Any:
    """Vault values are shown encrypted, never decrypted."""
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if isinstance(value, VaultEncryptedValue):
        return {'__stagehand_vault': value.ciphertext}
    return value


def _dump(data: Any, as_yaml: bool) -> str:
    data = _plain(data)
    if as_yaml:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    return json.dumps(data, indent=2, default=str)


def inventory_command(args: argparse.Namespace) -> int:
    """Show inventory information; returns the exit code."""
    if not args.inventory:
        print("ERROR! Inventory (-i/--inventory) is required", file=sys.stderr)
        return ExitCode.PARSE_ERROR

    try:
        loader = DataLoader(build_vault(args.vault_ids, args.vault_password_file))
        inventory = InventoryManager(loader)
        for source in args.inventory:
            inventory.parse(source)

        if args.list_hosts:
            print(_dump(inventory.to_dict(), args.yaml))
        elif args.host is not None:
            if inventory.get_host(args.host) is None:
                print(f"ERROR! Unknown host: {args.host}", file=sys.stderr)
                return ExitCode.GENERIC_ERROR
            print(_dump(inventory.get_vars(args.host), args.yaml))
        else:
            print(inventory.graph(args.graph))
    except StagehandError as e:
        print(f"ERROR! {e}", file=sys.stderr)
        return e.exit_code

    return ExitCode.SUCCESS
