# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Vault subcommand for stagehand.

Usage:
    stagehand vault encrypt secrets.yml --vault-id prod@~/.vault_pass
    stagehand vault decrypt secrets.yml --vault-password-file ~/.vault_pass
    stagehand vault view secrets.yml
    stagehand vault encrypt-string --name db_password 's3cret'
"""

import argparse
import sys
from pathlib import Path

from stagehand.engine.errors import ExitCode, StagehandError, VaultError
from stagehand.engine.loader import vault_yaml_string
from stagehand.engine.runner import build_vault
from stagehand.engine.vault import VaultLib


def add_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        'action',
        choices=('encrypt', 'decrypt', 'view', 'encrypt-string'),
        help='What to do'
    )
    parser.add_argument(
        'targets',
        nargs='*',
        help='Files (encrypt, decrypt, view) or the string to encrypt (encrypt-string)'
    )
    parser.add_argument(
        '--encrypt-vault-id',
        default=None,
        help='Vault id whose secret encrypts (default: the first configured)'
    )
    parser.add_argument(
        '--name',
        default=None,
        help='Variable name for encrypt-string output'
    )
    parser.add_argument(
        '--output',
        default=None,
        help='Write the result here instead of in place (encrypt, decrypt)'
    )


def _encrypt(vault: VaultLib, path: Path, vault_id, output) -> None:
    content = path.read_bytes()
    if vault.is_encrypted(content):
        raise VaultError(f"File is already encrypted: {path}")
    envelope = vault.encrypt(content, vault_id=vault_id)
    Path(output or path).write_text(envelope, encoding='utf-8')


def _decrypt(vault: VaultLib, path: Path, output) -> None:
    plaintext = vault.decrypt_file(path)
    Path(output or path).write_bytes(plaintext)


def vault_command(args: argparse.Namespace) -> int:
    """Run a vault action; returns the exit code."""
    try:
        vault = build_vault(args.vault_ids, args.vault_password_file)
        if not vault.secrets:
            raise VaultError("No vault secrets given: use --vault-id or --vault-password-file")

        if args.action == 'encrypt-string':
            plaintext = ' '.join(args.targets) if args.targets else sys.stdin.read()
            envelope = vault.encrypt(plaintext, vault_id=args.encrypt_vault_id)
            if args.name:
                print(vault_yaml_string(envelope, args.name), end='')
            else:
                print(envelope, end='')
            return ExitCode.SUCCESS

        if not args.targets:
            raise VaultError(f"vault {args.action} needs at least one file")
        if args.output and len(args.targets) > 1:
            raise VaultError("--output takes a single file")

        for target in args.targets:
            path = Path(target)
            if not path.is_file():
                raise VaultError(f"File not found: {path}")
            if args.action == 'encrypt':
                _encrypt(vault, path, args.encrypt_vault_id, args.output)
                print(f"Encryption successful: {path}", file=sys.stderr)
            elif args.action == 'decrypt':
                _decrypt(vault, path, args.output)
                print(f"Decryption successful: {path}", file=sys.stderr)
            else:
                sys.stdout.write(vault.decrypt_file(path).decode('utf-8', errors='replace'))
    except StagehandError as e:
        print(f"ERROR! {e}", file=sys.stderr)
        return e.exit_code
    except OSError as e:
        print(f"ERROR! {e}", file=sys.stderr)
        return ExitCode.GENERIC_ERROR

    return ExitCode.SUCCESS
