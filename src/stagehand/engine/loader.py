# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand Data Loader

YAML loading shared by the inventory and playbook parsers. Understands
the ``!vault`` tag for single encrypted values and transparently decrypts
files that are vault envelopes as a whole.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from stagehand.engine.errors import ParseError
from stagehand.engine.vault import VaultEncryptedValue, VaultLib

logger = logging.getLogger(__name__)

YAML_EXTENSIONS = ('.yml', '.yaml', '.json')


class DataLoader:
    """
    Load YAML/JSON documents, decrypting vault content.

    Inline ``!vault`` values become VaultEncryptedValue objects and stay
    encrypted until a template or variable lookup reads them.
    """

    def __init__(self, vault: Optional[VaultLib] = None):
        self.vault = vault
        self._yaml_loader = self._make_yaml_loader()

    def _make_yaml_loader(self) -> type:
        vault = self.vault

        class _VaultSafeLoader(yaml.SafeLoader):
            pass

        def construct_vault(loader: yaml.SafeLoader, node: yaml.Node) -> VaultEncryptedValue:
            value = loader.construct_scalar(node)
            return VaultEncryptedValue(str(value), vault)

        _VaultSafeLoader.add_constructor('!vault', construct_vault)
        return _VaultSafeLoader

    def read_text(self, path: Union[str, Path]) -> str:
        """Read a file, decrypting it when it is a vault envelope."""
        path = Path(path)
        try:
            content = path.read_text(encoding='utf-8')
        except OSError as e:
            raise ParseError(f"Cannot read file: {e}", file_path=str(path))

        if VaultLib().is_encrypted(content):
            if self.vault is None:
                raise ParseError(
                    "File is vault encrypted but no vault secret was provided "
                    "(use --vault-id or --vault-password-file)",
                    file_path=str(path),
                )
            logger.debug("Decrypting vault file %s", path)
            content = self.vault.decrypt(content).decode('utf-8')
        return content

    def load(self, content: str, file_name: Optional[str] = None) -> Any:
        """Parse a single YAML document."""
        try:
            return yaml.load(content, Loader=self._yaml_loader)
        except yaml.YAMLError as e:
            raise _parse_error(e, file_name)

    def load_all(self, content: str, file_name: Optional[str] = None) -> list:
        """Parse every document in a YAML stream."""
        try:
            return list(yaml.load_all(content, Loader=self._yaml_loader))
        except yaml.YAMLError as e:
            raise _parse_error(e, file_name)

    def load_file(self, path: Union[str, Path]) -> Any:
        """Read (and decrypt) a file and parse it as YAML."""
        return self.load(self.read_text(path), str(path))

    def load_vars_file(self, path: Union[str, Path]) -> dict:
        """Load a variables file; it must hold a mapping (or nothing)."""
        data = self.load_file(path)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ParseError("Variables file must contain a mapping", file_path=str(path))
        return data


def _parse_error(error: yaml.YAMLError, file_name: Optional[str]) -> ParseError:
    line = None
    mark = getattr(error, 'problem_mark', None)
    if mark is not None:
        line = mark.line + 1
    problem = getattr(error, 'problem', None) or str(error)
    return ParseError(f"Invalid YAML: {problem}", file_path=file_name, line=line)


def vault_yaml_string(envelope: str, name: str = "secret") -> str:
    """Render an envelope as a ``name: !vault |`` YAML snippet."""
    body = ''.join(f"  {line}\n" for line in envelope.splitlines())
    return f"{name}: !vault |\n{body}"
