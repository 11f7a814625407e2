# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand Vault Support

Encrypt and decrypt vault envelopes, either whole files or single values
embedded in YAML with the ``!vault`` tag. Both use the same envelope:

    $STAGEHAND_VAULT;1.2;AES256;<vault id>
    <hex body, 80 columns per line>

The hex body decodes to newline-separated fields: salt, KDF iterations,
passphrase check value, HMAC tag and ciphertext (each hex encoded except
the iteration count). PBKDF2-HMAC-SHA256 derives the AES-256-CTR key, the
HMAC-SHA256 key, the IV and the check value from the passphrase and salt.
A check value mismatch means a wrong passphrase; a matching check value
with a bad HMAC means the envelope was modified.
"""

from __future__ import annotations

import binascii
import functools
import getpass
import hashlib
import hmac
import logging
import os
import re
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from stagehand.engine.errors import (
    IntegrityError,
    VaultError,
    VaultFormatError,
    WrongPassphraseError,
)

logger = logging.getLogger(__name__)

# Vault file header
VAULT_HEADER = "$STAGEHAND_VAULT"
VAULT_VERSION = "1.2"
VAULT_CIPHER = "AES256"
VAULT_HEADER_REGEX = re.compile(r'^\$STAGEHAND_VAULT;(\d+\.\d+);([A-Z0-9_-]+)(?:;([\w.-]+))?$')

DEFAULT_VAULT_ID = "default"
DEFAULT_ITERATIONS = 10000
LINE_WIDTH = 80

SALT_SIZE = 32
KEY_SIZE = 32
HMAC_KEY_SIZE = 32
IV_SIZE = 16
CHECK_SIZE = 32

# Derived key sets kept for reuse across envelopes
KEY_CACHE_SIZE = 64


class VaultSecret:
    """A vault passphrase bound to a vault id."""

    def __init__(self, password: Union[str, bytes], vault_id: str = DEFAULT_VAULT_ID):
        if isinstance(password, str):
            self.password = password.encode('utf-8')
        else:
            self.password = password
        self.vault_id = vault_id or DEFAULT_VAULT_ID

    def __repr__(self) -> str:
        return f"VaultSecret(vault_id={self.vault_id!r})"

    @classmethod
    def from_file(
        cls,
        password_file: Union[str, Path],
        vault_id: str = DEFAULT_VAULT_ID,
    ) -> 'VaultSecret':
        """Load a vault password from a file, or run it if it is executable."""
        path = Path(password_file)
        if not path.exists():
            raise VaultError(f"Vault password file not found: {path}")

        # Executable password scripts print the password on stdout
        is_executable = os.access(path, os.X_OK) and sys.platform != 'win32'

        if is_executable:
            try:
                result = subprocess.run(
                    [str(path)],
                    capture_output=True,
                    text=True,
                    timeout=30,
                )
            except subprocess.TimeoutExpired:
                raise VaultError("Vault password script timed out")
            if result.returncode != 0:
                raise VaultError(f"Vault password script failed: {result.stderr}")
            password = result.stdout.strip()
        else:
            password = path.read_text(encoding='utf-8').strip()

        if not password:
            raise VaultError(f"Vault password file is empty: {path}")
        return cls(password, vault_id)

    @classmethod
    def from_identity(cls, spec: str) -> 'VaultSecret':
        """
        Build a secret from an ``id@source`` identity.

        ``source`` is a password file (or script) path, or ``prompt`` to
        ask on the terminal. Without ``@`` the whole value is the source
        and the id is ``default``.
        """
        vault_id, sep, source = spec.partition('@')
        if not sep:
            vault_id, source = DEFAULT_VAULT_ID, spec
        if not source:
            raise VaultError(f"Invalid vault identity: {spec!r}")
        if source == 'prompt':
            password = getpass.getpass(f"Vault password ({vault_id}): ")
            return cls(password, vault_id)
        return cls.from_file(source, vault_id)


@dataclass
class DerivedKeys:
    """Key material derived from a passphrase and salt."""

    key: bytes
    hmac_key: bytes
    iv: bytes
    check: bytes


@dataclass
class VaultEnvelope:
    """Parsed form of an encrypted payload."""

    version: str
    cipher: str
    vault_id: Optional[str]
    salt: bytes
    iterations: int
    check: bytes
    tag: bytes
    ciphertext: bytes

    @property
    def header(self) -> str:
        parts = [VAULT_HEADER, self.version, self.cipher]
        if self.vault_id:
            parts.append(self.vault_id)
        return ';'.join(parts)

    def authenticated_bytes(self) -> bytes:
        """Bytes covered by the HMAC tag."""
        return b'\n'.join([
            f"{self.version};{self.cipher};{self.vault_id or ''}".encode('utf-8'),
            self.salt,
            str(self.iterations).encode('ascii'),
            self.ciphertext,
        ])

    def dumps(self) -> str:
        """Serialize the envelope; ``parse(text).dumps() == text`` for our output."""
        body = b'\n'.join([
            binascii.hexlify(self.salt),
            str(self.iterations).encode('ascii'),
            binascii.hexlify(self.check),
            binascii.hexlify(self.tag),
            binascii.hexlify(self.ciphertext),
        ])
        hex_body = binascii.hexlify(body).decode('ascii')
        lines = [hex_body[i:i + LINE_WIDTH] for i in range(0, len(hex_body), LINE_WIDTH)]
        return self.header + '\n' + '\n'.join(lines) + '\n'

    @classmethod
    def parse(cls, data: Union[str, bytes]) -> 'VaultEnvelope':
        """Parse envelope text; raises VaultFormatError when malformed."""
        if isinstance(data, bytes):
            try:
                data = data.decode('utf-8')
            except UnicodeDecodeError:
                raise VaultFormatError("Vault data is not valid UTF-8")

        lines = [line.strip() for line in data.strip().splitlines()]
        if not lines or not lines[0]:
            raise VaultFormatError("Empty vault data")

        match = VAULT_HEADER_REGEX.match(lines[0])
        if not match:
            raise VaultFormatError(f"Invalid vault header: {lines[0]}")
        version, cipher, vault_id = match.group(1), match.group(2), match.group(3)

        if version != VAULT_VERSION:
            raise VaultFormatError(f"Unsupported vault format version: {version}")
        if cipher != VAULT_CIPHER:
            raise VaultFormatError(f"Unsupported vault cipher: {cipher}")

        try:
            body = binascii.unhexlify(''.join(lines[1:]))
            fields = body.split(b'\n')
            if len(fields) != 5:
                raise VaultFormatError(f"Vault body has {len(fields)} fields, expected 5")
            salt = binascii.unhexlify(fields[0])
            iterations = int(fields[1].decode('ascii'))
            check = binascii.unhexlify(fields[2])
            tag = binascii.unhexlify(fields[3])
            ciphertext = binascii.unhexlify(fields[4])
        except (binascii.Error, ValueError, UnicodeDecodeError) as e:
            raise VaultFormatError(f"Invalid vault payload: {e}")

        if iterations < 1:
            raise VaultFormatError(f"Invalid KDF iteration count: {iterations}")

        return cls(
            version=version,
            cipher=cipher,
            vault_id=vault_id,
            salt=salt,
            iterations=iterations,
            check=check,
            tag=tag,
            ciphertext=ciphertext,
        )


@functools.lru_cache(maxsize=KEY_CACHE_SIZE)
def derive_keys(password: bytes, salt: bytes, iterations: int) -> DerivedKeys:
    """PBKDF2-HMAC-SHA256 key derivation, cached per (password, salt, iterations)."""
    size = KEY_SIZE + HMAC_KEY_SIZE + IV_SIZE + CHECK_SIZE
    derived = hashlib.pbkdf2_hmac('sha256', password, salt, iterations, size)
    return DerivedKeys(
        key=derived[:KEY_SIZE],
        hmac_key=derived[KEY_SIZE:KEY_SIZE + HMAC_KEY_SIZE],
        iv=derived[KEY_SIZE + HMAC_KEY_SIZE:KEY_SIZE + HMAC_KEY_SIZE + IV_SIZE],
        check=derived[KEY_SIZE + HMAC_KEY_SIZE + IV_SIZE:],
    )


class VaultLib:
    """
    Vault encryption library.

    Holds the configured secrets (one per vault id). Decryption tries the
    secret whose id matches the envelope first, then every other secret.
    """

    def __init__(self, secrets: Optional[List[VaultSecret]] = None):
        self.secrets: List[VaultSecret] = list(secrets or [])

    def add_secret(self, secret: VaultSecret) -> None:
        """Add a vault secret."""
        self.secrets.append(secret)

    def get_secret(self, vault_id: Optional[str] = None) -> VaultSecret:
        """Secret to encrypt with: the one matching ``vault_id`` or the first."""
        if not self.secrets:
            raise VaultError("No vault secrets configured")
        if vault_id:
            for secret in self.secrets:
                if secret.vault_id == vault_id:
                    return secret
            raise VaultError(f"No vault secret configured for vault id '{vault_id}'")
        return self.secrets[0]

    def is_encrypted(self, data: Union[str, bytes]) -> bool:
        """Check if data is vault encrypted."""
        if isinstance(data, bytes):
            try:
                data = data.decode('utf-8')
            except UnicodeDecodeError:
                return False

        if not isinstance(data, str):
            return False

        return data.lstrip().startswith(VAULT_HEADER)

    def encrypt(
        self,
        plaintext: Union[str, bytes],
        secret: Optional[VaultSecret] = None,
        vault_id: Optional[str] = None,
        iterations: int = DEFAULT_ITERATIONS,
    ) -> str:
        """
        Encrypt plaintext into envelope text.

        Args:
            plaintext: Data to encrypt
            secret: Secret to use (defaults to the secret for ``vault_id``)
            vault_id: Vault id to select a configured secret
            iterations: PBKDF2 iteration count stored in the envelope

        Returns:
            Envelope text ending with a newline
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode('utf-8')
        secret = secret or self.get_secret(vault_id)

        salt = os.urandom(SALT_SIZE)
        keys = derive_keys(secret.password, salt, iterations)

        encryptor = Cipher(algorithms.AES(keys.key), modes.CTR(keys.iv)).encryptor()
        ciphertext = encryptor.update(plaintext) + encryptor.finalize()

        envelope = VaultEnvelope(
            version=VAULT_VERSION,
            cipher=VAULT_CIPHER,
            vault_id=secret.vault_id if secret.vault_id != DEFAULT_VAULT_ID else None,
            salt=salt,
            iterations=iterations,
            check=keys.check,
            tag=b'',
            ciphertext=ciphertext,
        )
        envelope.tag = hmac.new(keys.hmac_key, envelope.authenticated_bytes(), hashlib.sha256).digest()
        return envelope.dumps()

    def decrypt(self, data: Union[str, bytes]) -> bytes:
        """
        Decrypt envelope text.

        The salt, iteration count and check value feed the key derivation
        that decides whether a secret matches, so modifying any of them
        reads as a wrong passphrase. Only a modified header, tag or
        ciphertext under the right secret raises IntegrityError.

        Raises:
            VaultFormatError: The envelope is malformed
            WrongPassphraseError: No configured secret matches
            IntegrityError: A secret matches but the envelope was modified
        """
        envelope = VaultEnvelope.parse(data)

        if not self.secrets:
            raise WrongPassphraseError("Vault decryption failed: no vault secrets configured")

        for secret in self._candidates(envelope.vault_id):
            keys = derive_keys(secret.password, envelope.salt, envelope.iterations)
            if not hmac.compare_digest(keys.check, envelope.check):
                logger.debug("Vault secret '%s' does not match envelope", secret.vault_id)
                continue

            expected = hmac.new(keys.hmac_key, envelope.authenticated_bytes(), hashlib.sha256).digest()
            if not hmac.compare_digest(expected, envelope.tag):
                raise IntegrityError(
                    "Vault integrity check failed: the encrypted data was modified"
                )

            decryptor = Cipher(algorithms.AES(keys.key), modes.CTR(keys.iv)).decryptor()
            return decryptor.update(envelope.ciphertext) + decryptor.finalize()

        ids = ', '.join(s.vault_id for s in self.secrets)
        raise WrongPassphraseError(
            f"Vault decryption failed: no matching secret (tried: {ids})"
        )

    def decrypt_file(self, file_path: Union[str, Path]) -> bytes:
        """Decrypt a vault-encrypted file."""
        path = Path(file_path)
        if not path.exists():
            raise VaultError(f"Vault file not found: {path}")

        return self.decrypt(path.read_text(encoding='utf-8'))

    def encrypt_file(self, file_path: Union[str, Path], vault_id: Optional[str] = None) -> None:
        """Encrypt a file in place."""
        path = Path(file_path)
        content = path.read_bytes()
        if self.is_encrypted(content):
            raise VaultError(f"File is already encrypted: {path}")
        path.write_text(self.encrypt(content, vault_id=vault_id), encoding='utf-8')

    def _candidates(self, vault_id: Optional[str]) -> List[VaultSecret]:
        wanted = vault_id or DEFAULT_VAULT_ID
        matching = [s for s in self.secrets if s.vault_id == wanted]
        others = [s for s in self.secrets if s.vault_id != wanted]
        return matching + others


class VaultEncryptedValue:
    """
    A single vault-encrypted variable value (YAML ``!vault`` tag).

    Stays encrypted until something reads it; ``str()`` decrypts, so Jinja2
    templates that interpolate the value see the plaintext.
    """

    def __init__(self, ciphertext: str, vault: Optional[VaultLib] = None):
        self.ciphertext = ciphertext
        self.vault = vault
        self._plaintext: Optional[str] = None

    def decrypt(self) -> str:
        if self._plaintext is None:
            if self.vault is None:
                raise WrongPassphraseError(
                    "Encountered a vault-encrypted value but no vault secrets are configured"
                )
            self._plaintext = self.vault.decrypt(self.ciphertext).decode('utf-8')
        return self._plaintext

    def __str__(self) -> str:
        return self.decrypt()

    def __repr__(self) -> str:
        return "VaultEncryptedValue(<encrypted>)"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, VaultEncryptedValue):
            return self.ciphertext == other.ciphertext
        if isinstance(other, str):
            return self.decrypt() == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.ciphertext)


def decrypt_vault_string(encrypted: str, password: str) -> str:
    """Convenience function to decrypt a vault string."""
    vault = VaultLib([VaultSecret(password)])
    return vault.decrypt(encrypted).decode('utf-8')


def encrypt_vault_string(plaintext: str, password: str, vault_id: str = DEFAULT_VAULT_ID) -> str:
    """Convenience function to encrypt a string."""
    vault = VaultLib([VaultSecret(password, vault_id)])
    return vault.encrypt(plaintext)
