# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Vault Support

Encrypt and decrypt Ansible Vault 1.1 envelopes, and load YAML documents that
contain encrypted files or inline ``!vault`` scalars.

Envelope layout::

    $ANSIBLE_VAULT;1.1;AES256[;vault-id]
    hex( hex(salt) \\n hex(hmac) \\n hex(ciphertext) )   (wrapped at 80 columns)

Keys come from PBKDF2-HMAC-SHA256 (10000 rounds, 80 bytes: AES key, HMAC key,
CTR IV). The HMAC covers the ciphertext, so a wrong passphrase and a
tampered body are reported the same way, distinct from a malformed envelope.
"""

from __future__ import annotations

import binascii
import getpass
import hashlib
import hmac
import logging
import os
import re
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from converge.engine.errors import (
    VaultAuthenticationError,
    VaultError,
    VaultFormatError,
)

logger = logging.getLogger(__name__)

# Vault file header
VAULT_HEADER = "$ANSIBLE_VAULT"
VAULT_HEADER_REGEX = re.compile(r'^\$ANSIBLE_VAULT;(\d+\.\d+);(\w+)(?:;([\w.-]+))?$')

SALT_LENGTH = 32
KDF_ITERATIONS = 10000
KEY_LENGTH = 32
IV_LENGTH = 16
LINE_WIDTH = 80


class VaultText(str):
    """
    A string that was decrypted from a vault.

    Behaves like ``str`` everywhere; the type only marks the value as
    sensitive so reports can redact it.
    """

    __slots__ = ()

    def __repr__(self) -> str:
        return "VaultText('********')"


class VaultSecret:
    """Represents a vault password/secret."""

    def __init__(self, password: Union[str, bytes]):
        if isinstance(password, str):
            self.password = password.encode('utf-8')
        else:
            self.password = password
        if not self.password:
            raise VaultError("Vault password must not be empty")

    @classmethod
    def from_file(cls, password_file: Union[str, Path]) -> 'VaultSecret':
        """
        Load vault password from a file.

        An executable file is run as a script and its stdout is the password
        (not on Windows).
        """
        path = Path(password_file)
        if not path.exists():
            raise VaultError(f"Vault password file not found: {path}")

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
                raise VaultError(f"Vault password script failed: {result.stderr.strip()}")
            password = result.stdout.strip()
        else:
            password = path.read_text(encoding='utf-8').strip()

        return cls(password)

    @classmethod
    def from_prompt(cls, prompt: str = "Vault password: ") -> 'VaultSecret':
        """Read the vault password from the terminal."""
        return cls(getpass.getpass(prompt))


def is_encrypted(data: Union[str, bytes, None]) -> bool:
    """Check if data is a vault envelope."""
    if isinstance(data, bytes):
        try:
            data = data.decode('utf-8')
        except UnicodeDecodeError:
            return False

    if not isinstance(data, str):
        return False

    return data.lstrip().startswith(VAULT_HEADER)


class VaultLib:
    """
    Ansible Vault encryption library.

    Supports the AES256 cipher (the only format written since Ansible 2.4).
    Every call is independent; nothing derived from a secret is cached.
    """

    def __init__(self, secrets: Optional[List[VaultSecret]] = None):
        self.secrets = list(secrets or [])

    def add_secret(self, secret: VaultSecret) -> None:
        """Add a vault secret."""
        self.secrets.append(secret)

    @property
    def has_secrets(self) -> bool:
        return bool(self.secrets)

    def is_encrypted(self, data: Union[str, bytes, None]) -> bool:
        """Check if data is vault encrypted."""
        return is_encrypted(data)

    def decrypt(self, data: Union[str, bytes]) -> bytes:
        """
        Decrypt vault-encrypted data.

        Args:
            data: Vault envelope text

        Returns:
            Decrypted content as bytes

        Raises:
            VaultFormatError: the envelope is malformed
            VaultAuthenticationError: no configured secret authenticates it
            VaultError: no secret is configured
        """
        salt, expected_hmac, ciphertext = _parse_envelope(data)

        if not self.secrets:
            raise VaultError("Vault data found but no vault password was provided")

        for secret in self.secrets:
            try:
                return _decrypt_aes256(salt, expected_hmac, ciphertext, secret.password)
            except VaultAuthenticationError:
                continue

        raise VaultAuthenticationError(
            "Vault decryption failed: HMAC verification failed (wrong password?)"
        )

    def decrypt_text(self, data: Union[str, bytes]) -> VaultText:
        """Decrypt to a sensitive string."""
        plaintext = self.decrypt(data)
        try:
            return VaultText(plaintext.decode('utf-8'))
        except UnicodeDecodeError:
            raise VaultFormatError("Vault plaintext is not valid UTF-8")

    def decrypt_vars(self, data: Union[str, bytes]) -> Dict[str, Any]:
        """
        Decrypt a vault envelope holding a YAML mapping of variables.

        String values are returned as VaultText so they are redacted in
        reports.
        """
        text = self.decrypt_text(data)
        try:
            parsed = yaml.safe_load(str(text)) or {}
        except yaml.YAMLError as e:
            raise VaultFormatError(f"Decrypted vault content is not valid YAML: {e}")
        if not isinstance(parsed, dict):
            raise VaultFormatError(
                f"Decrypted vault content must be a mapping, got {type(parsed).__name__}"
            )
        return mark_sensitive(parsed)

    def decrypt_file(self, file_path: Union[str, Path]) -> bytes:
        """Decrypt a vault-encrypted file."""
        path = Path(file_path)
        if not path.exists():
            raise VaultError(f"Vault file not found: {path}")

        return self.decrypt(path.read_text(encoding='utf-8'))

    def encrypt(
        self,
        plaintext: Union[str, bytes],
        secret: Optional[VaultSecret] = None,
        vault_id: Optional[str] = None,
        salt: Optional[bytes] = None,
    ) -> str:
        """
        Encrypt plaintext into a vault envelope.

        Uses the first configured secret unless one is given. ``salt`` is
        only meant for reproducible fixtures.
        """
        secret = secret or (self.secrets[0] if self.secrets else None)
        if secret is None:
            raise VaultError("No vault password available for encryption")
        if isinstance(plaintext, str):
            plaintext = plaintext.encode('utf-8')

        salt = salt or os.urandom(SALT_LENGTH)
        key, hmac_key, iv = _derive_keys(secret.password, salt)

        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext) + padder.finalize()
        encryptor = Cipher(algorithms.AES(key), modes.CTR(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        signature = hmac.new(hmac_key, ciphertext, hashlib.sha256).hexdigest()
        inner = b"\n".join([
            binascii.hexlify(salt),
            signature.encode('ascii'),
            binascii.hexlify(ciphertext),
        ])
        body = binascii.hexlify(inner).decode('ascii')

        header = f"{VAULT_HEADER};1.2;AES256;{vault_id}" if vault_id else f"{VAULT_HEADER};1.1;AES256"
        lines = [header] + [body[i:i + LINE_WIDTH] for i in range(0, len(body), LINE_WIDTH)]
        return "\n".join(lines) + "\n"


def _parse_envelope(data: Union[str, bytes]) -> tuple:
    """Split a vault envelope into (salt, hmac, ciphertext) bytes."""
    if isinstance(data, bytes):
        try:
            data = data.decode('utf-8')
        except UnicodeDecodeError:
            raise VaultFormatError("Vault data is not valid UTF-8")

    if not isinstance(data, str):
        raise VaultFormatError("Invalid vault data type")

    lines = [line.strip() for line in data.strip().splitlines() if line.strip()]
    if not lines:
        raise VaultFormatError("Empty vault data")

    match = VAULT_HEADER_REGEX.match(lines[0])
    if not match:
        raise VaultFormatError(f"Invalid vault header: {lines[0][:60]}")

    version, cipher = match.group(1), match.group(2)
    if version not in ('1.1', '1.2'):
        raise VaultFormatError(f"Unsupported vault format version: {version}")
    if cipher != 'AES256':
        raise VaultFormatError(f"Unsupported vault cipher: {cipher}")

    try:
        inner = binascii.unhexlify(''.join(lines[1:]))
    except (binascii.Error, ValueError) as e:
        raise VaultFormatError(f"Invalid vault payload: {e}")

    parts = inner.split(b"\n", 2)
    if len(parts) != 3:
        raise VaultFormatError("Vault payload must contain salt, hmac and ciphertext")

    try:
        salt, expected_hmac, ciphertext = (binascii.unhexlify(p) for p in parts)
    except (binascii.Error, ValueError) as e:
        raise VaultFormatError(f"Invalid vault data format: {e}")

    if len(expected_hmac) != hashlib.sha256().digest_size or not salt:
        raise VaultFormatError("Vault payload has an invalid salt or hmac length")

    return salt, expected_hmac, ciphertext


def _derive_keys(password: bytes, salt: bytes) -> tuple:
    """PBKDF2-HMAC-SHA256 into (aes key, hmac key, iv)."""
    derived = hashlib.pbkdf2_hmac(
        'sha256', password, salt, KDF_ITERATIONS, 2 * KEY_LENGTH + IV_LENGTH
    )
    return derived[:KEY_LENGTH], derived[KEY_LENGTH:2 * KEY_LENGTH], derived[2 * KEY_LENGTH:]


def _decrypt_aes256(salt: bytes, expected_hmac: bytes, ciphertext: bytes, password: bytes) -> bytes:
    """Verify the HMAC, then AES-256-CTR decrypt and unpad."""
    key, hmac_key, iv = _derive_keys(password, salt)

    computed = hmac.new(hmac_key, ciphertext, hashlib.sha256).digest()
    if not hmac.compare_digest(computed, expected_hmac):
        raise VaultAuthenticationError("HMAC verification failed - wrong password?")

    decryptor = Cipher(algorithms.AES(key), modes.CTR(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError:
        raise VaultFormatError("Vault plaintext has invalid padding")


def mark_sensitive(value: Any) -> Any:
    """Recursively wrap string leaves as VaultText."""
    if isinstance(value, VaultText):
        return value
    if isinstance(value, str):
        return VaultText(value)
    if isinstance(value, dict):
        return {k: mark_sensitive(v) for k, v in value.items()}
    if isinstance(value, list):
        return [mark_sensitive(v) for v in value]
    return value


def load_yaml_with_vault(
    content: str,
    vault: Optional[VaultLib] = None,
    source: Optional[str] = None,
    multi: bool = False,
) -> Any:
    """
    Parse YAML that may be vault encrypted as a whole or contain ``!vault``
    tagged scalars. With ``multi`` every document is returned, as a list.

    Raises:
        VaultError: vault content is present but cannot be decrypted
        yaml.YAMLError: the document is not valid YAML
    """
    if is_encrypted(content):
        if vault is None or not vault.has_secrets:
            raise VaultError(f"{source or 'Vault data'} is encrypted but no vault password was provided")
        logger.debug("decrypting vault file %s", source or "<string>")
        if not multi:
            return vault.decrypt_vars(content)
        content = vault.decrypt(content).decode("utf-8")

    class _VaultLoader(yaml.SafeLoader):
        pass

    def _construct_vault(loader: yaml.SafeLoader, node: yaml.Node) -> VaultText:
        envelope = loader.construct_scalar(node)
        if vault is None or not vault.has_secrets:
            raise VaultError(
                f"Inline !vault value in {source or 'YAML data'} needs a vault password"
            )
        return vault.decrypt_text(envelope)

    _VaultLoader.add_constructor('!vault', _construct_vault)
    if multi:
        return list(yaml.load_all(content, Loader=_VaultLoader))
    return yaml.load(content, Loader=_VaultLoader)


def decrypt_vault_string(encrypted: str, password: str) -> str:
    """Convenience function to decrypt a vault string."""
    vault = VaultLib([VaultSecret(password)])
    return vault.decrypt(encrypted).decode('utf-8')


def encrypt_vault_string(plaintext: str, password: str, vault_id: Optional[str] = None) -> str:
    """Convenience function to encrypt a string."""
    return VaultLib([VaultSecret(password)]).encrypt(plaintext, vault_id=vault_id)
