"""
Vault CLI entrypoint for converge-vault.

Usage:
    converge-vault encrypt secrets.yml --vault-password-file .vault_pass
    converge-vault decrypt secrets.yml --output plain.yml
    converge-vault view secrets.yml
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from converge import __version__
from converge.engine.errors import ExitCode, VaultError
from converge.engine.vault import VaultLib, VaultSecret, is_encrypted


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for converge-vault."""
    parser = argparse.ArgumentParser(
        prog="converge-vault",
        description="Encrypt, decrypt and view Ansible Vault 1.1 files",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"converge-vault {__version__}",
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("file", help="File to operate on")
    common.add_argument(
        "--vault-password-file",
        dest="vault_password_file",
        default=None,
        help="File (or executable script) holding the vault password; prompts if omitted",
    )

    subparsers = parser.add_subparsers(dest="action", metavar="{encrypt,decrypt,view}")
    subparsers.required = True

    encrypt = subparsers.add_parser("encrypt", parents=[common], help="Encrypt a file")
    encrypt.add_argument("--output", default=None, help="Write here instead of in place ('-' for stdout)")
    encrypt.add_argument("--vault-id", dest="vault_id", default=None, help="Label written into the header")

    decrypt = subparsers.add_parser("decrypt", parents=[common], help="Decrypt a file")
    decrypt.add_argument("--output", default=None, help="Write here instead of in place ('-' for stdout)")

    subparsers.add_parser("view", parents=[common], help="Print the decrypted content")
    return parser


def _secret(password_file: Optional[str], confirm: bool = False) -> VaultSecret:
    if password_file:
        return VaultSecret.from_file(password_file)
    secret = VaultSecret.from_prompt("Vault password: ")
    if confirm:
        again = VaultSecret.from_prompt("Confirm vault password: ")
        if again.password != secret.password:
            raise VaultError("Passwords do not match")
    return secret


def _write(path: Path, output: Optional[str], text: str) -> None:
    if output == "-":
        sys.stdout.write(text)
        return
    target = Path(output) if output else path
    target.write_text(text, encoding="utf-8")


def main(args: Optional[List[str]] = None) -> int:
    """Main entrypoint for converge-vault CLI."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    path = Path(parsed.file)
    try:
        if not path.is_file():
            raise VaultError(f"File not found: {path}")
        content = path.read_text(encoding="utf-8")

        if parsed.action == "encrypt":
            if is_encrypted(content):
                raise VaultError(f"{path} is already encrypted")
            secret = _secret(parsed.vault_password_file, confirm=True)
            _write(path, parsed.output, VaultLib([secret]).encrypt(content, vault_id=parsed.vault_id))
            if parsed.output != "-":
                print("Encryption successful", file=sys.stderr)
            return ExitCode.SUCCESS

        if not is_encrypted(content):
            raise VaultError(f"{path} is not vault encrypted")
        vault = VaultLib([_secret(parsed.vault_password_file)])
        plaintext = vault.decrypt(content).decode("utf-8")

        if parsed.action == "view":
            sys.stdout.write(plaintext)
            return ExitCode.SUCCESS

        _write(path, parsed.output, plaintext)
        if parsed.output != "-":
            print("Decryption successful", file=sys.stderr)
        return ExitCode.SUCCESS
    except VaultError as e:
        print(f"ERROR! {e}", file=sys.stderr)
        return e.exit_code
    except KeyboardInterrupt:
        return ExitCode.KEYBOARD_INTERRUPT


if __name__ == "__main__":
    sys.exit(main())
