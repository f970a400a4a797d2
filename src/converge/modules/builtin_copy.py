"""
Converge copy module

Copy files or inline content to target hosts.
"""

import hashlib
from pathlib import Path
from typing import Optional, Tuple

from converge.engine.results import ModuleResult
from converge.modules.base import Module, register_module


def _checksum(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


@register_module
class CopyModule(Module):
    """
    Copy files from the control node to target hosts.

    Supports:
    - File copying with optional mode
    - Content-based copying (inline content)
    - Idempotency via checksum comparison
    """

    name = "copy"
    supports_check_mode = True
    required_args = ["dest"]
    optional_args = {
        "src": None,
        "content": None,
        "mode": None,
        "force": True,
    }

    def validate_args(self) -> Optional[str]:
        error = super().validate_args()
        if error:
            return error
        if self.args.get("src") is None and self.args.get("content") is None:
            return "Either 'src' or 'content' is required"
        if self.args.get("src") is not None and self.args.get("content") is not None:
            return "'src' and 'content' are mutually exclusive"
        return None

    def _payload(self) -> bytes:
        content = self.get_arg("content")
        if content is not None:
            return content.encode("utf-8") if isinstance(content, str) else str(content).encode("utf-8")
        src_path = Path(self.get_arg("src"))
        base = self.context.variables.get("playbook_dir")
        if not src_path.is_absolute() and base:
            for candidate in (Path(base) / "files" / src_path, Path(base) / src_path):
                if candidate.is_file():
                    src_path = candidate
                    break
        if not src_path.is_file():
            raise FileNotFoundError(f"Source file not found: {src_path}")
        return src_path.read_bytes()

    async def _plan(self) -> Tuple[bool, bytes, str]:
        """Work out whether ``dest`` needs writing. Returns (changed, payload, dest)."""
        connection = self.require_connection()
        dest = str(self.args["dest"])
        payload = self._payload()

        if dest.endswith("/") and self.get_arg("src"):
            dest = dest + Path(self.get_arg("src")).name

        current = await connection.get_content(dest)
        if current is None:
            return True, payload, dest
        if not self.get_arg("force", True):
            return False, payload, dest
        return _checksum(current) != _checksum(payload), payload, dest

    def _result(self, changed: bool, payload: bytes, dest: str) -> ModuleResult:
        return ModuleResult(
            changed=changed,
            fields={
                "dest": dest,
                "checksum": _checksum(payload),
                "size": len(payload),
            },
        )

    async def check(self) -> ModuleResult:
        try:
            changed, payload, dest = await self._plan()
        except FileNotFoundError as e:
            return ModuleResult.failure(str(e))
        return self._result(changed, payload, dest)

    async def run(self) -> ModuleResult:
        try:
            changed, payload, dest = await self._plan()
        except FileNotFoundError as e:
            return ModuleResult.failure(str(e))

        if changed:
            await self.require_connection().put_content(payload, dest, mode=self.get_arg("mode"))
        return self._result(changed, payload, dest)
