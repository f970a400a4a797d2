"""
Converge file module

Manage file and directory presence and permissions.
"""

import shlex
from typing import List, Optional

from converge.engine.results import ModuleResult
from converge.modules.base import Module, register_module

STATES = ("file", "directory", "touch", "absent")


def _normalize_mode(mode) -> Optional[str]:
    if mode is None:
        return None
    if isinstance(mode, int):
        # YAML 1.1 reads an unquoted 0644 as the int 420
        mode = format(mode, "o")
    return str(mode).lstrip("0o").rjust(4, "0")[-4:]


@register_module
class FileModule(Module):
    """
    Manage files and directories.

    Supports:
    - Creating directories (state: directory)
    - Creating empty files (state: touch)
    - Deleting files/directories (state: absent)
    - Checking existence (state: file)
    - Setting mode/permissions
    """

    name = "file"
    supports_check_mode = True
    required_args = ["path"]
    optional_args = {
        "state": "file",
        "mode": None,
    }

    def validate_args(self) -> Optional[str]:
        error = super().validate_args()
        if error:
            return error
        state = self.get_arg("state")
        if state not in STATES:
            return f"Unknown state: {state}. Supported: {', '.join(STATES)}"
        return None

    async def _plan(self) -> List[str]:
        """Actions needed to reach the desired state, in order."""
        path = str(self.args["path"])
        state = self.get_arg("state")
        mode = _normalize_mode(self.get_arg("mode"))
        stat = await self.require_connection().stat(path)

        if state == "absent":
            return ["remove"] if stat else []

        if state == "file":
            if not stat:
                raise FileNotFoundError(f"file ({path}) is absent, cannot continue")
            if stat.get("isdir"):
                raise IsADirectoryError(f"Path is a directory, not a file: {path}")
        elif stat and state == "directory" and not stat.get("isdir"):
            raise NotADirectoryError(f"Path exists but is not a directory: {path}")
        elif stat and state == "touch" and stat.get("isdir"):
            raise IsADirectoryError(f"Path is a directory, cannot touch: {path}")

        actions = []
        if not stat:
            actions.append("mkdir" if state == "directory" else "touch")
        if mode and (not stat or stat.get("mode") != mode):
            actions.append("chmod")
        return actions

    async def check(self) -> ModuleResult:
        try:
            actions = await self._plan()
        except OSError as e:
            return ModuleResult.failure(str(e))
        return self._result(actions)

    async def run(self) -> ModuleResult:
        try:
            actions = await self._plan()
        except OSError as e:
            return ModuleResult.failure(str(e))

        connection = self.require_connection()
        path = str(self.args["path"])
        mode = _normalize_mode(self.get_arg("mode"))
        for action in actions:
            if action == "remove":
                await connection.remove(path)
            elif action == "mkdir":
                await connection.mkdir(path)
            elif action == "touch":
                await connection.put_content(b"", path)
            elif action == "chmod":
                result = await connection.run(
                    f"chmod {mode} {shlex.quote(path)}",
                    become=self.context.become,
                )
                if not result.success:
                    return ModuleResult.failure(
                        f"Failed to set mode on {path}: {result.stderr.strip()}",
                        rc=result.rc,
                    )
        return self._result(actions)

    def _result(self, actions: List[str]) -> ModuleResult:
        return ModuleResult(
            changed=bool(actions),
            fields={
                "path": str(self.args["path"]),
                "state": self.get_arg("state"),
            },
        )
