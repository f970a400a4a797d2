"""
Converge command and shell modules

Execute commands on the target host.
"""

import shlex
from typing import Optional

from converge.engine.results import ModuleResult
from converge.modules.base import Module, register_module


@register_module
class CommandModule(Module):
    """
    Execute commands on target hosts.

    Unlike shell, this module does not process commands through a shell,
    so shell operators and variables won't work.
    """

    name = "command"
    use_shell = False
    optional_args = {
        "cmd": None,
        "argv": None,
        "chdir": None,
        "creates": None,
        "removes": None,
        "stdin": None,
    }

    def validate_args(self) -> Optional[str]:
        if not any(self.args.get(k) for k in ("_raw_params", "cmd", "argv")):
            return "Either free-form command, 'cmd' or 'argv' is required"
        return None

    def command_line(self) -> str:
        argv = self.args.get("argv")
        if argv:
            return " ".join(shlex.quote(str(a)) for a in argv)
        return str(self.args.get("_raw_params") or self.args.get("cmd"))

    async def _guard(self) -> Optional[ModuleResult]:
        """Apply creates/removes; a result means the command must not run."""
        connection = self.require_connection()
        creates = self.get_arg("creates")
        if creates and await connection.stat(creates):
            return ModuleResult(msg=f"skipped, since {creates} exists", fields={"rc": 0})
        removes = self.get_arg("removes")
        if removes and not await connection.stat(removes):
            return ModuleResult(msg=f"skipped, since {removes} does not exist", fields={"rc": 0})
        return None

    async def check(self) -> ModuleResult:
        guarded = await self._guard()
        if guarded is not None:
            return guarded
        return await super().check()

    async def run(self) -> ModuleResult:
        guarded = await self._guard()
        if guarded is not None:
            return guarded

        cmd = self.command_line()
        result = await self.require_connection().run(
            cmd,
            shell=self.use_shell,
            cwd=self.get_arg("chdir"),
            become=self.context.become,
        )
        fields = {
            "cmd": cmd,
            "rc": result.rc,
            "stdout": result.stdout.rstrip("\n"),
            "stderr": result.stderr.rstrip("\n"),
        }
        if result.rc != 0:
            return ModuleResult(
                changed=True,
                failed=True,
                msg=f"non-zero return code: {result.rc}",
                fields=fields,
            )
        return ModuleResult(changed=True, fields=fields)


@register_module
class ShellModule(CommandModule):
    """Execute commands through ``/bin/sh`` (pipes, redirects, variables)."""

    name = "shell"
    use_shell = True
    optional_args = {
        **CommandModule.optional_args,
        "executable": None,
    }

    def command_line(self) -> str:
        cmd = super().command_line()
        executable = self.get_arg("executable")
        if executable:
            return f"{executable} -c {shlex.quote(cmd)}"
        return cmd
