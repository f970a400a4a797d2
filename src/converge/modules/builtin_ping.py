"""
Converge ping module

Check that a host is reachable and can run commands.
"""

from converge.engine.results import ModuleResult
from converge.modules.base import ReadOnlyModule, register_module


@register_module
class PingModule(ReadOnlyModule):
    """Round-trip a trivial command over the connection."""

    name = "ping"
    optional_args = {
        "data": "pong",
    }

    async def run(self) -> ModuleResult:
        data = self.get_arg("data", "pong")
        if data == "crash":
            raise RuntimeError("boom")

        connection = self.require_connection()
        result = await connection.run("true", shell=True)
        if not result.success:
            return ModuleResult.failure(
                f"ping command failed: {result.stderr.strip()}",
                rc=result.rc,
            )
        return ModuleResult(msg="", fields={"ping": data})
