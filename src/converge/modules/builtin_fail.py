"""
Converge fail module

Fail the host with a message.
"""

from converge.engine.results import ModuleResult
from converge.modules.base import ReadOnlyModule, register_module


@register_module
class FailModule(ReadOnlyModule):
    """Use this to explicitly fail a host based on conditions."""

    name = "fail"
    optional_args = {
        "msg": "Failed as requested from task",
    }

    async def run(self) -> ModuleResult:
        return ModuleResult.failure(str(self.get_arg("msg")))
