"""
Converge set_fact module

Set host facts (variables) during playbook execution.
"""

from converge.engine.results import ModuleResult
from converge.modules.base import ReadOnlyModule, register_module


@register_module
class SetFactModule(ReadOnlyModule):
    """
    Set host facts from task arguments.

    The executor merges the returned ``ansible_facts`` into the host's
    registered variables, so they are visible to later tasks on that host.
    """

    name = "set_fact"
    optional_args = {
        "cacheable": False,
    }

    def validate_args(self):
        if not any(key != "cacheable" for key in self.args):
            return "set_fact needs at least one fact"
        return None

    async def run(self) -> ModuleResult:
        facts = {key: value for key, value in self.args.items() if key != "cacheable"}
        return ModuleResult(
            changed=False,
            fields={"ansible_facts": facts},
        )
