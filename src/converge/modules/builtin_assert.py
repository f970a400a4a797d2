"""
Converge assert module

Assert conditions during playbook execution.
"""

from converge.engine.errors import PreconditionError, TemplateError
from converge.engine.results import ModuleResult
from converge.engine.templating import TemplateEngine
from converge.modules.base import ReadOnlyModule, register_module


@register_module
class AssertModule(ReadOnlyModule):
    """
    Assert conditions are true.

    A condition that does not hold raises ``PreconditionError``, which the
    executor records as a failed task.
    """

    name = "assert"
    required_args = ["that"]
    optional_args = {
        "msg": None,
        "success_msg": None,
        "fail_msg": None,
        "quiet": False,
    }

    async def run(self) -> ModuleResult:
        that = self.args["that"]
        conditions = [that] if isinstance(that, (str, bool)) else list(that)
        templar = self.context.templar or TemplateEngine()

        failed_conditions = []
        for condition in conditions:
            try:
                if not templar.evaluate_when(condition, self.context.variables):
                    failed_conditions.append(str(condition))
            except TemplateError as e:
                failed_conditions.append(f"{condition} (error: {e.message})")

        if failed_conditions:
            msg = self.get_arg("fail_msg") or self.get_arg("msg")
            raise PreconditionError(
                self.name,
                self.context.host.name,
                msg or f"Assertion failed: {', '.join(failed_conditions)}",
            )

        quiet = self.get_arg("quiet", False)
        return ModuleResult(
            msg="" if quiet else (self.get_arg("success_msg") or "All assertions passed"),
            fields={"evaluated": [str(c) for c in conditions]},
        )
