"""
Converge debug module

Print debug messages during playbook execution.
"""

import json
from typing import Any, Mapping

from converge.engine.results import ModuleResult
from converge.modules.base import ReadOnlyModule, register_module


def _resolve_dotted_var(data: Mapping[str, Any], var_path: str) -> Any:
    """
    Resolve a dotted variable path like 'cmd_result.stdout'.

    Returns the value or raises KeyError if not found.
    """
    value: Any = data
    for part in var_path.split('.'):
        if isinstance(value, Mapping):
            if part not in value:
                raise KeyError(part)
            value = value[part]
        elif isinstance(value, (list, tuple)):
            try:
                value = value[int(part)]
            except (ValueError, IndexError):
                raise KeyError(part)
        else:
            raise KeyError(part)
    return value


@register_module
class DebugModule(ReadOnlyModule):
    """
    Print debug messages.

    Useful for printing variable values and troubleshooting playbooks.
    """

    name = "debug"
    optional_args = {
        "msg": "Hello world!",
        "var": None,
        "verbosity": 0,
    }

    def validate_args(self):
        if "msg" in self.args and "var" in self.args:
            return "'msg' and 'var' are mutually exclusive"
        return None

    async def run(self) -> ModuleResult:
        var = self.get_arg("var")

        if var:
            try:
                var_value = _resolve_dotted_var(self.context.variables, str(var))
            except KeyError:
                var_value = "VARIABLE IS NOT DEFINED!"
            if isinstance(var_value, (dict, list)):
                output = f"{var}: {json.dumps(var_value, indent=2, default=str)}"
            else:
                output = f"{var}: {var_value}"
            return ModuleResult(msg=output, fields={str(var): var_value})

        msg = self.get_arg("msg")
        output = msg if isinstance(msg, str) else json.dumps(msg, default=str)
        return ModuleResult(msg=output)
