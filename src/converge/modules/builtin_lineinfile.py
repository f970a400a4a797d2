"""
Converge lineinfile module

Manage lines in text files.
"""

import re
from typing import List, Optional, Tuple

from converge.engine.results import ModuleResult
from converge.modules.base import Module, register_module


def ensure_present(lines: List[str], line: str, regexp: Optional[str] = None) -> bool:
    """Ensure line is present, replacing the last regexp match if given."""
    if regexp:
        pattern = re.compile(regexp)
        matches = [i for i, existing in enumerate(lines) if pattern.search(existing)]
        if matches:
            index = matches[-1]
            if lines[index] == line:
                return False
            lines[index] = line
            return True
    if line in lines:
        return False
    lines.append(line)
    return True


def ensure_absent(lines: List[str], line: Optional[str] = None, regexp: Optional[str] = None) -> bool:
    """Remove matching lines."""
    if regexp:
        pattern = re.compile(regexp)
        kept = [existing for existing in lines if not pattern.search(existing)]
    else:
        kept = [existing for existing in lines if existing != line]
    if len(kept) == len(lines):
        return False
    lines[:] = kept
    return True


@register_module
class LineinfileModule(Module):
    """
    Ensure a particular line is in a file, or replace an existing line.

    Similar to Ansible's lineinfile module but with a simpler implementation.
    """

    name = "lineinfile"
    supports_check_mode = True
    required_args = ["path"]
    optional_args = {
        "line": None,
        "regexp": None,
        "state": "present",
        "create": False,
        "mode": None,
    }

    def validate_args(self) -> Optional[str]:
        error = super().validate_args()
        if error:
            return error
        state = self.get_arg("state")
        if state not in ("present", "absent"):
            return f"Unknown state: {state}"
        if state == "present" and self.args.get("line") is None:
            return "'line' is required when state=present"
        if state == "absent" and self.args.get("line") is None and self.args.get("regexp") is None:
            return "'line' or 'regexp' required when state=absent"
        return None

    async def _plan(self) -> Tuple[bool, Optional[bytes], str]:
        """Returns (changed, new content, message)."""
        path = str(self.args["path"])
        state = self.get_arg("state")
        current = await self.require_connection().get_content(path)

        if current is None:
            if state == "absent":
                return False, None, "file not present"
            if not self.get_arg("create"):
                raise FileNotFoundError(f"Destination {path} does not exist !")
            text = ""
        else:
            text = current.decode("utf-8")

        lines = text.splitlines()
        line = self.get_arg("line")
        regexp = self.get_arg("regexp")
        if state == "present":
            changed = ensure_present(lines, str(line), regexp)
            msg = "line added" if changed else ""
        else:
            changed = ensure_absent(lines, line, regexp)
            msg = "line(s) removed" if changed else ""

        if not changed and current is not None:
            return False, None, msg
        new_text = "\n".join(lines)
        if lines:
            new_text += "\n"
        return True, new_text.encode("utf-8"), msg or "file created"

    async def check(self) -> ModuleResult:
        try:
            changed, _, msg = await self._plan()
        except FileNotFoundError as e:
            return ModuleResult.failure(str(e), rc=257)
        return ModuleResult(changed=changed, msg=msg, fields={"path": str(self.args["path"])})

    async def run(self) -> ModuleResult:
        try:
            changed, content, msg = await self._plan()
        except FileNotFoundError as e:
            return ModuleResult.failure(str(e), rc=257)

        if changed and content is not None:
            await self.require_connection().put_content(
                content, str(self.args["path"]), mode=self.get_arg("mode")
            )
        return ModuleResult(changed=changed, msg=msg, fields={"path": str(self.args["path"])})
