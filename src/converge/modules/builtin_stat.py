"""
Converge stat module

Retrieve file or directory status.
"""

import hashlib

from converge.engine.results import ModuleResult
from converge.modules.base import ReadOnlyModule, register_module


@register_module
class StatModule(ReadOnlyModule):
    """
    Retrieve file or directory status.

    Returns facts about the specified path under ``stat``:
    exists, isdir, isreg, islnk, mode, size, uid, gid, checksum.
    """

    name = "stat"
    required_args = ["path"]
    optional_args = {
        "get_checksum": True,
    }

    async def run(self) -> ModuleResult:
        path = str(self.args["path"])
        connection = self.require_connection()
        stat_info = await connection.stat(path)

        if stat_info is None:
            return ModuleResult(fields={"stat": {"exists": False, "path": path}})

        stat_result = {
            "exists": True,
            "path": path,
            "isdir": stat_info.get("isdir", False),
            "isreg": stat_info.get("isfile", False),
            "islnk": stat_info.get("islink", False),
            "mode": stat_info.get("mode", ""),
            "size": stat_info.get("size", 0),
            "mtime": stat_info.get("mtime"),
            "uid": stat_info.get("uid", 0),
            "gid": stat_info.get("gid", 0),
        }
        if stat_result["isreg"] and self.get_arg("get_checksum", True):
            content = await connection.get_content(path)
            if content is not None:
                stat_result["checksum"] = hashlib.sha1(content).hexdigest()

        return ModuleResult(fields={"stat": stat_result})
