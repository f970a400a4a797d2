"""
Converge Local Connection

Execute commands on the control node itself.
"""

import asyncio
import logging
import os
import shlex
import shutil
from pathlib import Path
from typing import Dict, Optional

from converge.connections.base import Connection, Escalation, RunResult
from converge.engine.inventory import Host

logger = logging.getLogger(__name__)


class LocalConnection(Connection):
    """
    Local connection - execute commands on the control node.

    Used for localhost execution without any network operations.
    """

    def __init__(self, host: Host):
        super().__init__(host)
        self._connected = False

    async def connect(self) -> None:
        """Local connection is always available."""
        self._connected = True

    async def close(self) -> None:
        self._connected = False

    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
        environment: Optional[Dict[str, str]] = None,
        become: Optional[Escalation] = None,
    ) -> RunResult:
        env = os.environ.copy()
        if environment:
            env.update({k: str(v) for k, v in environment.items()})

        if become is not None:
            command = become.wrap(command)
            shell = True

        if self.no_log:
            logger.debug("local run: <hidden, no_log>")
        else:
            logger.debug("local run: %s", command)
        try:
            if shell:
                process = await asyncio.create_subprocess_shell(
                    command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=env,
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    *shlex.split(command),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=env,
                )
        except OSError as e:
            return RunResult(rc=127, stdout="", stderr=str(e))

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return RunResult(rc=124, stdout="", stderr="Command timed out")
        except asyncio.CancelledError:
            # Reap the child so it does not linger as a zombie
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()
            raise

        return RunResult(
            rc=process.returncode or 0,
            stdout=stdout_bytes.decode('utf-8', errors='replace'),
            stderr=stderr_bytes.decode('utf-8', errors='replace'),
        )

    async def put_content(self, content: bytes, remote_path: str, mode: Optional[str] = None) -> None:
        dest = Path(remote_path)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(content)
        if mode:
            os.chmod(dest, int(str(mode), 8))

    async def get_content(self, remote_path: str) -> Optional[bytes]:
        path = Path(remote_path)
        if not path.is_file():
            return None
        return path.read_bytes()

    async def stat(self, remote_path: str) -> Optional[dict]:
        path = Path(remote_path)
        if not path.exists() and not path.is_symlink():
            return None

        st = path.lstat()
        return {
            'exists': True,
            'isdir': path.is_dir(),
            'isfile': path.is_file(),
            'islink': path.is_symlink(),
            'size': st.st_size,
            'mtime': st.st_mtime,
            'mode': oct(st.st_mode)[-4:],
            'uid': st.st_uid,
            'gid': st.st_gid,
        }

    async def mkdir(self, remote_path: str, mode: Optional[str] = None) -> None:
        path = Path(remote_path)
        path.mkdir(parents=True, exist_ok=True)
        if mode:
            os.chmod(path, int(str(mode), 8))

    async def remove(self, remote_path: str) -> None:
        path = Path(remote_path)
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        elif path.exists() or path.is_symlink():
            path.unlink()
