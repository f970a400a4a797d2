"""
Converge Connection Base Class

Abstract base class for all connection types.
"""

import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

from converge.engine.inventory import Host


@dataclass(frozen=True)
class Escalation:
    """Privilege escalation settings passed through to the host."""

    user: str = "root"
    method: str = "sudo"

    def wrap(self, command: str) -> str:
        """Wrap a shell command so it runs as ``user``."""
        if self.method == "su":
            return f"su - {self.user} -c {shlex.quote(command)}"
        if self.method == "doas":
            return f"doas -u {self.user} sh -c {shlex.quote(command)}"
        return f"sudo -n -u {self.user} sh -c {shlex.quote(command)}"


@dataclass(frozen=True)
class RunResult:
    """Result of running a command on a host."""

    rc: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.rc == 0


class Connection(ABC):
    """
    Abstract base class for connections.

    Transports (local, SSH, WinRM) implement this interface; modules only
    talk to hosts through it.
    """

    def __init__(self, host: Host):
        self.host = host
        # Set per invocation; hides command lines from debug logs
        self.no_log = False

    @abstractmethod
    async def connect(self) -> None:
        """Establish the connection."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""

    @abstractmethod
    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
        environment: Optional[Dict[str, str]] = None,
        become: Optional[Escalation] = None,
    ) -> RunResult:
        """
        Run a command on the host.

        Args:
            command: Command to execute
            shell: If True, run through a shell
            timeout: Optional timeout in seconds
            cwd: Working directory
            environment: Environment variables
            become: Run the command with escalated privileges

        Returns:
            RunResult with rc, stdout, stderr
        """

    @abstractmethod
    async def put_content(self, content: bytes, remote_path: str, mode: Optional[str] = None) -> None:
        """Write ``content`` to ``remote_path``, creating parent directories."""

    @abstractmethod
    async def get_content(self, remote_path: str) -> Optional[bytes]:
        """Read a file, or None if it does not exist."""

    @abstractmethod
    async def stat(self, remote_path: str) -> Optional[dict]:
        """
        Get file/directory information.

        Returns:
            Dict with 'exists', 'isdir', 'isfile', 'size', 'mtime', 'mode'
            or None if not found
        """

    @abstractmethod
    async def mkdir(self, remote_path: str, mode: Optional[str] = None) -> None:
        """Create a directory (and parents)."""

    @abstractmethod
    async def remove(self, remote_path: str) -> None:
        """Remove a file or directory tree."""

    @property
    def connection_type(self) -> str:
        """Return the connection type name."""
        return self.__class__.__name__.replace('Connection', '').lower()
