"""
Shared fixtures: an in-memory host world and a recording RemoteExecutor.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pytest

from converge.connections.base import Connection, Escalation, RunResult
from converge.engine.config import RunConfig
from converge.engine.errors import ConnectivityError
from converge.engine.executor import Executor
from converge.engine.inventory import Host, load_inventory
from converge.engine.plan import PlanBuilder
from converge.engine.playbook import load_playbook
from converge.engine.remote import ConnectionRemoteExecutor
from converge.engine.results import RunReport
from converge.engine.vault import VaultLib


class MemoryWorld:
    """Files and command outcomes for a set of fake hosts."""

    def __init__(self) -> None:
        self.files: Dict[Tuple[str, str], bytes] = {}
        self.dirs: set = set()
        self.commands: List[Tuple[str, str]] = []
        self.results: Dict[Tuple[str, str], RunResult] = {}
        self.delays: Dict[str, float] = {}

    def set_result(self, command: str, rc: int = 0, stdout: str = "", stderr: str = "", host: str = "*") -> None:
        self.results[(host, command)] = RunResult(rc=rc, stdout=stdout, stderr=stderr)

    def commands_on(self, host: str) -> List[str]:
        return [cmd for name, cmd in self.commands if name == host]


class MemoryConnection(Connection):
    """Connection backed by a MemoryWorld."""

    def __init__(self, host: Host, world: MemoryWorld):
        super().__init__(host)
        self.world = world
        self.connected = False

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.connected = False

    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
        environment: Optional[Dict[str, str]] = None,
        become: Optional[Escalation] = None,
    ) -> RunResult:
        name = self.host.name
        self.world.commands.append((name, command))
        delay = self.world.delays.get(command)
        if delay:
            await asyncio.sleep(delay)
        result = self.world.results.get((name, command)) or self.world.results.get(("*", command))
        return result or RunResult(rc=0, stdout="", stderr="")

    async def put_content(self, content: bytes, remote_path: str, mode: Optional[str] = None) -> None:
        self.world.files[(self.host.name, remote_path)] = content

    async def get_content(self, remote_path: str) -> Optional[bytes]:
        return self.world.files.get((self.host.name, remote_path))

    async def stat(self, remote_path: str) -> Optional[dict]:
        key = (self.host.name, remote_path)
        if key in self.world.files:
            return {'exists': True, 'isdir': False, 'isfile': True, 'mode': '0644',
                    'size': len(self.world.files[key])}
        if key in self.world.dirs:
            return {'exists': True, 'isdir': True, 'isfile': False, 'mode': '0755', 'size': 0}
        return None

    async def mkdir(self, remote_path: str, mode: Optional[str] = None) -> None:
        self.world.dirs.add((self.host.name, remote_path))

    async def remove(self, remote_path: str) -> None:
        key = (self.host.name, remote_path)
        self.world.files.pop(key, None)
        self.world.dirs.discard(key)


@dataclass
class Call:
    host: str
    module: str
    params: Dict[str, Any]
    check_mode: bool
    escalate: Optional[Escalation]
    no_log: bool = False


class FakeRemote(ConnectionRemoteExecutor):
    """Runs the real modules against MemoryConnections and records every call."""

    def __init__(self, world: Optional[MemoryWorld] = None, unreachable: Iterable[str] = ()):
        self.world = world or MemoryWorld()
        super().__init__(connection_factory=lambda host: MemoryConnection(host, self.world))
        self.unreachable = set(unreachable)
        self.calls: List[Call] = []
        self.opened: List[str] = []
        self.closed: List[str] = []

    async def open(self, host: Host) -> Connection:
        if host.name in self.unreachable:
            raise ConnectivityError(host.name, "No route to host", connection_type="memory")
        self.opened.append(host.name)
        return await super().open(host)

    async def invoke(self, connection, module_name, params, *, escalate, check_mode, variables, no_log=False):
        self.calls.append(Call(connection.host.name, module_name, dict(params), check_mode, escalate, no_log))
        return await super().invoke(
            connection,
            module_name,
            params,
            escalate=escalate,
            check_mode=check_mode,
            variables=variables,
            no_log=no_log,
        )

    async def close(self, connection) -> None:
        self.closed.append(connection.host.name)
        await super().close(connection)

    def modules_on(self, host: str) -> List[str]:
        return [c.module for c in self.calls if c.host == host]


TWO_HOSTS = {'all': {'children': {'web': {'hosts': {'web1': {}, 'web2': {}}}}}}


@pytest.fixture
def world():
    return MemoryWorld()


@pytest.fixture
def remote(world):
    return FakeRemote(world)


@pytest.fixture
def make_remote(world):
    """Build a FakeRemote over the shared world with some hosts unreachable."""

    def _make(unreachable: Iterable[str] = ()) -> FakeRemote:
        return FakeRemote(world, unreachable=unreachable)

    return _make


@pytest.fixture
def converge(tmp_path):
    """Return an async helper that runs playbook text and returns the report."""

    async def _run(
        playbook: str,
        inventory: Optional[Dict[str, Any]] = None,
        remote: Optional[FakeRemote] = None,
        config: Optional[RunConfig] = None,
        vault: Optional[VaultLib] = None,
    ) -> RunReport:
        path = tmp_path / "site.yml"
        path.write_text(playbook)
        plays = load_playbook(path, vault=vault)
        manager = load_inventory(inventory or TWO_HOSTS)
        config = config or RunConfig()
        plan = PlanBuilder(manager, config).build(plays)
        executor = Executor(remote or FakeRemote(), manager, config)
        return await executor.run(plan)

    return _run

