"""
Converge Remote Executor

The seam between the executor and hosts. The executor only ever opens,
invokes and closes through a ``RemoteExecutor``; transports and modules live
behind it.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Mapping, Optional

from converge.connections import Connection, Escalation, create_connection
from converge.engine.errors import ConnectivityError
from converge.engine.inventory import Host
from converge.engine.results import ModuleResult
from converge.engine.templating import TemplateEngine
from converge.modules.base import ModuleContext, get_module

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[Host], Connection]


class RemoteExecutor(ABC):
    """Opens connections to hosts and runs modules over them."""

    @abstractmethod
    async def open(self, host: Host) -> Any:
        """
        Open a connection to ``host``.

        Raises:
            ConnectivityError: The host cannot be reached
        """

    @abstractmethod
    async def invoke(
        self,
        connection: Any,
        module_name: str,
        params: Mapping[str, Any],
        *,
        escalate: Optional[Escalation],
        check_mode: bool,
        variables: Mapping[str, Any],
        no_log: bool = False,
    ) -> ModuleResult:
        """
        Run one module with rendered params.

        In check mode the module's ``check()`` path runs instead of ``run()``.
        With ``no_log`` the transport must keep params and command lines out
        of its logs.

        Raises:
            ConnectivityError: The connection was lost
            ModuleExecutionError: The module raised a reportable failure
        """

    @abstractmethod
    async def close(self, connection: Any) -> None:
        """Close a connection returned by ``open``."""


class ConnectionRemoteExecutor(RemoteExecutor):
    """Runs registered modules over ``converge.connections`` connections."""

    def __init__(
        self,
        connection_factory: Optional[ConnectionFactory] = None,
        templar: Optional[TemplateEngine] = None,
        diff_mode: bool = False,
    ):
        self.connection_factory = connection_factory or create_connection
        self.templar = templar
        self.diff_mode = diff_mode

    async def open(self, host: Host) -> Connection:
        connection = self.connection_factory(host)
        try:
            await connection.connect()
        except OSError as e:
            raise ConnectivityError(host.name, str(e), connection_type=connection.connection_type)
        logger.debug("host=%s connected (%s)", host.name, connection.connection_type)
        return connection

    async def invoke(
        self,
        connection: Connection,
        module_name: str,
        params: Mapping[str, Any],
        *,
        escalate: Optional[Escalation],
        check_mode: bool,
        variables: Mapping[str, Any],
        no_log: bool = False,
    ) -> ModuleResult:
        module_class = get_module(module_name)
        if module_class is None:
            return ModuleResult.failure(f"Unknown module: {module_name}")

        context = ModuleContext(
            host=connection.host,
            connection=connection,
            variables=variables,
            become=escalate,
            check_mode=check_mode,
            diff_mode=self.diff_mode,
            templar=self.templar,
            no_log=no_log,
        )
        args: Dict[str, Any] = dict(params)
        module = module_class(args, context)

        error = module.validate_args()
        if error:
            return ModuleResult.failure(error)

        connection.no_log = no_log
        try:
            if check_mode:
                return await module.check()
            return await module.run()
        finally:
            connection.no_log = False

    async def close(self, connection: Connection) -> None:
        await connection.close()
