"""
Converge Playbook Runner

Wires the pieces together for one run: vault secrets, inventory, playbooks,
the run plan and the executor. Everything is loaded and validated before the
first task runs, so parse, inventory and vault errors never leave a host
half-converged.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional, Sequence, Union

from converge.engine.config import RunConfig
from converge.engine.display import Display
from converge.engine.errors import (
    ConvergeError,
    ExitCode,
    InventoryError,
    ParseError,
    TemplateError,
    UnsupportedFeatureError,
    VaultError,
)
from converge.engine.executor import Executor
from converge.engine.handlers import HandlerDispatcher
from converge.engine.inventory import InventoryManager, load_inventory
from converge.engine.plan import PlanBuilder, RunPlan
from converge.engine.playbook import Play, load_playbook
from converge.engine.remote import ConnectionRemoteExecutor, RemoteExecutor
from converge.engine.results import RunReport
from converge.engine.templating import TemplateEngine
from converge.engine.vault import VaultLib, VaultSecret

logger = logging.getLogger(__name__)


class PlaybookRunner:
    """
    Main playbook execution orchestrator.

    Handles:
    - Vault secret setup
    - Inventory and playbook loading
    - Plan building (tags, limit, loops)
    - Execution and the final recap
    """

    def __init__(
        self,
        inventory_source: Union[str, Path],
        playbook_paths: Sequence[Union[str, Path]],
        config: Optional[RunConfig] = None,
        vault_password_file: Optional[str] = None,
        vault_password: Optional[str] = None,
        ask_vault_pass: bool = False,
        remote: Optional[RemoteExecutor] = None,
        display: Optional[Display] = None,
    ):
        self.inventory_source = inventory_source
        self.playbook_paths = [Path(p) for p in playbook_paths]
        self.config = config or RunConfig()
        self.vault_password_file = vault_password_file
        self.vault_password = vault_password
        self.ask_vault_pass = ask_vault_pass
        self.templar = TemplateEngine(self.config.variable_start, self.config.variable_end)
        self.remote = remote or ConnectionRemoteExecutor(templar=self.templar, diff_mode=self.config.diff_mode)
        self.display = display or Display(self.config.verbosity, self.config.json_output)

        self.inventory: Optional[InventoryManager] = None
        self.report = RunReport()
        self._vault: Optional[VaultLib] = None

    def _init_vault(self) -> Optional[VaultLib]:
        """Build the vault from whatever password sources were given."""
        secrets: List[VaultSecret] = []
        if self.vault_password_file:
            secrets.append(VaultSecret.from_file(self.vault_password_file))
        if self.vault_password:
            secrets.append(VaultSecret(self.vault_password))
        if self.ask_vault_pass:
            secrets.append(VaultSecret.from_prompt())
        if not secrets:
            return None
        return VaultLib(secrets)

    def run(self) -> int:
        """
        Run playbooks synchronously.

        Returns:
            Exit code (0=success, 2=host failures, 3=parse error, 4=unsupported)
        """
        try:
            # Password prompts, scripts and file reads happen before the loop starts
            plan = self.load()
            report = asyncio.run(self.execute(plan))
        except KeyboardInterrupt:
            self._report_error("interrupted", "Execution interrupted", ExitCode.KEYBOARD_INTERRUPT)
            return ExitCode.KEYBOARD_INTERRUPT
        except ConvergeError as e:
            code = ExitCode(e.exit_code)
            self._report_error(_error_type(e), str(e), code)
            return code

        if self.config.json_output:
            print(report.to_json())
        return report.finalize()

    def _report_error(self, error_type: str, message: str, exit_code: int) -> None:
        logger.debug("run aborted: %s (%s)", message, error_type)
        if self.config.json_output:
            error_obj = {
                "error": True,
                "error_type": error_type,
                "message": message,
                "exit_code": int(exit_code),
            }
            print(json.dumps(error_obj, indent=2))
        else:
            self.display.error(f"ERROR! {message}")

    def load(self) -> RunPlan:
        """
        Load everything the run needs and build its plan.

        Raises:
            VaultError, InventoryError, ParseError, UnsupportedFeatureError
        """
        self._vault = self._init_vault()
        self.inventory = load_inventory(self.inventory_source, vault=self._vault)

        plays: List[Play] = []
        for path in self.playbook_paths:
            self.display.playbook_start(str(path))
            plays.extend(load_playbook(path, vault=self._vault))
        logger.debug("loaded %d play(s) from %d playbook(s)", len(plays), len(self.playbook_paths))

        return PlanBuilder(self.inventory, self.config, self.templar).build(plays)

    async def execute(self, plan: RunPlan) -> RunReport:
        """Execute a plan built by ``load()``."""
        if self.inventory is None:
            raise RuntimeError("load() must run before execute()")

        executor = Executor(
            remote=self.remote,
            inventory=self.inventory,
            config=self.config,
            report=self.report,
            handlers=HandlerDispatcher(),
            templar=self.templar,
            display=self.display,
        )
        report = await executor.run(plan)
        self.display.recap(report)
        return report


def _error_type(error: ConvergeError) -> str:
    if isinstance(error, InventoryError):
        return "inventory_error"
    if isinstance(error, ParseError):
        return "parse_error"
    if isinstance(error, UnsupportedFeatureError):
        return "unsupported_feature"
    if isinstance(error, VaultError):
        return "vault_error"
    if isinstance(error, TemplateError):
        return "template_error"
    return "error"
