"""
Converge Engine Module

Core execution engine for parsing and running playbooks. The playbook,
plan, executor and runner modules are imported from their own submodules.
"""

from converge.engine.errors import (
    ConnectivityError,
    ConvergeError,
    ExitCode,
    InventoryError,
    ModuleExecutionError,
    ParseError,
    PreconditionError,
    TaskTimeoutError,
    TemplateError,
    UnsupportedFeatureError,
    VaultAuthenticationError,
    VaultError,
    VaultFormatError,
)
from converge.engine.inventory import Group, Host, InventoryManager
from converge.engine.results import ModuleResult, RunReport, TaskStatus
from converge.engine.scope import VariableScope
from converge.engine.templating import TemplateEngine
from converge.engine.vault import VaultLib, VaultSecret

__all__ = [
    'ConnectivityError',
    'ConvergeError',
    'ExitCode',
    'Group',
    'Host',
    'InventoryError',
    'InventoryManager',
    'ModuleExecutionError',
    'ModuleResult',
    'ParseError',
    'PreconditionError',
    'RunReport',
    'TaskStatus',
    'TaskTimeoutError',
    'TemplateEngine',
    'TemplateError',
    'UnsupportedFeatureError',
    'VariableScope',
    'VaultAuthenticationError',
    'VaultError',
    'VaultFormatError',
    'VaultLib',
    'VaultSecret',
]
