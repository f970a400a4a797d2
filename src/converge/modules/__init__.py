"""
Converge Modules

Built-in modules for task execution.
"""

from converge.modules.base import (
    Module,
    ModuleContext,
    ReadOnlyModule,
    get_module,
    list_modules,
    register_module,
    resolve_module_name,
)

__all__ = [
    'Module',
    'ModuleContext',
    'ReadOnlyModule',
    'get_module',
    'list_modules',
    'register_module',
    'resolve_module_name',
]
