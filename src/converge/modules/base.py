"""
Converge Module Base

Base class and registry for all modules.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Type

from converge.connections.base import Connection, Escalation
from converge.engine.inventory import Host
from converge.engine.results import ModuleResult
from converge.engine.templating import TemplateEngine

# FQCN prefixes that resolve to built-in module names
BUILTIN_NAMESPACES = ('ansible.builtin.', 'ansible.legacy.', 'converge.builtin.')


@dataclass(frozen=True)
class ModuleContext:
    """What a module may see while it runs on one host."""

    host: Host
    connection: Optional[Connection]
    variables: Mapping[str, Any] = field(default_factory=dict)
    become: Optional[Escalation] = None
    check_mode: bool = False
    diff_mode: bool = False
    templar: Optional[TemplateEngine] = None
    no_log: bool = False


class Module(ABC):
    """
    Base class for all modules.

    Modules implement task execution logic for specific operations.
    ``run()`` may change the host; ``check()`` must not.
    """

    # Module name (used for registration)
    name: str = ""

    # Required arguments
    required_args: List[str] = []

    # Optional arguments with defaults
    optional_args: Dict[str, Any] = {}

    supports_check_mode: bool = False

    def __init__(self, args: Dict[str, Any], context: ModuleContext):
        self.args = args
        self.context = context
        self.connection = context.connection

    def validate_args(self) -> Optional[str]:
        """
        Validate module arguments.

        Returns:
            Error message if validation fails, None otherwise
        """
        for required in self.required_args:
            if required not in self.args:
                return f"Missing required argument: {required}"
        return None

    def get_arg(self, name: str, default: Any = None) -> Any:
        """Get an argument value with optional default."""
        if name in self.args:
            return self.args[name]
        if name in self.optional_args:
            return self.optional_args[name]
        return default

    def require_connection(self) -> Connection:
        if self.connection is None:
            raise RuntimeError(f"Module '{self.name}' needs a connection")
        return self.connection

    @abstractmethod
    async def run(self) -> ModuleResult:
        """
        Execute the module.

        Returns:
            ModuleResult with execution outcome
        """

    async def check(self) -> ModuleResult:
        """Predict the outcome of ``run()`` without changing anything."""
        return ModuleResult.skip("check mode not supported")


class ReadOnlyModule(Module):
    """A module whose ``run()`` never changes the host; check mode just runs it."""

    supports_check_mode = True

    async def check(self) -> ModuleResult:
        return await self.run()


# Module registry
_modules: Dict[str, Type[Module]] = {}
_modules_imported = False


def register_module(cls: Type[Module]) -> Type[Module]:
    """Decorator to register a module class."""
    _modules[cls.name] = cls
    return cls


def resolve_module_name(name: str) -> str:
    """Strip a built-in collection prefix (``ansible.builtin.copy`` -> ``copy``)."""
    for prefix in BUILTIN_NAMESPACES:
        if name.startswith(prefix):
            return name[len(prefix):]
    return name


def get_module(name: str) -> Optional[Type[Module]]:
    """Get a module class by name."""
    _ensure_modules_imported()
    return _modules.get(resolve_module_name(name))


def list_modules() -> List[str]:
    """List all registered module names."""
    _ensure_modules_imported()
    return sorted(_modules)


def _ensure_modules_imported() -> None:
    global _modules_imported
    if not _modules_imported:
        _import_builtin_modules()
        _modules_imported = True


def _import_builtin_modules() -> None:
    """Import all built-in modules to register them."""
    # These imports trigger the @register_module decorators
    from converge.modules import builtin_assert  # noqa: F401
    from converge.modules import builtin_command  # noqa: F401
    from converge.modules import builtin_copy  # noqa: F401
    from converge.modules import builtin_debug  # noqa: F401
    from converge.modules import builtin_fail  # noqa: F401
    from converge.modules import builtin_file  # noqa: F401
    from converge.modules import builtin_lineinfile  # noqa: F401
    from converge.modules import builtin_ping  # noqa: F401
    from converge.modules import builtin_set_fact  # noqa: F401
    from converge.modules import builtin_setup  # noqa: F401
    from converge.modules import builtin_stat  # noqa: F401
