"""
Converge Variable Scopes

Layered, copy-on-extend variable mappings. One scope per host; every change
returns a new scope so a host worker never aliases another host's state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Set, Tuple

from converge.engine.vault import VaultText


# Precedence, lowest first.
LAYER_ORDER: Tuple[str, ...] = (
    "defaults",
    "group",
    "host",
    "play",
    "extra",
    "registered",
    "loop",
)

_EMPTY: Mapping[str, Any] = MappingProxyType({})


@dataclass(frozen=True)
class VariableScope:
    """
    Variables visible to one host, split into precedence layers.

    Lookups resolve from the highest layer down. ``flatten()`` materializes
    the merged dictionary handed to the template engine.
    """

    layers: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        unknown = set(self.layers) - set(LAYER_ORDER)
        if unknown:
            raise ValueError(f"Unknown variable layer(s): {', '.join(sorted(unknown))}")
        frozen = {
            name: MappingProxyType(dict(self.layers[name]))
            for name in LAYER_ORDER
            if name in self.layers
        }
        object.__setattr__(self, "layers", MappingProxyType(frozen))

    @classmethod
    def build(
        cls,
        defaults: Optional[Mapping[str, Any]] = None,
        group: Optional[Mapping[str, Any]] = None,
        host: Optional[Mapping[str, Any]] = None,
        play: Optional[Mapping[str, Any]] = None,
        extra: Optional[Mapping[str, Any]] = None,
        registered: Optional[Mapping[str, Any]] = None,
    ) -> "VariableScope":
        """Create a scope from individual layers, skipping empty ones."""
        given = {
            "defaults": defaults,
            "group": group,
            "host": host,
            "play": play,
            "extra": extra,
            "registered": registered,
        }
        return cls({name: value for name, value in given.items() if value})

    def layer(self, name: str) -> Mapping[str, Any]:
        """Return one layer (empty if unset)."""
        if name not in LAYER_ORDER:
            raise KeyError(name)
        return self.layers.get(name, _EMPTY)

    def with_layer(self, name: str, values: Mapping[str, Any]) -> "VariableScope":
        """Return a copy with ``name`` replaced by ``values``."""
        layers = dict(self.layers)
        layers[name] = values
        return VariableScope(layers)

    def extend(self, name: str, values: Mapping[str, Any]) -> "VariableScope":
        """Return a copy with ``values`` merged over layer ``name``."""
        merged = dict(self.layer(name))
        merged.update(values)
        return self.with_layer(name, merged)

    def with_registered(self, key: str, value: Any) -> "VariableScope":
        """Return a copy with a task result or fact registered under ``key``."""
        return self.extend("registered", {key: value})

    def without_layer(self, name: str) -> "VariableScope":
        layers = {k: v for k, v in self.layers.items() if k != name}
        return VariableScope(layers)

    def get(self, key: str, default: Any = None) -> Any:
        for name in reversed(LAYER_ORDER):
            values = self.layers.get(name)
            if values is not None and key in values:
                return values[key]
        return default

    def __contains__(self, key: object) -> bool:
        return any(key in values for values in self.layers.values())

    def __getitem__(self, key: str) -> Any:
        sentinel = object()
        value = self.get(key, sentinel)
        if value is sentinel:
            raise KeyError(key)
        return value

    def keys(self) -> Set[str]:
        result: Set[str] = set()
        for values in self.layers.values():
            result.update(values)
        return result

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self.keys()))

    def flatten(self) -> Dict[str, Any]:
        """Merge all layers into one dict, higher layers winning."""
        merged: Dict[str, Any] = {}
        for name in LAYER_ORDER:
            merged.update(self.layers.get(name, _EMPTY))
        return merged

    def source_of(self, key: str) -> Optional[str]:
        """Name of the layer that supplies ``key``."""
        for name in reversed(LAYER_ORDER):
            values = self.layers.get(name)
            if values is not None and key in values:
                return name
        return None

    def sensitive_values(self) -> Set[str]:
        """All vault-decrypted strings reachable from this scope."""
        found: Set[str] = set()
        for values in self.layers.values():
            _collect_sensitive(values, found)
        return found


def collect_sensitive(value: Any) -> Set[str]:
    """Vault-decrypted strings anywhere inside ``value``."""
    found: Set[str] = set()
    _collect_sensitive(value, found)
    return found


def _collect_sensitive(value: Any, found: Set[str]) -> None:
    if isinstance(value, VaultText):
        if value:
            found.add(str(value))
    elif isinstance(value, Mapping):
        for item in value.values():
            _collect_sensitive(item, found)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _collect_sensitive(item, found)
