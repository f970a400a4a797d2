"""
Converge Inventory Manager

Parses inventory from YAML/JSON mappings, INI files and host/group vars
directories, checks the group graph for cycles, and materializes the
starting variable scope for each host.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

import yaml

from converge.engine.errors import InventoryError
from converge.engine.scope import VariableScope
from converge.engine.vault import VaultLib, load_yaml_with_vault

logger = logging.getLogger(__name__)

IMPLICIT_GROUPS = ('all', 'ungrouped')
_WILDCARD_CHARS = set('*?[')


@dataclass(frozen=True)
class Host:
    """A single inventory host. Immutable once the inventory is loaded."""

    name: str
    vars: Mapping[str, Any] = field(default_factory=dict, compare=False)
    groups: Tuple[str, ...] = field(default=(), compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, 'vars', MappingProxyType(dict(self.vars)))
        object.__setattr__(self, 'groups', tuple(self.groups))

    @property
    def address(self) -> str:
        """Get the actual host to connect to (ansible_host or name)."""
        return str(self.vars.get('ansible_host', self.name))

    @property
    def port(self) -> int:
        return int(self.vars.get('ansible_port', 22))

    @property
    def user(self) -> Optional[str]:
        return self.vars.get('ansible_user')

    @property
    def connection(self) -> str:
        """Get the connection type (ssh, winrm, local)."""
        default = 'local' if self.name in ('localhost', '127.0.0.1') else 'ssh'
        return str(self.vars.get('ansible_connection', default))

    def get_variable(self, key: str, default: Any = None) -> Any:
        return self.vars.get(key, default)

    def get_vars(self) -> Dict[str, Any]:
        """Return all host variables including computed ones."""
        result = dict(self.vars)
        result['inventory_hostname'] = self.name
        result['inventory_hostname_short'] = self.name.split('.')[0]
        result['ansible_host'] = self.address
        result['group_names'] = sorted(g for g in self.groups if g not in IMPLICIT_GROUPS)
        return result

    def __repr__(self) -> str:
        return f"Host({self.name!r})"


class Group:
    """A group of hosts. Children are group names; nesting must stay acyclic."""

    def __init__(self, name: str, variables: Optional[Dict[str, Any]] = None):
        self.name = name
        self.vars: Dict[str, Any] = dict(variables) if variables else {}
        self._hosts: List[str] = []
        self._children: List[str] = []
        self._parents: List[str] = []

    @property
    def hosts(self) -> List[str]:
        """Host names directly in this group, in definition order."""
        return list(self._hosts)

    @property
    def children(self) -> List[str]:
        return list(self._children)

    @property
    def parents(self) -> List[str]:
        return list(self._parents)

    def add_host(self, host_name: str) -> None:
        if host_name not in self._hosts:
            self._hosts.append(host_name)

    def add_child(self, group_name: str) -> None:
        if group_name not in self._children:
            self._children.append(group_name)

    def add_parent(self, group_name: str) -> None:
        if group_name not in self._parents:
            self._parents.append(group_name)

    def __repr__(self) -> str:
        return f"Group({self.name!r}, hosts={len(self._hosts)})"


class InventoryManager:
    """
    Manages inventory parsing and host resolution.

    Supports:
    - YAML / JSON inventory files and plain Python mappings
    - INI format inventory files (with ``web[01:03]`` ranges)
    - host_vars/ and group_vars/ directories (vault aware)
    - Host patterns for play targets and --limit
    """

    # Pattern for host range expansion: web[01:10].example.com
    RANGE_PATTERN = re.compile(r'\[(\d+):(\d+)\]')
    # Pattern for INI variable assignment: key=value
    VAR_PATTERN = re.compile(r'(\w+)=(?:"([^"]*)"|\'([^\']*)\'|(\S+))')

    def __init__(self, vault: Optional[VaultLib] = None):
        self.vault = vault
        self.hosts: Dict[str, Host] = {}
        self.groups: Dict[str, Group] = {}
        self._host_vars: Dict[str, Dict[str, Any]] = {}
        self._inventory_dir: Optional[Path] = None
        self._source: Optional[str] = None
        self._loaded = False

        # Group arena, filled by _finalize()
        self._group_names: List[str] = []
        self._group_index: Dict[str, int] = {}
        self._child_edges: List[List[int]] = []
        self._depth: Dict[str, int] = {}

        for name in IMPLICIT_GROUPS:
            self.groups[name] = Group(name)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def parse(self, source: Union[str, Path]) -> 'InventoryManager':
        """
        Parse an inventory file or directory.

        Returns:
            self for chaining

        Raises:
            InventoryError: missing source, malformed data or cyclic groups
        """
        source_path = Path(source)
        self._source = str(source_path)

        if not source_path.exists():
            raise InventoryError(f"Inventory path does not exist: {source_path}")

        if source_path.is_file():
            self._inventory_dir = source_path.parent
            self._parse_file(source_path)
        elif source_path.is_dir():
            self._inventory_dir = source_path
            self._parse_directory(source_path)
        else:
            raise InventoryError(f"Invalid inventory source: {source_path}")

        if self._inventory_dir:
            self._load_vars_directories(self._inventory_dir)

        self._finalize()
        return self

    def parse_data(self, data: Mapping[str, Any]) -> 'InventoryManager':
        """Load an inventory from an in-memory mapping (YAML layout)."""
        self._parse_yaml_data(data)
        self._finalize()
        return self

    def _group(self, name: str) -> Group:
        if name not in self.groups:
            self.groups[name] = Group(name)
        return self.groups[name]

    def _add_host(self, name: str, variables: Optional[Mapping[str, Any]], group: Optional[str]) -> None:
        if self._loaded:
            raise InventoryError(f"Cannot add host {name!r}: inventory is already loaded")
        merged = self._host_vars.setdefault(name, {})
        if variables:
            merged.update(variables)
        if group:
            self._group(group).add_host(name)

    def _link(self, parent: str, child: str) -> None:
        self._group(parent).add_child(child)
        self._group(child).add_parent(parent)

    def _parse_file(self, path: Path) -> None:
        """Parse a single inventory file."""
        content = path.read_text(encoding='utf-8')

        if path.suffix in ('.yml', '.yaml'):
            self._parse_yaml_string(content, path)
        elif path.suffix == '.json':
            try:
                data = json.loads(content)
            except json.JSONDecodeError as e:
                raise InventoryError(f"Invalid JSON inventory: {e}", file_path=str(path))
            self._parse_yaml_data(data, path)
        else:
            # Try YAML first (if it looks like YAML)
            if content.strip().startswith(('---', 'all:', 'ungrouped:')):
                self._parse_yaml_string(content, path)
                return
            self._parse_ini_string(content, path)

    def _parse_directory(self, path: Path) -> None:
        """Parse all inventory files in a directory."""
        for item in sorted(path.iterdir()):
            if not item.is_file() or item.name.startswith('.'):
                continue
            if item.suffix in ('.bak', '.orig', '.pyc', '.pyo', '.md'):
                continue
            self._parse_file(item)

    def _load_yaml_file(self, path: Path) -> Dict[str, Any]:
        try:
            data = load_yaml_with_vault(path.read_text(encoding='utf-8'), self.vault, str(path))
        except yaml.YAMLError as e:
            raise InventoryError(f"YAML syntax error: {e}", file_path=str(path))
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise InventoryError(
                f"Variables file must contain a mapping, got {type(data).__name__}",
                file_path=str(path),
            )
        return data

    def _vars_from(self, item: Path) -> Dict[str, Any]:
        """Variables from a vars file or a directory of vars files."""
        result: Dict[str, Any] = {}
        if item.is_file() and item.suffix in ('.yml', '.yaml', '.json'):
            result.update(self._load_yaml_file(item))
        elif item.is_dir():
            for vars_file in sorted(item.iterdir()):
                if vars_file.is_file() and vars_file.suffix in ('.yml', '.yaml', '.json'):
                    result.update(self._load_yaml_file(vars_file))
        return result

    def _load_vars_directories(self, base_path: Path) -> None:
        """Load variables from host_vars/ and group_vars/ directories."""
        group_vars_dir = base_path / 'group_vars'
        if group_vars_dir.is_dir():
            for item in sorted(group_vars_dir.iterdir()):
                group_name = item.stem if item.is_file() else item.name
                values = self._vars_from(item)
                if values:
                    self._group(group_name).vars.update(values)

        host_vars_dir = base_path / 'host_vars'
        if host_vars_dir.is_dir():
            for item in sorted(host_vars_dir.iterdir()):
                host_name = item.stem if item.is_file() else item.name
                if host_name not in self._host_vars:
                    logger.debug("host_vars for unknown host %s ignored", host_name)
                    continue
                self._host_vars[host_name].update(self._vars_from(item))

    def _parse_ini_string(self, content: str, source_path: Optional[Path] = None) -> None:
        """Parse INI format inventory."""
        current_group: Optional[str] = None
        current_section: Optional[str] = None  # 'hosts', 'vars', 'children'
        file_path = str(source_path) if source_path else None

        for line_num, raw_line in enumerate(content.splitlines(), 1):
            line = raw_line.strip()

            if not line or line.startswith('#') or line.startswith(';'):
                continue

            if line.startswith('[') and line.endswith(']'):
                header = line[1:-1].strip()
                if not header:
                    raise InventoryError(f"Empty group header at line {line_num}", file_path=file_path)

                if header.endswith(':vars'):
                    current_group = header[:-len(':vars')].strip()
                    current_section = 'vars'
                elif header.endswith(':children'):
                    current_group = header[:-len(':children')].strip()
                    current_section = 'children'
                else:
                    current_group = header
                    current_section = 'hosts'
                self._group(current_group)
                continue

            if current_section == 'vars':
                if '=' not in line:
                    raise InventoryError(
                        f"Expected key=value in [{current_group}:vars] at line {line_num}",
                        file_path=file_path,
                    )
                key, value = self._parse_variable_line(line)
                if current_group and key:
                    self.groups[current_group].vars[key] = value

            elif current_section == 'children':
                if current_group:
                    self._link(current_group, line.split()[0])

            else:
                name_pattern, variables = self._parse_host_line(line)
                for name in self._expand_host_pattern(name_pattern):
                    self._add_host(name, variables, current_group)

    def _parse_host_line(self, line: str) -> Tuple[str, Dict[str, Any]]:
        """Parse a single host line into (name pattern, inline variables)."""
        parts = line.split(None, 1)
        var_string = parts[1] if len(parts) > 1 else ''

        variables: Dict[str, Any] = {}
        for match in self.VAR_PATTERN.finditer(var_string):
            key = match.group(1)
            value = match.group(2) or match.group(3) or match.group(4)
            variables[key] = self._convert_value(value)

        return parts[0], variables

    def _expand_host_pattern(self, pattern: str) -> List[str]:
        """Expand host patterns like web[01:03].example.com."""
        match = self.RANGE_PATTERN.search(pattern)
        if not match:
            return [pattern]

        start = int(match.group(1))
        end = int(match.group(2))
        width = len(match.group(1))

        results = []
        for i in range(start, end + 1):
            num_str = str(i).zfill(width)
            expanded = pattern[:match.start()] + num_str + pattern[match.end():]
            results.extend(self._expand_host_pattern(expanded))

        return results

    def _parse_variable_line(self, line: str) -> Tuple[str, Any]:
        key, _, value = line.partition('=')
        key = key.strip()
        value = value.strip()

        if (value.startswith('"') and value.endswith('"')) or \
           (value.startswith("'") and value.endswith("'")):
            return key, value[1:-1]

        return key, self._convert_value(value)

    def _convert_value(self, value: str) -> Any:
        """Convert string value to appropriate Python type."""
        if not isinstance(value, str):
            return value

        if value.lower() in ('true', 'yes'):
            return True
        if value.lower() in ('false', 'no'):
            return False
        if value.lower() in ('null', 'none', '~'):
            return None

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value

    def _parse_yaml_string(self, content: str, source_path: Optional[Path] = None) -> None:
        """Parse YAML format inventory."""
        try:
            data = load_yaml_with_vault(content, self.vault, str(source_path) if source_path else None)
        except yaml.YAMLError as e:
            raise InventoryError(
                f"YAML syntax error: {e}",
                file_path=str(source_path) if source_path else None,
            )
        if data:
            self._parse_yaml_data(data, source_path)

    def _parse_yaml_data(self, data: Any, source_path: Optional[Path] = None) -> None:
        """Parse YAML inventory data structure."""
        if not isinstance(data, Mapping):
            raise InventoryError(
                f"Inventory must be a mapping of groups, got {type(data).__name__}",
                file_path=str(source_path) if source_path else None,
            )

        for group_name, group_data in data.items():
            self._parse_yaml_group(str(group_name), group_data or {}, source_path)

    def _parse_yaml_group(self, name: str, data: Any, source_path: Optional[Path]) -> None:
        """Parse a single group from YAML inventory."""
        group = self._group(name)
        file_path = str(source_path) if source_path else None

        if not isinstance(data, Mapping):
            raise InventoryError(f"Group {name!r} must be a mapping", file_path=file_path)

        unknown = set(data) - {'hosts', 'vars', 'children'}
        if unknown:
            raise InventoryError(
                f"Group {name!r} has unknown keys: {', '.join(sorted(map(str, unknown)))}",
                file_path=file_path,
            )

        hosts_data = data.get('hosts') or {}
        if isinstance(hosts_data, list):
            hosts_data = {h: None for h in hosts_data}
        if not isinstance(hosts_data, Mapping):
            raise InventoryError(f"'hosts' of group {name!r} must be a mapping or list", file_path=file_path)
        for host_name, host_vars in hosts_data.items():
            if host_vars is not None and not isinstance(host_vars, Mapping):
                raise InventoryError(f"Variables of host {host_name!r} must be a mapping", file_path=file_path)
            for expanded in self._expand_host_pattern(str(host_name)):
                self._add_host(expanded, host_vars, name)

        vars_data = data.get('vars') or {}
        if not isinstance(vars_data, Mapping):
            raise InventoryError(f"'vars' of group {name!r} must be a mapping", file_path=file_path)
        group.vars.update(vars_data)

        children_data = data.get('children') or {}
        if isinstance(children_data, list):
            children_data = {c: None for c in children_data}
        if not isinstance(children_data, Mapping):
            raise InventoryError(f"'children' of group {name!r} must be a mapping or list", file_path=file_path)
        for child_name, child_data in children_data.items():
            self._link(name, str(child_name))
            self._parse_yaml_group(str(child_name), child_data or {}, source_path)

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def _finalize(self) -> None:
        """Build the group arena, reject cycles, and freeze hosts."""
        all_group = self.groups['all']
        for name, group in self.groups.items():
            if name != 'all' and not group.parents:
                self._link('all', name)

        self._group_names = list(self.groups)
        self._group_index = {name: i for i, name in enumerate(self._group_names)}
        self._child_edges = [
            [self._group_index[c] for c in self.groups[name].children]
            for name in self._group_names
        ]
        self._check_cycles()
        self._depth = self._compute_depths()

        ancestors: Dict[str, Set[str]] = {name: set() for name in self._host_vars}
        for name in self._group_names:
            for host_name in self.groups[name].hosts:
                ancestors[host_name].update(self._ancestors_of(name))

        for host_name in self._host_vars:
            memberships = ancestors[host_name] | {'all'}
            if not memberships - set(IMPLICIT_GROUPS):
                self.groups['ungrouped'].add_host(host_name)
                memberships.add('ungrouped')
            all_group.add_host(host_name)
            ordered = sorted(memberships, key=lambda g: (self._depth.get(g, 0), g))
            self.hosts[host_name] = Host(host_name, self._host_vars[host_name], tuple(ordered))

        self._loaded = True
        logger.debug("inventory loaded: %d hosts, %d groups", len(self.hosts), len(self.groups))

    def _check_cycles(self) -> None:
        """Iterative visited-set walk over child edges."""
        white, grey, black = 0, 1, 2
        state = [white] * len(self._group_names)

        for root in range(len(self._group_names)):
            if state[root] != white:
                continue
            stack: List[Tuple[int, int]] = [(root, 0)]
            path: List[int] = [root]
            state[root] = grey
            while stack:
                node, edge = stack[-1]
                edges = self._child_edges[node]
                if edge < len(edges):
                    stack[-1] = (node, edge + 1)
                    child = edges[edge]
                    if state[child] == grey:
                        start = path.index(child)
                        cycle = [self._group_names[i] for i in path[start:]] + [self._group_names[child]]
                        raise InventoryError(
                            f"Group dependency cycle detected: {' -> '.join(cycle)}",
                            file_path=self._source,
                        )
                    if state[child] == white:
                        state[child] = grey
                        stack.append((child, 0))
                        path.append(child)
                else:
                    state[node] = black
                    stack.pop()
                    path.pop()

    def _compute_depths(self) -> Dict[str, int]:
        """Longest distance of each group from 'all'; deeper is more specific."""
        depth = [0] * len(self._group_names)
        indegree = [0] * len(self._group_names)
        for edges in self._child_edges:
            for child in edges:
                indegree[child] += 1
        queue = [i for i, d in enumerate(indegree) if d == 0]
        while queue:
            node = queue.pop(0)
            for child in self._child_edges[node]:
                depth[child] = max(depth[child], depth[node] + 1)
                indegree[child] -= 1
                if indegree[child] == 0:
                    queue.append(child)
        return {name: depth[i] for i, name in enumerate(self._group_names)}

    def _ancestors_of(self, group_name: str) -> Set[str]:
        """The group itself plus every group it is nested under."""
        seen: Set[str] = set()
        pending = [group_name]
        while pending:
            name = pending.pop()
            if name in seen:
                continue
            seen.add(name)
            pending.extend(self.groups[name].parents)
        return seen

    def _descendant_hosts(self, group_name: str) -> Set[str]:
        seen: Set[str] = set()
        names: Set[str] = set()
        pending = [group_name]
        while pending:
            name = pending.pop()
            if name in seen:
                continue
            seen.add(name)
            names.update(self.groups[name].hosts)
            pending.extend(self.groups[name].children)
        return names

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_host(self, name: str) -> Host:
        if name not in self.hosts:
            raise InventoryError(f"Unknown host: {name}")
        return self.hosts[name]

    def get_hosts(self, pattern: Union[str, Iterable[str], None] = "all") -> List[Host]:
        """
        Get hosts matching a pattern, in inventory order.

        Supported patterns:
        - "all" or "*" - all hosts
        - "group_name" - all hosts in a group (including children)
        - "host_name" - single host
        - "a,b" or "a:b" - union
        - "a:&b" - intersection
        - "a:!b" - exclusion
        - "web*" - shell-style wildcard over host and group names

        Raises:
            InventoryError: a plain name matches neither a host nor a group
        """
        if pattern is None:
            pattern = "all"
        if isinstance(pattern, str):
            terms = self._split_pattern(pattern)
        else:
            terms = [t.strip() for t in pattern if t and t.strip()]

        if not terms:
            return []

        included: Set[str] = set()
        intersections: List[Set[str]] = []
        excluded: Set[str] = set()
        has_positive = False

        for term in terms:
            if term.startswith('&'):
                intersections.append(self._match_term(term[1:]))
            elif term.startswith('!'):
                excluded |= self._match_term(term[1:])
            else:
                has_positive = True
                included |= self._match_term(term)

        if not has_positive:
            included = set(self.hosts)
        for subset in intersections:
            included &= subset
        included -= excluded

        return [host for name, host in self.hosts.items() if name in included]

    @staticmethod
    def _split_pattern(pattern: str) -> List[str]:
        if ',' in pattern:
            parts = pattern.split(',')
        else:
            parts = pattern.split(':')
        return [p.strip() for p in parts if p.strip()]

    def _match_term(self, term: str) -> Set[str]:
        if term in ('all', '*'):
            return set(self.hosts)
        if term in self.groups:
            return self._descendant_hosts(term)
        if term in self.hosts:
            return {term}
        if term.startswith('~'):
            regex = re.compile(term[1:])
            matched = {name for name in self.hosts if regex.search(name)}
            for group_name in self.groups:
                if regex.search(group_name):
                    matched |= self._descendant_hosts(group_name)
            return matched
        if _WILDCARD_CHARS & set(term):
            matched = set(fnmatch.filter(self.hosts, term))
            for group_name in fnmatch.filter(self.groups, term):
                matched |= self._descendant_hosts(group_name)
            if not matched:
                logger.warning("pattern %r matched no hosts", term)
            return matched
        raise InventoryError(f"Unknown host or group in pattern: {term!r}", file_path=self._source)

    def group_vars_for(self, host: Host) -> Dict[str, Any]:
        """Group variables for a host, least specific group first."""
        merged: Dict[str, Any] = {}
        for group_name in host.groups:
            if group_name in self.groups:
                merged.update(self.groups[group_name].vars)
        return merged

    def get_host_vars(self, host_name: str) -> Dict[str, Any]:
        """All inventory variables for a host (group vars then host vars)."""
        host = self.get_host(host_name)
        merged = self.group_vars_for(host)
        merged.update(host.get_vars())
        return merged

    def base_scope(
        self,
        host: Host,
        extra_vars: Optional[Mapping[str, Any]] = None,
        play_vars: Optional[Mapping[str, Any]] = None,
        defaults: Optional[Mapping[str, Any]] = None,
    ) -> VariableScope:
        """The starting scope for a host, before any task registers results."""
        return VariableScope.build(
            defaults=defaults,
            group=self.group_vars_for(host),
            host=host.get_vars(),
            play=play_vars,
            extra=extra_vars,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Inventory in ``--list`` form."""
        result: Dict[str, Any] = {
            name: {
                'hosts': group.hosts,
                'children': group.children,
                'vars': dict(group.vars),
            }
            for name, group in self.groups.items()
        }
        result['_meta'] = {'hostvars': {name: dict(h.vars) for name, h in self.hosts.items()}}
        return result


def load_inventory(source: Union[str, Path, Mapping[str, Any]], vault: Optional[VaultLib] = None) -> InventoryManager:
    """Parse an inventory path or mapping."""
    manager = InventoryManager(vault=vault)
    if isinstance(source, Mapping):
        return manager.parse_data(source)
    return manager.parse(source)
