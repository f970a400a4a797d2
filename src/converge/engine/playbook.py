"""
Converge Playbook Parser

Parses YAML playbooks into Play, Role and Task objects. Includes, imports and
blocks are expanded statically; nothing here touches a host.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Union

import yaml

from converge.engine.errors import ParseError, UnsupportedFeatureError
from converge.engine.vault import VaultLib, load_yaml_with_vault
from converge.modules.base import get_module, list_modules, resolve_module_name

logger = logging.getLogger(__name__)

# Task keys that are NOT module names
TASK_KEYWORDS = {
    'name', 'tags', 'when', 'register', 'loop', 'with_items', 'with_list',
    'loop_control', 'changed_when', 'failed_when', 'notify', 'listen',
    'ignore_errors', 'no_log', 'become', 'become_user', 'become_method',
    'check_mode', 'timeout', 'args', 'vars', 'environment', 'action',
}

# Keys that Converge recognises but does not implement
UNSUPPORTED_TASK_KEYS = {
    'async': "Run the task synchronously",
    'poll': "Run the task synchronously",
    'delegate_to': "Target the other host from its own play",
    'delegate_facts': "Target the other host from its own play",
    'local_action': "Use a play with 'hosts: localhost'",
    'run_once': "Target a single host from its own play",
    'until': "Retry from a wrapper script",
    'retries': "Retry from a wrapper script",
    'include': "Use include_tasks or import_tasks",
    'rescue': "Use ignore_errors and a conditional follow-up task",
    'always': "Move the tasks after the block",
}

PLAY_KEYWORDS = {
    'name', 'hosts', 'vars', 'vars_files', 'tasks', 'handlers', 'roles',
    'pre_tasks', 'post_tasks', 'gather_facts', 'become', 'become_user',
    'become_method', 'check_mode', 'any_errors_fatal', 'force_handlers',
    'tags', 'connection', 'environment', 'strategy', 'collections',
}

UNSUPPORTED_PLAY_KEYS = {
    'serial': "Run the playbook once per batch with --limit",
    'max_fail_percentage': "Use any_errors_fatal",
    'vars_prompt': "Pass the values with -e",
}

# Modules whose string arguments are a command line, not key=value pairs
FREE_FORM_MODULES = {'command', 'shell'}
FREE_FORM_OPTIONS = ('chdir', 'creates', 'removes', 'executable', 'stdin')

_KV_PATTERN = re.compile(r'(\w+)=(?:"([^"]*)"|\'([^\']*)\'|(\S+))')


def _ensure_list(value: Any) -> List[Any]:
    """Ensure a value is a list."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _tags(value: Any) -> Tuple[str, ...]:
    tags: List[str] = []
    for item in _ensure_list(value):
        if isinstance(item, str):
            tags.extend(t.strip() for t in item.split(',') if t.strip())
        else:
            tags.append(str(item))
    return tuple(tags)


def _merge_tags(*groups: Tuple[str, ...]) -> Tuple[str, ...]:
    merged: List[str] = []
    for group in groups:
        for tag in group:
            if tag not in merged:
                merged.append(tag)
    return tuple(merged)


@dataclass(frozen=True)
class Task:
    """A single task (or handler) as written in the playbook."""

    name: str
    module: str
    args: Dict[str, Any] = field(default_factory=dict)
    register: Optional[str] = None
    when: Tuple[Any, ...] = ()
    loop: Any = None
    loop_var: str = "item"
    index_var: Optional[str] = None
    ignore_errors: bool = False
    no_log: bool = False
    changed_when: Any = None
    failed_when: Any = None
    tags: Tuple[str, ...] = ()
    become: Optional[bool] = None  # None = inherit from play
    become_user: Optional[str] = None
    become_method: Optional[str] = None
    check_mode: Optional[bool] = None
    timeout: Optional[float] = None
    notify: Tuple[str, ...] = ()
    listen: Tuple[str, ...] = ()
    vars: Dict[str, Any] = field(default_factory=dict)
    environment: Dict[str, str] = field(default_factory=dict)
    role: Optional[str] = None

    @property
    def has_loop(self) -> bool:
        return self.loop is not None

    @property
    def display_name(self) -> str:
        return f"{self.role} : {self.name}" if self.role else self.name

    def __repr__(self) -> str:
        return f"Task(name={self.name!r}, module={self.module!r})"


@dataclass
class Role:
    """A role loaded from ``roles/<name>``."""

    name: str
    path: Path
    tasks: List[Task] = field(default_factory=list)
    handlers: List[Task] = field(default_factory=list)
    defaults: Dict[str, Any] = field(default_factory=dict)
    vars: Dict[str, Any] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:
        return f"Role(name={self.name!r}, tasks={len(self.tasks)})"


@dataclass
class Play:
    """Represents a single play in a playbook."""

    name: str
    hosts: str
    pre_tasks: List[Task] = field(default_factory=list)
    roles: List[Role] = field(default_factory=list)
    tasks: List[Task] = field(default_factory=list)
    post_tasks: List[Task] = field(default_factory=list)
    handlers: List[Task] = field(default_factory=list)
    vars: Dict[str, Any] = field(default_factory=dict)
    vars_files: List[str] = field(default_factory=list)
    gather_facts: bool = False
    become: bool = False
    become_user: str = "root"
    become_method: str = "sudo"
    check_mode: Optional[bool] = None
    any_errors_fatal: bool = False
    force_handlers: bool = False
    tags: Tuple[str, ...] = ()
    source: Optional[Path] = None

    def all_tasks(self) -> List[Task]:
        """pre_tasks, then each role's tasks in order, then tasks and post_tasks."""
        ordered = list(self.pre_tasks)
        for role in self.roles:
            ordered.extend(role.tasks)
        ordered.extend(self.tasks)
        ordered.extend(self.post_tasks)
        return ordered

    def all_handlers(self) -> List[Task]:
        """Role handlers first, then the play's own."""
        handlers: List[Task] = []
        for role in self.roles:
            handlers.extend(role.handlers)
        handlers.extend(self.handlers)
        return handlers

    @property
    def role_defaults(self) -> Dict[str, Any]:
        merged: Dict[str, Any] = {}
        for role in self.roles:
            merged.update(role.defaults)
        return merged

    @property
    def play_vars(self) -> Dict[str, Any]:
        """Play vars and vars_files, then role vars and role params over them."""
        merged = dict(self.vars)
        for role in self.roles:
            merged.update(role.vars)
            merged.update(role.params)
        return merged

    def __repr__(self) -> str:
        return f"Play(name={self.name!r}, hosts={self.hosts!r}, tasks={len(self.all_tasks())})"


class PlaybookParser:
    """
    Parse YAML playbooks into Play and Task objects.

    Validates against the supported subset and raises errors for unsupported
    features before anything runs.
    """

    def __init__(self, playbook_path: Union[str, Path], vault: Optional[VaultLib] = None):
        self.playbook_path = Path(playbook_path)
        self.vault = vault
        self.plays: List[Play] = []
        self._base_dir = self.playbook_path.parent
        self._include_stack: List[Path] = []
        self._included_handlers: List[Task] = []

    def parse(self) -> List[Play]:
        """
        Parse the playbook file.

        Raises:
            ParseError: If the playbook has syntax errors
            UnsupportedFeatureError: If playbook uses unsupported features
            VaultError: If encrypted data cannot be decrypted
        """
        if not self.playbook_path.exists():
            raise ParseError(
                f"Playbook not found: {self.playbook_path}",
                file_path=str(self.playbook_path),
            )

        documents = self._load_yaml(self.playbook_path, multi=True)

        all_plays: List[Any] = []
        for doc in documents:
            if doc is None:
                continue
            if isinstance(doc, list):
                all_plays.extend(doc)
            else:
                all_plays.append(doc)

        for play_data in all_plays:
            if not isinstance(play_data, dict):
                raise ParseError(
                    f"A play must be a mapping, got {type(play_data).__name__}",
                    file_path=str(self.playbook_path),
                )
            if 'import_playbook' in play_data:
                raise UnsupportedFeatureError(
                    "'import_playbook'",
                    suggestion="Pass each playbook on the command line instead",
                )
            self.plays.append(self._parse_play(play_data))

        return self.plays

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def _load_yaml(self, path: Path, multi: bool = False) -> Any:
        try:
            content = path.read_text(encoding='utf-8')
        except OSError as e:
            raise ParseError(f"Cannot read file: {e}", file_path=str(path))
        try:
            documents = load_yaml_with_vault(content, self.vault, source=str(path), multi=True)
        except yaml.YAMLError as e:
            line = None
            mark = getattr(e, 'problem_mark', None)
            if mark is not None:
                line = mark.line + 1
            raise ParseError(f"YAML syntax error: {e}", file_path=str(path), line=line)
        if multi:
            return documents
        return documents[0] if documents else None

    def _load_vars_file(self, path: Path) -> Dict[str, Any]:
        """Load a variables file, decrypting vault content."""
        try:
            content = path.read_text(encoding='utf-8')
        except OSError as e:
            raise ParseError(f"Cannot read vars file: {e}", file_path=str(path))
        try:
            data = load_yaml_with_vault(content, self.vault, source=str(path))
        except yaml.YAMLError as e:
            raise ParseError(f"YAML syntax error: {e}", file_path=str(path))
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ParseError("Variables file must contain a mapping", file_path=str(path))
        return data

    # ------------------------------------------------------------------
    # Plays
    # ------------------------------------------------------------------

    def _parse_play(self, data: Dict[str, Any]) -> Play:
        """Parse a single play from YAML data."""
        for key, suggestion in UNSUPPORTED_PLAY_KEYS.items():
            if key in data:
                raise UnsupportedFeatureError(f"'{key}' in plays", suggestion=suggestion)

        unknown = set(data) - PLAY_KEYWORDS
        if unknown:
            raise ParseError(
                f"Unknown play keyword(s): {', '.join(sorted(unknown))}",
                file_path=str(self.playbook_path),
            )

        if 'hosts' not in data or data['hosts'] in (None, ''):
            raise ParseError(
                "Play missing required 'hosts' field",
                file_path=str(self.playbook_path),
            )

        strategy = data.get('strategy', 'linear')
        if strategy != 'linear':
            raise UnsupportedFeatureError(
                f"strategy '{strategy}'",
                suggestion="Converge runs every play with the linear strategy",
            )

        hosts = data['hosts']
        if isinstance(hosts, list):
            hosts = ','.join(str(h) for h in hosts)

        play_vars = data.get('vars') or {}
        if not isinstance(play_vars, dict):
            raise ParseError(
                f"'vars' must be a dictionary, got {type(play_vars).__name__}",
                file_path=str(self.playbook_path),
            )

        play = Play(
            name=data.get('name') or str(hosts),
            hosts=str(hosts),
            vars=dict(play_vars),
            gather_facts=bool(data.get('gather_facts', False)),
            become=bool(data.get('become', False)),
            become_user=data.get('become_user', 'root'),
            become_method=data.get('become_method', 'sudo'),
            check_mode=data.get('check_mode'),
            any_errors_fatal=bool(data.get('any_errors_fatal', False)),
            force_handlers=bool(data.get('force_handlers', False)),
            tags=_tags(data.get('tags')),
            source=self.playbook_path,
        )

        # vars_files are relative to the playbook; later files win
        play.vars_files = [str(v) for v in _ensure_list(data.get('vars_files'))]
        for vars_file in play.vars_files:
            vars_path = self._base_dir / vars_file
            if not vars_path.exists():
                raise ParseError(
                    f"vars_file not found: {vars_file}",
                    file_path=str(self.playbook_path),
                )
            play.vars.update(self._load_vars_file(vars_path))

        self._included_handlers = []
        play.pre_tasks = self._parse_task_list(data.get('pre_tasks'), self._base_dir)
        play.roles = [self._load_role(entry) for entry in _ensure_list(data.get('roles'))]
        play.tasks = self._parse_task_list(data.get('tasks'), self._base_dir)
        play.post_tasks = self._parse_task_list(data.get('post_tasks'), self._base_dir)

        play.handlers.extend(self._included_handlers)
        for handler_data in _ensure_list(data.get('handlers')):
            if not isinstance(handler_data, dict):
                raise ParseError("Handler must be a mapping", file_path=str(self.playbook_path))
            play.handlers.append(self._parse_task(handler_data))

        self._check_handler_names(play)
        return play

    def _check_handler_names(self, play: Play) -> None:
        seen: Set[str] = set()
        for handler in play.all_handlers():
            if handler.name in seen:
                raise ParseError(
                    f"Duplicate handler name in play '{play.name}': {handler.name}",
                    file_path=str(self.playbook_path),
                )
            seen.add(handler.name)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def _find_role_path(self, role_name: str) -> Optional[Path]:
        """
        Find the path to a role.

        Searches in:
        1. <playbook_dir>/roles/<role_name>
        2. ./roles/<role_name>
        """
        search_paths = [
            self._base_dir / "roles" / role_name,
            Path.cwd() / "roles" / role_name,
        ]
        for path in search_paths:
            if path.is_dir():
                return path
        return None

    def _role_file(self, role_path: Path, section: str) -> Optional[Path]:
        for suffix in ('main.yml', 'main.yaml'):
            candidate = role_path / section / suffix
            if candidate.is_file():
                return candidate
        return None

    def _load_role(
        self,
        role_entry: Any,
        extra_when: Tuple[Any, ...] = (),
        extra_tags: Tuple[str, ...] = (),
    ) -> Role:
        """
        Load a role.

        Args:
            role_entry: Either a string (role name) or dict with role, vars, etc.
            extra_when: Conditions inherited from an include_role task
            extra_tags: Tags inherited from an include_role task
        """
        if isinstance(role_entry, str):
            role_name = role_entry
            params: Dict[str, Any] = {}
            role_tags: Tuple[str, ...] = ()
            role_when: Tuple[Any, ...] = ()
        elif isinstance(role_entry, dict):
            role_name = role_entry.get('role') or role_entry.get('name')
            if not role_name:
                raise ParseError(
                    "Role entry must have 'role' or 'name' key",
                    file_path=str(self.playbook_path),
                )
            params = dict(role_entry.get('vars') or {})
            params.update({
                k: v for k, v in role_entry.items()
                if k not in ('role', 'name', 'tags', 'when', 'vars', 'become', 'become_user')
            })
            role_tags = _tags(role_entry.get('tags'))
            role_when = tuple(_ensure_list(role_entry.get('when')))
        else:
            raise ParseError(
                f"Invalid role entry type: {type(role_entry).__name__}",
                file_path=str(self.playbook_path),
            )

        role_path = self._find_role_path(role_name)
        if not role_path:
            raise ParseError(f"Role not found: {role_name}", file_path=str(self.playbook_path))

        role = Role(name=role_name, path=role_path, params=params)

        defaults_file = self._role_file(role_path, 'defaults')
        if defaults_file:
            role.defaults = self._load_vars_file(defaults_file)
        vars_file = self._role_file(role_path, 'vars')
        if vars_file:
            role.vars = self._load_vars_file(vars_file)

        tasks_file = self._role_file(role_path, 'tasks')
        if tasks_file:
            tasks = self._parse_task_file(tasks_file)
            when = tuple(extra_when) + role_when
            tags = _merge_tags(tuple(extra_tags), role_tags)
            role.tasks = [
                replace(task, role=role_name, when=when + task.when, tags=_merge_tags(task.tags, tags))
                for task in tasks
            ]
        else:
            logger.debug("role %s has no tasks", role_name)

        handlers_file = self._role_file(role_path, 'handlers')
        if handlers_file:
            role.handlers = [
                replace(h, role=role_name) for h in self._parse_task_file(handlers_file)
            ]

        return role

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def _parse_task_file(self, path: Path) -> List[Task]:
        resolved = path.resolve()
        if resolved in self._include_stack:
            chain = ' -> '.join(p.name for p in self._include_stack + [resolved])
            raise ParseError(f"Recursive task include: {chain}", file_path=str(path))

        data = self._load_yaml(path)
        if data is None:
            return []
        if not isinstance(data, list):
            raise ParseError("Tasks file must contain a list", file_path=str(path))

        self._include_stack.append(resolved)
        try:
            return self._parse_task_list(data, path.parent)
        finally:
            self._include_stack.pop()

    def _parse_task_list(self, items: Any, base_dir: Path) -> List[Task]:
        tasks: List[Task] = []
        for task_data in _ensure_list(items):
            if not isinstance(task_data, dict):
                raise ParseError(
                    f"Task must be a mapping, got {type(task_data).__name__}",
                    file_path=str(self.playbook_path),
                )
            tasks.extend(self._parse_task_or_block(task_data, base_dir))
        return tasks

    def _parse_task_or_block(self, data: Dict[str, Any], base_dir: Path) -> List[Task]:
        """Parse a task or block, returning task(s)."""
        if 'block' in data:
            return self._parse_block(data, base_dir)
        for key in ('include_tasks', 'import_tasks'):
            if key in data or f'ansible.builtin.{key}' in data:
                return self._parse_include_tasks(data, key, base_dir)
        for key in ('include_role', 'import_role'):
            if key in data or f'ansible.builtin.{key}' in data:
                return self._parse_include_role(data, key)
        return [self._parse_task(data)]

    def _parse_include_tasks(self, data: Dict[str, Any], key: str, base_dir: Path) -> List[Task]:
        """include_tasks and import_tasks are both expanded statically."""
        target = data.get(key, data.get(f'ansible.builtin.{key}'))
        if isinstance(target, dict):
            target = target.get('file')
        if not target:
            raise ParseError(f"{key} requires a file path", file_path=str(self.playbook_path))
        if '{{' in str(target):
            raise UnsupportedFeatureError(
                f"templated {key} path",
                suggestion="Use a literal file name",
            )

        tasks_path = base_dir / str(target)
        if not tasks_path.exists():
            tasks_path = self._base_dir / str(target)
        if not tasks_path.exists():
            raise ParseError(f"Tasks file not found: {target}", file_path=str(self.playbook_path))

        return self._inherit(self._parse_task_file(tasks_path), data)

    def _parse_include_role(self, data: Dict[str, Any], key: str) -> List[Task]:
        role_data = data.get(key, data.get(f'ansible.builtin.{key}'))
        if isinstance(role_data, str):
            entry: Dict[str, Any] = {'role': role_data}
        elif isinstance(role_data, dict) and role_data.get('name'):
            entry = {'role': role_data['name']}
            entry.update({k: v for k, v in role_data.items() if k != 'name'})
        else:
            raise ParseError(f"{key} requires 'name' parameter", file_path=str(self.playbook_path))

        if isinstance(data.get('vars'), dict):
            entry['vars'] = data['vars']

        role = self._load_role(
            entry,
            extra_when=tuple(_ensure_list(data.get('when'))),
            extra_tags=_tags(data.get('tags')),
        )
        self._included_handlers.extend(role.handlers)
        # Role variables only reach the role's own tasks through task vars
        role_scope = {**role.defaults, **role.vars, **role.params}
        return [replace(t, vars={**role_scope, **t.vars}) for t in role.tasks]

    def _inherit(self, tasks: List[Task], data: Dict[str, Any]) -> List[Task]:
        """Apply a block/include's when, tags, become and ignore_errors to its tasks."""
        when = tuple(_ensure_list(data.get('when')))
        tags = _tags(data.get('tags'))
        become = data.get('become')
        become_user = data.get('become_user')
        become_method = data.get('become_method')
        ignore_errors = data.get('ignore_errors')
        block_vars = data.get('vars') if isinstance(data.get('vars'), dict) else {}

        inherited = []
        for task in tasks:
            changes: Dict[str, Any] = {
                'when': when + task.when,
                'tags': _merge_tags(task.tags, tags),
            }
            if become is not None and task.become is None:
                changes['become'] = bool(become)
            if become_user and not task.become_user:
                changes['become_user'] = become_user
            if become_method and not task.become_method:
                changes['become_method'] = become_method
            if ignore_errors is not None and not task.ignore_errors:
                changes['ignore_errors'] = bool(ignore_errors)
            if block_vars:
                changes['vars'] = {**block_vars, **task.vars}
            inherited.append(replace(task, **changes))
        return inherited

    def _parse_block(self, data: Dict[str, Any], base_dir: Path) -> List[Task]:
        for key in ('rescue', 'always'):
            if key in data:
                raise UnsupportedFeatureError(
                    f"'{key}' in blocks",
                    suggestion=UNSUPPORTED_TASK_KEYS[key],
                )
        tasks = self._parse_task_list(data.get('block'), base_dir)
        return self._inherit(tasks, data)

    def _parse_task(self, data: Dict[str, Any]) -> Task:
        """Parse a single task from YAML data."""
        for key, suggestion in UNSUPPORTED_TASK_KEYS.items():
            if key in data:
                raise UnsupportedFeatureError(f"'{key}' in tasks", suggestion=suggestion)

        module_name, module_args = self._find_module(data)
        args = self._normalize_args(module_name, module_args)
        extra_args = data.get('args')
        if isinstance(extra_args, dict):
            args = {**extra_args, **args}

        loop = None
        for key in ('loop', 'with_items', 'with_list'):
            if key in data:
                loop = data[key]
                break
        loop_control = data.get('loop_control') or {}
        if not isinstance(loop_control, dict):
            raise ParseError("'loop_control' must be a mapping", file_path=str(self.playbook_path))

        when = data.get('when')
        when_list = tuple(w for w in _ensure_list(when) if w is not None and w != '')

        timeout = data.get('timeout')
        if timeout is not None:
            try:
                timeout = float(timeout)
            except (TypeError, ValueError):
                raise ParseError(f"Invalid task timeout: {timeout!r}", file_path=str(self.playbook_path))

        task_vars = data.get('vars') or {}
        if not isinstance(task_vars, dict):
            raise ParseError("Task 'vars' must be a mapping", file_path=str(self.playbook_path))

        return Task(
            name=str(data.get('name') or module_name),
            module=module_name,
            args=args,
            register=data.get('register'),
            when=when_list,
            loop=loop,
            loop_var=str(loop_control.get('loop_var', 'item')),
            index_var=loop_control.get('index_var'),
            ignore_errors=bool(data.get('ignore_errors', False)),
            no_log=bool(data.get('no_log', False)),
            changed_when=data.get('changed_when'),
            failed_when=data.get('failed_when'),
            tags=_tags(data.get('tags')),
            become=data.get('become'),
            become_user=data.get('become_user'),
            become_method=data.get('become_method'),
            check_mode=data.get('check_mode'),
            timeout=timeout,
            notify=tuple(str(n) for n in _ensure_list(data.get('notify'))),
            listen=tuple(str(n) for n in _ensure_list(data.get('listen'))),
            vars=dict(task_vars),
            environment=dict(data.get('environment') or {}),
        )

    def _find_module(self, data: Dict[str, Any]) -> Tuple[str, Any]:
        candidates = [k for k in data if k not in TASK_KEYWORDS]

        if 'action' in data:
            action = data['action']
            if isinstance(action, dict):
                action = dict(action)
                name = action.pop('module', None)
                candidates.append(str(name))
                data = {**data, str(name): action}
            else:
                name, _, rest = str(action).partition(' ')
                candidates.append(name)
                data = {**data, name: rest or None}

        if not candidates:
            raise ParseError(
                f"Task has no module: {list(data.keys())}",
                file_path=str(self.playbook_path),
            )
        if len(candidates) > 1:
            raise ParseError(
                f"Conflicting action statements: {', '.join(candidates)}",
                file_path=str(self.playbook_path),
            )

        key = candidates[0]
        module_name = resolve_module_name(key)
        if get_module(module_name) is None:
            raise UnsupportedFeatureError(
                f"Module '{key}' is not supported",
                suggestion=f"Supported modules: {', '.join(list_modules())}",
            )
        return module_name, data[key]

    def _normalize_args(self, module_name: str, args: Any) -> Dict[str, Any]:
        """Normalize module arguments to a dictionary."""
        if args is None:
            return {}

        if isinstance(args, dict):
            return dict(args)

        if isinstance(args, str):
            if module_name in FREE_FORM_MODULES:
                return self._free_form_args(args)
            parsed = {}
            for match in _KV_PATTERN.finditer(args):
                value = match.group(2)
                if value is None:
                    value = match.group(3)
                if value is None:
                    value = match.group(4)
                parsed[match.group(1)] = value
            if not parsed:
                raise ParseError(
                    f"Cannot parse arguments for '{module_name}': {args!r}",
                    file_path=str(self.playbook_path),
                )
            return parsed

        return {'_raw_params': str(args)}

    @staticmethod
    def _free_form_args(args: str) -> Dict[str, Any]:
        """Split ``chdir=/tmp creates=x ls -l`` into options and the command."""
        parsed: Dict[str, Any] = {}
        words = []
        for word in args.split(' '):
            key, sep, value = word.partition('=')
            if sep and key in FREE_FORM_OPTIONS and key not in parsed:
                parsed[key] = value
            else:
                words.append(word)
        parsed['_raw_params'] = ' '.join(words).strip()
        return parsed


def load_playbook(path: Union[str, Path], vault: Optional[VaultLib] = None) -> List[Play]:
    return PlaybookParser(path, vault=vault).parse()
