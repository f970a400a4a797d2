"""
Converge Plan Builder

Turns parsed plays into an immutable run plan: target hosts per play, and for
each host the ordered execution units left after tag filtering and loop
expansion. Filtering happens here exactly once; the executor never re-filters.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from converge.engine.config import RunConfig
from converge.engine.errors import TemplateError
from converge.engine.inventory import Host, InventoryManager
from converge.engine.playbook import Play, Task
from converge.engine.templating import TemplateEngine

logger = logging.getLogger(__name__)

GATHER_FACTS_TASK = Task(name="Gathering Facts", module="setup", tags=("always",))

# Names that only exist once something has run on the host
_RUNTIME_NAMES = {'ansible_facts'}

_NO_ITEM = object()


@dataclass(frozen=True)
class ExecutionUnit:
    """One task applied to one host (one loop item, if the task loops)."""

    play_index: int
    host: Host
    task: Task
    task_index: int
    loop_item: Any = _NO_ITEM
    loop_index: Optional[int] = None
    loop_length: Optional[int] = None
    deferred_loop: Any = None

    @property
    def is_loop_item(self) -> bool:
        return self.loop_index is not None

    @property
    def is_deferred(self) -> bool:
        return self.deferred_loop is not None

    def expand(self, items: Sequence[Any]) -> Tuple["ExecutionUnit", ...]:
        """The loop units a deferred unit stands for, once its items are known."""
        return tuple(
            ExecutionUnit(
                play_index=self.play_index,
                host=self.host,
                task=self.task,
                task_index=self.task_index,
                loop_item=item,
                loop_index=index,
                loop_length=len(items),
            )
            for index, item in enumerate(items)
        )

    def loop_vars(self) -> Dict[str, Any]:
        """The transient loop layer for this unit (empty outside loops)."""
        if not self.is_loop_item:
            return {}
        index = self.loop_index or 0
        length = self.loop_length or 0
        values = {
            self.task.loop_var: self.loop_item,
            'ansible_loop_var': self.task.loop_var,
            'ansible_loop': {
                'index': index + 1,
                'index0': index,
                'first': index == 0,
                'last': index == length - 1,
                'length': length,
            },
        }
        if self.task.index_var:
            values[self.task.index_var] = index
        return values

    def __repr__(self) -> str:
        suffix = f"[{self.loop_index}]" if self.is_loop_item else ""
        return f"ExecutionUnit({self.host.name}, {self.task.name!r}{suffix})"


@dataclass(frozen=True)
class PlayPlan:
    """What one play will do: hosts, their units, and its handlers."""

    index: int
    play: Play
    hosts: Tuple[Host, ...]
    units: Mapping[str, Tuple[ExecutionUnit, ...]] = field(default_factory=dict)
    handlers: Tuple[Task, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, 'units', MappingProxyType(dict(self.units)))

    def units_for(self, host: Host) -> Tuple[ExecutionUnit, ...]:
        return self.units.get(host.name, ())

    @property
    def name(self) -> str:
        return self.play.name


@dataclass(frozen=True)
class RunPlan:
    plays: Tuple[PlayPlan, ...] = ()

    @property
    def hosts(self) -> List[Host]:
        """Every host targeted by any play, first appearance order."""
        seen: Dict[str, Host] = {}
        for play_plan in self.plays:
            for host in play_plan.hosts:
                seen.setdefault(host.name, host)
        return list(seen.values())

    def __len__(self) -> int:
        return len(self.plays)


def tags_selected(task_tags: Iterable[str], only: Sequence[str], skip: Sequence[str]) -> bool:
    """
    Whether a task with ``task_tags`` survives ``--tags``/``--skip-tags``.

    ``always`` runs unless skipped by name, ``never`` only runs when asked for
    by name, and ``all`` selects everything else.
    """
    tags = set(task_tags)
    if tags & set(skip):
        return False
    if 'never' in tags and not (tags - {'never'}) & set(only):
        return False
    if not only or 'all' in only:
        return True
    if 'always' in tags:
        return True
    if 'tagged' in only and tags:
        return True
    if 'untagged' in only and not tags:
        return True
    return bool(tags & set(only))


class PlanBuilder:
    """Builds a ``RunPlan`` from plays, an inventory and a run configuration."""

    def __init__(
        self,
        inventory: InventoryManager,
        config: Optional[RunConfig] = None,
        templar: Optional[TemplateEngine] = None,
    ):
        self.inventory = inventory
        self.config = config or RunConfig()
        self.templar = templar or TemplateEngine(self.config.variable_start, self.config.variable_end)

    def build(self, plays: Sequence[Play]) -> RunPlan:
        """
        Raises:
            InventoryError: a play selector or the limit names an unknown host or group
        """
        limit: Optional[Set[str]] = None
        if self.config.limit:
            limit = {h.name for h in self.inventory.get_hosts(self.config.limit)}

        # Names set by register/set_fact in earlier tasks, across plays
        produced: Set[str] = set(_RUNTIME_NAMES)
        play_plans = []
        for index, play in enumerate(plays):
            hosts = self.inventory.get_hosts(play.hosts)
            if limit is not None:
                hosts = [h for h in hosts if h.name in limit]
            if not hosts:
                logger.warning("play %r matched no hosts", play.name)

            tasks = self._select_tasks(play)
            units = {
                host.name: self._units_for_host(index, play, host, tasks, set(produced))
                for host in hosts
            }
            for _, task in tasks:
                produced |= _produced_names(task)

            play_plans.append(PlayPlan(
                index=index,
                play=play,
                hosts=tuple(hosts),
                units=units,
                handlers=tuple(play.all_handlers()),
            ))
        return RunPlan(plays=tuple(play_plans))

    def _select_tasks(self, play: Play) -> List[Tuple[int, Task]]:
        """Tasks that survive tag filtering, with their declaration index."""
        selected: List[Tuple[int, Task]] = []
        if play.gather_facts:
            selected.append((-1, GATHER_FACTS_TASK))
        for task_index, task in enumerate(play.all_tasks()):
            tags = tuple(task.tags) + tuple(play.tags)
            if tags_selected(tags, self.config.tags, self.config.skip_tags):
                selected.append((task_index, task))
            else:
                logger.debug("task %r filtered out by tags", task.name)
        return selected

    def _units_for_host(
        self,
        play_index: int,
        play: Play,
        host: Host,
        tasks: List[Tuple[int, Task]],
        produced: Set[str],
    ) -> Tuple[ExecutionUnit, ...]:
        base_vars: Optional[Dict[str, Any]] = None
        units: List[ExecutionUnit] = []

        for task_index, task in tasks:
            if not task.has_loop:
                units.append(ExecutionUnit(play_index, host, task, task_index))
            else:
                if base_vars is None:
                    base_vars = self.inventory.base_scope(
                        host,
                        extra_vars=self.config.extra_vars,
                        play_vars=play.play_vars,
                        defaults=play.role_defaults,
                    ).flatten()
                items = self._loop_items(task, {**base_vars, **task.vars}, produced)
                if items is None:
                    units.append(ExecutionUnit(play_index, host, task, task_index, deferred_loop=task.loop))
                else:
                    template = ExecutionUnit(play_index, host, task, task_index)
                    units.extend(template.expand(items))
            produced |= _produced_names(task)
        return tuple(units)

    def _loop_items(self, task: Task, variables: Mapping[str, Any], produced: Set[str]) -> Optional[List[Any]]:
        """Loop items known now, or None when the loop must wait for run time."""
        loop = task.loop
        if isinstance(loop, (list, tuple)):
            return list(loop)
        if not isinstance(loop, str):
            return None
        if self.templar.referenced_names(loop) & produced:
            return None
        try:
            value = self.templar.render(loop, variables)
        except TemplateError:
            return None
        if isinstance(value, (list, tuple)):
            return list(value)
        return None


def _produced_names(task: Task) -> Set[str]:
    names: Set[str] = set()
    if task.register:
        names.add(task.register)
    if task.module == 'set_fact':
        names |= {k for k in task.args if k != 'cacheable'}
    if task.module == 'setup':
        names.add('ansible_facts')
    return names
