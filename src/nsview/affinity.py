"""CPU affinity lists and per-CPU executor trees.

An executor tree shows, for a single logical CPU, the processes and tasks
runnable on it in the context of their process ancestry. Ancestors that are
not runnable on that CPU themselves are still present, but not `on_cpu`.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from nsview.models import CPUList, Process, Task


def as_cpu_list(value: Any) -> CPUList | None:
    """Convert a JSON CPU list [[from, to], ...] into a CPUList.

    Returns None if the value isn't a well-formed CPU list.
    """
    if not isinstance(value, list):
        return None
    cpus: CPUList = []
    for cpurange in value:
        try:
            first, last = (int(cpu) for cpu in cpurange)
        except (TypeError, ValueError):
            return None
        cpus.append((first, last))
    return cpus


def parse_cpu_list(text: str) -> CPUList:
    """Parse the kernel's CPU list format, such as "0-3,6"."""
    cpus: CPUList = []
    for part in text.strip().split(","):
        if not part:
            continue
        first, _, last = part.partition("-")
        cpus.append((int(first), int(last or first)))
    return cpus


def format_cpu_list(cpus: CPUList | None) -> str:
    """Format a CPU list in the kernel's CPU list format."""
    return ",".join(
        str(first) if first == last else f"{first}-{last}" for first, last in cpus or []
    )


def normalize_cpu_list(cpus: Iterable[tuple[int, int]]) -> CPUList:
    """Sort and merge overlapping or adjacent CPU ranges."""
    merged: CPUList = []
    for first, last in sorted(cpus):
        if merged and first <= merged[-1][1] + 1:
            merged[-1] = (merged[-1][0], max(merged[-1][1], last))
        else:
            merged.append((first, last))
    return merged


def num_cpus(cpus: CPUList | None) -> int:
    """Return the number of CPUs in a CPU list; 0 for None."""
    return sum(last - first + 1 for first, last in cpus or [])


def same_affinity(cpus_a: CPUList | None, cpus_b: CPUList | None) -> bool:
    """Check for identical sorted CPU range lists; None is never the same."""
    if cpus_a is None or cpus_b is None:
        return False
    return sorted(cpus_a) == sorted(cpus_b)


def same_cpus(cpus_a: CPUList | None, cpus_b: CPUList | None) -> bool:
    """Check whether two CPU lists cover exactly the same CPUs."""
    return normalize_cpu_list(cpus_a or []) == normalize_cpu_list(cpus_b or [])


Busybody = Process | Task


@dataclass(slots=True, eq=False)
class Executor:
    """A process or task in the affinity tree of a single logical CPU."""

    entity: Busybody
    on_cpu: bool = False
    pinned: bool = False  # affinity is a strict subset of the online CPUs
    pinned_below: bool = False  # some on-CPU descendant is pinned
    parent: "Executor | None" = None
    children: list["Executor"] = field(default_factory=list)

    @property
    def id(self) -> int:
        return self.entity.tid if isinstance(self.entity, Task) else self.entity.pid

    @property
    def is_task(self) -> bool:
        return isinstance(self.entity, Task)

    def sorted_children(self) -> list["Executor"]:
        return sorted(self.children, key=executor_sort_key)

    def __repr__(self) -> str:
        return f"Executor({self.entity!r}, on_cpu={self.on_cpu})"


def executor_sort_key(executor: Executor) -> tuple[int, int, str, int]:
    """Tasks before processes, fewer CPUs first, then by name and id."""
    return (
        0 if executor.is_task else 1,
        num_cpus(executor.entity.affinity),
        executor.entity.name,
        executor.id,
    )


def build_executors(
    processes: Mapping[int, Process], online_cpus: CPUList
) -> dict[int, dict[int, Executor]]:
    """Build the executor trees for all logical CPUs.

    Returns a map from CPU number to all executors on that CPU, keyed by PID
    or TID. Top-level executors of a CPU are those without a parent.
    """
    cpus: dict[int, dict[int, Executor]] = {}
    for proc in processes.values():
        # Without task details, a process stands in for its leader task.
        tasks: Iterable[Busybody] = proc.tasks or [proc]
        for task in tasks:
            entity = _display_entity(proc, task)
            for first, last in task.affinity or []:
                for cpu in range(first, last + 1):
                    _place(cpus.setdefault(cpu, {}), entity, online_cpus)
    return cpus


def _display_entity(proc: Process, task: Busybody) -> Busybody:
    """Collapse leader tasks and same-affinity tasks into their process."""
    if task is proc:
        return proc
    if task.tid == proc.pid or same_affinity(task.affinity, proc.affinity):
        return proc
    return task


def _executor_id(entity: Busybody) -> int:
    return entity.tid if isinstance(entity, Task) else entity.pid


def _place(executors: dict[int, Executor], entity: Busybody, online_cpus: CPUList) -> None:
    """Place an on-CPU entity and its missing ancestry into a CPU's executors."""
    executor = executors.get(_executor_id(entity))
    if executor is not None:
        if not executor.on_cpu:
            executor.on_cpu = True
            _propagate_pinned(executor)
        return
    executor = Executor(
        entity=entity,
        on_cpu=True,
        pinned=not same_cpus(entity.affinity, online_cpus),
    )
    executors[executor.id] = executor

    child = executor
    ancestor = entity.process if isinstance(entity, Task) else entity.parent
    while ancestor is not None:
        parent = executors.get(ancestor.pid)
        if parent is not None:
            child.parent = parent
            parent.children.append(child)
            break
        parent = Executor(
            entity=ancestor,
            pinned=not same_cpus(ancestor.affinity, online_cpus),
        )
        executors[ancestor.pid] = parent
        child.parent = parent
        parent.children.append(child)
        child = parent
        ancestor = ancestor.parent
    _propagate_pinned(executor)


def _propagate_pinned(executor: Executor) -> None:
    """Flag the ancestors of a pinned on-CPU executor, stopping early."""
    if not executor.pinned:
        return
    ancestor = executor.parent
    while ancestor is not None and not ancestor.pinned_below:
        ancestor.pinned_below = True
        ancestor = ancestor.parent
