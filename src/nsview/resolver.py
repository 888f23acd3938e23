"""Resolves discovery snapshots into fully linked discovery graphs.

A snapshot cross-references its entities by numeric ids only. Resolution
replaces these ids with object references and adds the back references
consumers need. Snapshots come from a live, racy system, so references to
absent entities are normal: they silently resolve to None or are dropped.
"""

import logging
from collections.abc import Mapping
from typing import Any

from nsview.affinity import as_cpu_list, normalize_cpu_list
from nsview.links import (
    MalformedSnapshotError,
    as_id,
    break_cycles,
    list_field,
    lookup,
    lookup_all,
    mapping_field,
)
from nsview.models import (
    Container,
    DiscoveryGraph,
    Engine,
    Group,
    Namespace,
    NamespaceType,
    Process,
    Task,
)
from nsview.mounts import resolve_mounts

logger = logging.getLogger(__name__)


def _entries(snapshot: Mapping[str, Any], key: str, required: bool = False) -> Mapping[str, Any]:
    """Return a top-level dictionary of the snapshot, checking its shape."""
    entries = snapshot.get(key)
    if entries is None:
        if required:
            raise MalformedSnapshotError(f"snapshot lacks {key!r}")
        return {}
    if not isinstance(entries, Mapping):
        raise MalformedSnapshotError(f"snapshot {key!r} is not an object")
    for ident, entry in entries.items():
        if not isinstance(entry, Mapping):
            raise MalformedSnapshotError(f"snapshot {key!r} entry {ident!r} is not an object")
    return entries


def resolve(snapshot: Mapping[str, Any], *, tag_initial: bool = True) -> DiscoveryGraph:
    """Resolve a discovery snapshot into a new, fully linked DiscoveryGraph.

    The snapshot itself is left untouched.

    Args:
        snapshot: decoded JSON discovery snapshot.
        tag_initial: run the initial namespace heuristic afterwards.

    Raises:
        MalformedSnapshotError: the snapshot, or one of its entries, is not
            shaped like a discovery snapshot.
    """
    if not isinstance(snapshot, Mapping):
        raise MalformedSnapshotError("snapshot is not an object")
    nsentries = _entries(snapshot, "namespaces", required=True)
    procentries = _entries(snapshot, "processes", required=True)

    graph = DiscoveryGraph()

    # Initialization pass: create all entities with empty relations, so that
    # the linking pass can resolve forward references in any direction.
    nslinks: list[tuple[Namespace, Mapping[str, Any]]] = []
    for key, entry in nsentries.items():
        ns = _new_namespace(key, entry)
        if ns is not None:
            graph.namespaces[ns.nsid] = ns
            nslinks.append((ns, entry))
    proclinks: list[tuple[Process, Mapping[str, Any]]] = []
    for key, entry in procentries.items():
        proc = _new_process(key, entry)
        if proc is None:
            logger.debug("skipping process with invalid pid %r", key)
            continue
        graph.processes[proc.pid] = proc
        proclinks.append((proc, entry))
        for task in proc.tasks:
            graph.tasks[task.tid] = task

    # Linking pass.
    for ns, entry in nslinks:
        _link_namespace(graph, ns, entry)
    for proc, entry in proclinks:
        _link_process(graph, proc, entry)
    break_cycles(ns for ns in graph.namespaces.values() if ns.type.hierarchical)
    break_cycles(graph.processes.values())

    _resolve_containers(graph, snapshot)
    resolve_mounts(graph, _entries(snapshot, "mounts"))

    online = as_cpu_list(snapshot.get("online-cpus"))
    if online is None:
        online = normalize_cpu_list(
            cpurange
            for task in graph.tasks.values()
            for cpurange in task.affinity or []
        )
    graph.online_cpus = online

    if tag_initial:
        tag_initial_namespaces(graph)
    return graph


def _new_namespace(key: str, entry: Mapping[str, Any]) -> Namespace | None:
    nsid = as_id(entry.get("nsid", key))
    try:
        nstype = NamespaceType(entry.get("type"))
    except ValueError:
        logger.debug("skipping namespace %r of unknown type %r", key, entry.get("type"))
        return None
    if nsid is None:
        logger.debug("skipping namespace with invalid id %r", key)
        return None
    reference = entry.get("reference")
    reference = [reference] if isinstance(reference, str) else list_field(entry, "reference")
    return Namespace(
        nsid=nsid,
        type=nstype,
        reference=[str(path) for path in reference],
        user_id=entry.get("user-id"),
        user_name=str(entry.get("user-name") or ""),
    )


def _new_process(key: str, entry: Mapping[str, Any]) -> Process | None:
    pid = as_id(entry.get("pid", key))
    if pid is None:
        return None
    proc = Process(
        pid=pid,
        ppid=as_id(entry.get("ppid")) or 0,
        name=str(entry.get("name") or ""),
        cmdline=[str(arg) for arg in list_field(entry, "cmdline")],
        starttime=entry.get("starttime") or 0,
        cpucgroup=str(entry.get("cpucgroup") or entry.get("cgroup") or ""),
        affinity=as_cpu_list(entry.get("affinity")),
    )
    for taskentry in list_field(entry, "tasks"):
        if not isinstance(taskentry, Mapping):
            raise MalformedSnapshotError(f"process {key!r} task {taskentry!r} is not an object")
        tid = as_id(taskentry.get("tid"))
        if tid is None:
            continue
        proc.tasks.append(
            Task(
                tid=tid,
                name=str(taskentry.get("name") or ""),
                starttime=taskentry.get("starttime") or 0,
                affinity=as_cpu_list(taskentry.get("affinity")),
                process=proc,
            )
        )
    return proc


def _link_namespace(graph: DiscoveryGraph, ns: Namespace, entry: Mapping[str, Any]) -> None:
    ns.leaders = lookup_all(graph.processes, entry.get("leaders"))
    ns.ealdorman = lookup(graph.processes, entry.get("ealdorman"))
    ns.loose_threads = lookup_all(graph.tasks, entry.get("loose-threads"))

    if ns.type.hierarchical:
        parent = lookup(graph.namespaces, entry.get("parent"))
        if parent is not None and parent is not ns and parent.type is ns.type:
            ns.parent = parent
            parent.children.append(ns)

    if ns.type is not NamespaceType.USER:
        owner = lookup(graph.namespaces, entry.get("owner"))
        if owner is not None and owner.type is NamespaceType.USER:
            ns.owner = owner
            owner.tenants.append(ns)


def _link_process(graph: DiscoveryGraph, proc: Process, entry: Mapping[str, Any]) -> None:
    parent = graph.processes.get(proc.ppid)
    if parent is not None and parent is not proc:
        proc.parent = parent
        parent.children.append(proc)

    proc.namespaces = _namespace_set(graph, mapping_field(entry, "namespaces"))
    taskentries = {as_id(taskentry.get("tid")): taskentry for taskentry in list_field(entry, "tasks")}
    for task in proc.tasks:
        task.namespaces = _namespace_set(graph, mapping_field(taskentries[task.tid], "namespaces"))


def _namespace_set(
    graph: DiscoveryGraph, refs: Mapping[str, Any]
) -> dict[NamespaceType, Namespace | None]:
    """Return a namespace set with exactly one entry per namespace type."""
    return {nstype: lookup(graph.namespaces, refs.get(nstype.value)) for nstype in NamespaceType}


def _resolve_containers(graph: DiscoveryGraph, snapshot: Mapping[str, Any]) -> None:
    """Link containers with their engines, groups, and initial processes."""
    for key, entry in _entries(snapshot, "container-engines").items():
        ident = as_id(key)
        if ident is not None:
            graph.engines[ident] = Engine(
                id=entry.get("id") or "",
                type=entry.get("type") or "",
                api=entry.get("api") or "",
                pid=as_id(entry.get("pid")) or 0,
            )
    for key, entry in _entries(snapshot, "container-groups").items():
        ident = as_id(key)
        if ident is not None:
            graph.groups[ident] = Group(
                name=entry.get("name") or "",
                type=entry.get("type") or "",
                flavor=entry.get("flavor") or "",
                labels=dict(mapping_field(entry, "labels")),
            )
    for key, entry in _entries(snapshot, "containers").items():
        container = Container(
            id=str(entry.get("id") or key),
            name=str(entry.get("name") or ""),
            type=entry.get("type") or "",
            flavor=entry.get("flavor") or "",
            pid=as_id(entry.get("pid")) or 0,
            paused=bool(entry.get("paused")),
            labels=dict(mapping_field(entry, "labels")),
        )
        graph.containers[container.id] = container
        engine = lookup(graph.engines, entry.get("engine"))
        if engine is not None:
            container.engine = engine
            engine.containers.append(container)
        for group in lookup_all(graph.groups, entry.get("groups")):
            container.groups.append(group)
            group.containers.append(container)
        proc = graph.processes.get(container.pid)
        if proc is not None:
            proc.container = container
            container.process = proc


def tag_initial_namespaces(graph: DiscoveryGraph) -> None:
    """Mark the namespaces of PID 1 as the initial namespaces.

    This is a heuristic, not kernel truth: it assumes that PID 1 is the init
    process of the host's initial namespaces, and it only trusts this when
    PID 2 (kthreadd) is visible as well. If only one of both is present, no
    namespace gets tagged.
    """
    init = graph.processes.get(1)
    if init is None or 2 not in graph.processes:
        return
    for ns in init.namespaces.values():
        if ns is not None:
            ns.initial = True
