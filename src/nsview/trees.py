"""Tree views of a discovery graph.

Each tree kind turns a discovery graph into display items and tells the
expansion reconciler which of its nodes exist. The node id scheme is shared
by both, so that expansion state survives the tree being rebuilt on every
refresh.
"""

from collections.abc import Iterator
from dataclasses import dataclass, field

from nsview.affinity import (
    Executor,
    build_executors,
    executor_sort_key,
    format_cpu_list,
)
from nsview.expansion import NodeRef
from nsview.models import (
    DiscoveryGraph,
    MountPath,
    MountPoint,
    Namespace,
    NamespaceType,
    Process,
    Task,
)
from nsview.mounts import (
    count_child_mounts,
    grouped_propagation_members,
    masters,
    mount_sort_key,
    peers,
    slaves,
    unescape_mount_path,
)


@dataclass(slots=True)
class TreeItem:
    """A display-ready tree node."""

    id: str
    label: str
    children: list["TreeItem"] = field(default_factory=list)
    dimmed: bool = False


def namespace_sort_key(ns: Namespace) -> tuple[bool, int]:
    """Initial namespaces first, then by namespace id."""
    return (not ns.initial, ns.nsid)


def process_sort_key(proc: Process) -> tuple[bool, str, int]:
    """PID 1 first, then by (container) name, then by PID."""
    name = proc.container.name if proc.container is not None else proc.name
    return (proc.pid != 1, name, proc.pid)


def show_process(proc: Process, show_system: bool) -> bool:
    """Whether to show a process, hiding "system" processes unless asked."""
    if show_system:
        return True
    cgroup = proc.cpucgroup
    return (
        proc.pid > 2
        and not (cgroup.startswith("/system.slice/") and not cgroup.startswith("/system.slice/docker-"))
        and not cgroup.startswith("/init.scope/")
        and cgroup not in ("/user.slice", "/init", "/init.slice")
    )


def process_label(proc: Process) -> str:
    if proc.container is not None:
        return f'container "{proc.container.name}" ({proc.pid})'
    return f'"{proc.name}" ({proc.pid})'


def task_label(task: Task) -> str:
    return f'thread "{task.name}" ({task.tid})'


def namespace_label(ns: Namespace) -> str:
    label = f"{ns.type.value}:[{ns.nsid}]"
    if ns.initial:
        label += " initial"
    if ns.type is NamespaceType.USER and ns.user_name:
        label += f" owned by {ns.user_name} ({ns.user_id})"
    if ns.ealdorman is not None:
        label += f" process {process_label(ns.ealdorman)}"
    elif ns.loose_threads:
        label += f" {task_label(min(ns.loose_threads, key=lambda task: task.tid))}"
    elif ns.reference:
        label += f" bind-mounted at {':'.join(ns.reference)}"
    return label


def unique_procs_of_tenants(userns: Namespace) -> list[Process]:
    """Return the ealdormen of the namespaces owned by a user namespace."""
    procs: dict[int, Process] = {}
    for tenant in userns.tenants:
        if tenant.ealdorman is not None:
            procs[tenant.ealdorman.pid] = tenant.ealdorman
    return list(procs.values())


def find_sub_processes(proc: Process, nstype: NamespaceType) -> list[Process]:
    """Find the sub-processes of a process in a different cgroup.

    Only descendants still in the same namespace of the given type count;
    descendants sharing the cgroup of their parent are searched further down.
    """
    found: list[Process] = []
    stack = [proc]
    while stack:
        current = stack.pop()
        for child in current.children:
            if child.namespaces.get(nstype) is not current.namespaces.get(nstype):
                continue
            if child.cpucgroup != current.cpucgroup:
                found.append(child)
            else:
                stack.append(child)
    return found


def find_namespace_processes(ns: Namespace) -> list[Process]:
    """Return all leader and sub-leader processes of a namespace."""
    procs = list(ns.leaders)
    for leader in ns.leaders:
        procs.extend(find_sub_processes(leader, ns.type))
    return procs


def process_node_id(ns: Namespace, proc: Process) -> str:
    return f"{ns.nsid}-{proc.pid}"


def loose_thread_id(ns: Namespace, task: Task) -> str:
    return f"{ns.nsid}-task{task.tid}"


def mount_path_id(ns: Namespace, mountpath: MountPath) -> str:
    return f"{ns.nsid}-{mountpath.path}"


def mount_point_id(ns: Namespace, mountpoint: MountPoint) -> str:
    return f"{ns.nsid}-mnt{mountpoint.mountid}"


def mount_point_label(mountpoint: MountPoint) -> str:
    label = f"{mountpoint.fstype} {mountpoint.source} ({mountpoint.mountid})"
    tags = " ".join(
        f"{tag}:{value}" if value else tag for tag, value in mountpoint.tags.items()
    )
    if tags:
        label += f" {tags}"
    if mountpoint.hidden:
        label += " overmounted"
    return label


def propagation_item(itemid: str, title: str, members: list[MountPoint]) -> TreeItem:
    """Propagation peers, masters or slaves, bucketed by mount namespace."""
    return TreeItem(
        itemid,
        f"{title} [{len(members)}]",
        [
            TreeItem(
                f"{itemid}-{mntnsid}",
                f"mnt:[{mntnsid}]",
                [
                    TreeItem(
                        f"{itemid}-{mntnsid}-{member.mountid}",
                        f"{unescape_mount_path(member.mountpoint)} ({member.mountid})",
                    )
                    for member in bucket
                ],
            )
            for mntnsid, bucket in grouped_propagation_members(members)
        ],
    )


def walk_mount_paths(root: MountPath) -> Iterator[MountPath]:
    """Iterate over a mount path tree, including fake mount paths."""
    stack = [root]
    while stack:
        mountpath = stack.pop()
        yield mountpath
        stack.extend(mountpath.children)


class UserNamespaceTree:
    """User namespaces with the processes of their owned namespaces."""

    title = "user"

    def nodes(self, graph: DiscoveryGraph) -> Iterator[NodeRef]:
        for ns in graph.namespaces_of_type(NamespaceType.USER):
            yield NodeRef(
                str(ns.nsid),
                root=ns.parent is None,
                companions=tuple(f"{ns.nsid}-{proc.pid}" for proc in unique_procs_of_tenants(ns)),
            )

    def expand_all(self, graph: DiscoveryGraph) -> set[str]:
        ids = {str(ns.nsid) for ns in graph.namespaces_of_type(NamespaceType.USER)}
        ids.update(
            f"{ns.owner.nsid}-{ns.ealdorman.pid}"
            for ns in graph.namespaces.values()
            if ns.type is not NamespaceType.USER and ns.owner is not None and ns.ealdorman is not None
        )
        return ids

    def collapse_all(self, graph: DiscoveryGraph) -> set[str]:
        return {
            str(ns.nsid)
            for ns in graph.namespaces_of_type(NamespaceType.USER)
            if ns.parent is None
        }

    def items(self, graph: DiscoveryGraph) -> list[TreeItem]:
        roots = [ns for ns in graph.namespaces_of_type(NamespaceType.USER) if ns.parent is None]
        return [self._item(ns) for ns in sorted(roots, key=namespace_sort_key)]

    def _item(self, userns: Namespace) -> TreeItem:
        procs = [
            TreeItem(
                f"{userns.nsid}-{proc.pid}",
                process_label(proc),
                [
                    TreeItem(
                        f"{userns.nsid}-{proc.pid}-{tenant.nsid}",
                        namespace_label(tenant),
                    )
                    for tenant in sorted(
                        (
                            ns
                            for ns in proc.namespaces.values()
                            if ns is not None and ns.owner is userns and ns.ealdorman is proc
                        ),
                        key=lambda ns: ns.type.value,
                    )
                ],
            )
            for proc in sorted(unique_procs_of_tenants(userns), key=process_sort_key)
        ]
        # Tenants without processes are kept alive by bind mounts or fds.
        bindmounts = [
            TreeItem(str(tenant.nsid), namespace_label(tenant))
            for tenant in sorted(userns.tenants, key=namespace_sort_key)
            if tenant.ealdorman is None
        ]
        children = [self._item(child) for child in sorted(userns.children, key=namespace_sort_key)]
        return TreeItem(str(userns.nsid), namespace_label(userns), procs + bindmounts + children)


class NamespaceTree:
    """Namespaces of a single type with their leader and sub-leader processes.

    Mount namespaces additionally show their mount path trees.
    """

    def __init__(
        self,
        nstype: NamespaceType,
        show_system: bool = False,
        mount_expand_limit: int = 50,
    ) -> None:
        self.nstype = nstype
        self.show_system = show_system
        self.mount_expand_limit = mount_expand_limit

    @property
    def title(self) -> str:
        return self.nstype.value

    def nodes(self, graph: DiscoveryGraph) -> Iterator[NodeRef]:
        for ns in graph.namespaces_of_type(self.nstype):
            yield NodeRef(str(ns.nsid), root=ns.parent is None)

    def expand_all(self, graph: DiscoveryGraph) -> set[str]:
        ids: set[str] = set()
        for ns in graph.namespaces_of_type(self.nstype):
            ids.add(str(ns.nsid))
            ids.update(process_node_id(ns, proc) for proc in find_namespace_processes(ns))
            ids.update(loose_thread_id(ns, task) for task in ns.loose_threads)
            if ns.mountpaths and "/" in ns.mountpaths:
                ids.update(
                    mount_path_id(ns, mountpath)
                    for mountpath in walk_mount_paths(ns.mountpaths["/"])
                    if 0 < len(mountpath.children) <= self.mount_expand_limit
                )
        return ids

    def collapse_all(self, graph: DiscoveryGraph) -> set[str]:
        return {
            str(ns.nsid)
            for ns in graph.namespaces_of_type(self.nstype)
            if ns.parent is None
        }

    def items(self, graph: DiscoveryGraph) -> list[TreeItem]:
        roots = [ns for ns in graph.namespaces_of_type(self.nstype) if ns.parent is None]
        return [self._item(ns) for ns in sorted(roots, key=namespace_sort_key)]

    def _item(self, ns: Namespace) -> TreeItem:
        children: list[TreeItem] = []
        for leader in sorted(ns.leaders, key=process_sort_key):
            children.extend(self._process_items(ns, leader))
        children.extend(
            TreeItem(loose_thread_id(ns, task), task_label(task))
            for task in sorted(ns.loose_threads, key=lambda task: task.tid)
        )
        children.extend(self._item(child) for child in sorted(ns.children, key=namespace_sort_key))
        if ns.mountpaths and "/" in ns.mountpaths:
            children.append(self._mount_path_item(ns, ns.mountpaths["/"], ""))
        return TreeItem(str(ns.nsid), namespace_label(ns), children)

    def _process_items(self, ns: Namespace, proc: Process) -> list[TreeItem]:
        children: list[TreeItem] = []
        for child in sorted(find_sub_processes(proc, self.nstype), key=process_sort_key):
            children.extend(self._process_items(ns, child))
        # A sole leader is already shown as part of its namespace.
        hide = len(ns.leaders) == 1 and proc is ns.ealdorman
        if hide or not show_process(proc, self.show_system):
            return children
        return [TreeItem(process_node_id(ns, proc), process_label(proc), children)]

    def _mount_path_item(self, ns: Namespace, mountpath: MountPath, parentpath: str) -> TreeItem:
        path = mountpath.path
        prefix = path if path == "/" else path + "/"
        label = unescape_mount_path(path[len(parentpath):])
        childmounts = count_child_mounts(mountpath)
        if childmounts:
            label += f" [{childmounts}]"
        children = [
            self._mount_point_item(ns, mountpoint)
            for mountpoint in sorted(mountpath.mounts, key=mount_sort_key)
        ]
        children.extend(
            self._mount_path_item(ns, child, prefix)
            for child in sorted(mountpath.children, key=lambda mp: mp.path)
        )
        return TreeItem(
            mount_path_id(ns, mountpath),
            label,
            children,
            dimmed=mountpath.fake or all(mp.hidden for mp in mountpath.mounts),
        )

    def _mount_point_item(self, ns: Namespace, mountpoint: MountPoint) -> TreeItem:
        itemid = mount_point_id(ns, mountpoint)
        children = [
            propagation_item(f"{itemid}-{relation}", relation, members)
            for relation, members in (
                ("peers", peers(mountpoint)),
                ("masters", masters(mountpoint)),
                ("slaves", slaves(mountpoint)),
            )
            if members
        ]
        return TreeItem(itemid, mount_point_label(mountpoint), children, dimmed=mountpoint.hidden)


class AffinityTree:
    """Logical CPUs with the processes and tasks runnable on them."""

    title = "cpus"

    def __init__(self) -> None:
        self._cached: tuple[DiscoveryGraph, dict[int, dict[int, Executor]]] | None = None

    def executors(self, graph: DiscoveryGraph) -> dict[int, dict[int, Executor]]:
        """Return the executor trees of a graph, building them once."""
        if self._cached is None or self._cached[0] is not graph:
            self._cached = (graph, build_executors(graph.processes, graph.online_cpus))
        return self._cached[1]

    def nodes(self, graph: DiscoveryGraph) -> Iterator[NodeRef]:
        for cpu, executors in self.executors(graph).items():
            yield NodeRef(f"cpu{cpu}", root=True)
            for executor in executors.values():
                yield NodeRef(f"cpu{cpu}-{executor.id}", root=False)

    def expand_all(self, graph: DiscoveryGraph) -> set[str]:
        ids: set[str] = set()
        for cpu, executors in self.executors(graph).items():
            ids.add(f"cpu{cpu}")
            ids.update(f"cpu{cpu}-{executor.id}" for executor in executors.values() if executor.children)
        return ids

    def collapse_all(self, graph: DiscoveryGraph) -> set[str]:
        return {f"cpu{cpu}" for cpu in self.executors(graph)}

    def items(self, graph: DiscoveryGraph) -> list[TreeItem]:
        items = []
        for cpu, executors in sorted(self.executors(graph).items()):
            tops = sorted((ex for ex in executors.values() if ex.parent is None), key=executor_sort_key)
            items.append(TreeItem(f"cpu{cpu}", f"CPU {cpu}", [self._item(cpu, ex) for ex in tops]))
        return items

    def _item(self, cpu: int, executor: Executor) -> TreeItem:
        entity = executor.entity
        label = task_label(entity) if isinstance(entity, Task) else process_label(entity)
        if executor.pinned:
            label += f" pinned to {format_cpu_list(entity.affinity)}"
        if executor.pinned_below:
            label += " (pinned below)"
        return TreeItem(
            f"cpu{cpu}-{executor.id}",
            label,
            [self._item(cpu, child) for child in executor.sorted_children()],
            dimmed=not executor.on_cpu,
        )
