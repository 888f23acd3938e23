"""Data models for nsview.

The discovery graph is cyclic on purpose: parents reference their children
and vice versa, namespaces reference their owners and owners their tenants.
All entities therefore compare by identity and keep their reprs shallow.
"""

from dataclasses import dataclass, field
from enum import Enum

# An inclusive list of [from, to] logical CPU ranges, such as [(0, 3), (6, 6)].
CPUList = list[tuple[int, int]]


class NamespaceType(Enum):
    """Linux namespace types, using the kernel's type names."""

    CGROUP = "cgroup"
    IPC = "ipc"
    MNT = "mnt"
    NET = "net"
    PID = "pid"
    USER = "user"
    UTS = "uts"
    TIME = "time"

    @property
    def hierarchical(self) -> bool:
        """Only PID and user namespaces form parent/child trees."""
        return self in (NamespaceType.PID, NamespaceType.USER)


@dataclass(slots=True, eq=False)
class Namespace:
    """A Linux namespace, identified by its inode number."""

    nsid: int
    type: NamespaceType
    reference: list[str] = field(default_factory=list)
    owner: "Namespace | None" = None  # always a user namespace, or None
    user_id: int | None = None
    user_name: str = ""
    ealdorman: "Process | None" = None
    leaders: list["Process"] = field(default_factory=list)
    loose_threads: list["Task"] = field(default_factory=list)
    parent: "Namespace | None" = None  # PID and user namespaces only
    children: list["Namespace"] = field(default_factory=list)
    tenants: list["Namespace"] = field(default_factory=list)  # user namespaces only
    initial: bool = False
    mountpaths: dict[str, "MountPath"] | None = None  # mount namespaces only

    def __repr__(self) -> str:
        return f"Namespace({self.type.value}:[{self.nsid}])"


@dataclass(slots=True, eq=False)
class Process:
    """A process with its process tree and namespace relations."""

    pid: int
    ppid: int
    name: str = ""
    cmdline: list[str] = field(default_factory=list)
    starttime: int = 0
    cpucgroup: str = ""
    affinity: CPUList | None = None
    namespaces: dict[NamespaceType, Namespace | None] = field(default_factory=dict)
    parent: "Process | None" = None
    children: list["Process"] = field(default_factory=list)
    tasks: list["Task"] = field(default_factory=list)
    container: "Container | None" = None

    def __repr__(self) -> str:
        return f"Process({self.name!r}, pid={self.pid})"


@dataclass(slots=True, eq=False)
class Task:
    """A single thread of a process; the leader task has tid == pid."""

    tid: int
    name: str = ""
    starttime: int = 0
    affinity: CPUList | None = None
    process: Process | None = None
    namespaces: dict[NamespaceType, Namespace | None] = field(default_factory=dict)

    @property
    def is_leader(self) -> bool:
        return self.process is not None and self.process.pid == self.tid

    def __repr__(self) -> str:
        return f"Task({self.name!r}, tid={self.tid})"


@dataclass(slots=True, eq=False)
class MountPoint:
    """Kernel information about a single mount, plus resolved relations."""

    mountid: int
    parentid: int
    mountpoint: str
    mntnsid: int
    hidden: bool = False
    major: int = 0
    minor: int = 0
    root: str = ""
    mountoptions: list[str] = field(default_factory=list)
    tags: dict[str, str] = field(default_factory=dict)
    fstype: str = ""
    source: str = ""
    superoptions: str = ""
    mountnamespace: Namespace | None = None
    mountpath: "MountPath | None" = None
    parent: "MountPoint | None" = None  # may live in another mount namespace
    children: list["MountPoint"] = field(default_factory=list)
    peergroup: "PeerGroup | None" = None
    mastergroup: "PeerGroup | None" = None

    def __repr__(self) -> str:
        return f"MountPoint({self.mountpoint!r}, mountid={self.mountid})"


@dataclass(slots=True, eq=False)
class MountPath:
    """A path in one mount namespace with the mount point(s) stacked on it.

    Fake mount paths have no mounts (and no pathid); they only group child
    mount paths sharing a common directory prefix.
    """

    path: str
    pathid: int | None = None
    parentid: int | None = None
    parent: "MountPath | None" = None
    children: list["MountPath"] = field(default_factory=list)
    mounts: list[MountPoint] = field(default_factory=list)

    @property
    def fake(self) -> bool:
        return not self.mounts

    def __repr__(self) -> str:
        return f"MountPath({self.path!r}, pathid={self.pathid})"


@dataclass(slots=True, eq=False)
class PeerGroup:
    """Mount propagation group: its shared peers plus their slaves."""

    id: int
    members: list[MountPoint] = field(default_factory=list)

    def __repr__(self) -> str:
        return f"PeerGroup({self.id}, members={len(self.members)})"


@dataclass(slots=True, eq=False)
class Engine:
    """A container engine managing containers."""

    id: str
    type: str = ""
    api: str = ""
    pid: int = 0
    containers: list["Container"] = field(default_factory=list)


@dataclass(slots=True, eq=False)
class Group:
    """A group of containers, such as a composer project or pod."""

    name: str
    type: str = ""
    flavor: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    containers: list["Container"] = field(default_factory=list)


@dataclass(slots=True, eq=False)
class Container:
    """An alive container, optionally linked to its initial process."""

    id: str
    name: str = ""
    type: str = ""
    flavor: str = ""
    pid: int = 0
    paused: bool = False
    labels: dict[str, str] = field(default_factory=dict)
    engine: Engine | None = None
    groups: list[Group] = field(default_factory=list)
    process: Process | None = None

    def group(self, type_or_flavor: str) -> Group | None:
        """Return the first group matching the given type or flavor."""
        for group in self.groups:
            if type_or_flavor in (group.flavor, group.type):
                return group
        return None


@dataclass(slots=True, eq=False)
class DiscoveryGraph:
    """Fully linked discovery information from a single snapshot."""

    namespaces: dict[int, Namespace] = field(default_factory=dict)
    processes: dict[int, Process] = field(default_factory=dict)
    tasks: dict[int, Task] = field(default_factory=dict)
    mounts: dict[int, dict[str, MountPath]] = field(default_factory=dict)
    mountpoints: dict[int, MountPoint] = field(default_factory=dict)
    peergroups: dict[int, PeerGroup] = field(default_factory=dict)
    containers: dict[str, Container] = field(default_factory=dict)
    engines: dict[int, Engine] = field(default_factory=dict)
    groups: dict[int, Group] = field(default_factory=dict)
    online_cpus: CPUList = field(default_factory=list)

    def namespaces_of_type(self, nstype: NamespaceType) -> list[Namespace]:
        return [ns for ns in self.namespaces.values() if ns.type is nstype]

    def __repr__(self) -> str:
        return (
            f"DiscoveryGraph(namespaces={len(self.namespaces)}, "
            f"processes={len(self.processes)}, tasks={len(self.tasks)})"
        )
