"""Mount path hierarchies and mount propagation groups.

Mount paths form a tree per mount namespace. Mount points form their own
tree, which may cross mount namespace boundaries, so mount point parents are
looked up in the global mount id index. Propagation peer groups collect both
the shared peers and the slaves of a peer group id; `peers`, `masters` and
`slaves` sort out who is who.
"""

import logging
import re
from collections.abc import Iterable, Mapping
from typing import Any

from nsview.links import MalformedSnapshotError, as_id, break_cycles, list_field, mapping_field
from nsview.models import DiscoveryGraph, MountPath, MountPoint, PeerGroup

logger = logging.getLogger(__name__)

_OCTAL_ESCAPE = re.compile(r"\\([0-1][0-7][0-7])")
_DIGITS = re.compile(r"(\d+)")


def resolve_mounts(graph: DiscoveryGraph, mountentries: Mapping[str, Any]) -> None:
    """Resolve the per-mount namespace mount path maps into the graph.

    Args:
        graph: discovery graph with its namespaces already resolved.
        mountentries: mount namespace id -> mount path id -> mount path entry.
    """
    for key, pathentries in mountentries.items():
        mntnsid = as_id(key)
        if mntnsid is None:
            continue
        mountns = graph.namespaces.get(mntnsid)
        bypathid: dict[int, MountPath] = {}
        bypath: dict[str, MountPath] = {}
        for pathkey, pathentry in pathentries.items():
            mountpath = _new_mountpath(graph, mntnsid, pathkey, pathentry)
            if mountpath is None:
                continue
            for mountpoint in mountpath.mounts:
                mountpoint.mountnamespace = mountns
            if mountpath.pathid is not None:
                bypathid[mountpath.pathid] = mountpath
            bypath[mountpath.path] = mountpath
        # Mount path parents never cross mount namespaces.
        for mountpath in bypath.values():
            parent = bypathid.get(mountpath.parentid)  # type: ignore[arg-type]
            if parent is not None and parent is not mountpath:
                mountpath.parent = parent
                parent.children.append(mountpath)
        break_cycles(bypath.values())
        graph.mounts[mntnsid] = bypath
        if mountns is not None:
            mountns.mountpaths = bypath

    # Only with the global mount id index complete can mount point parents
    # be resolved, as bind mounts reference across mount namespaces.
    for mountpoint in graph.mountpoints.values():
        parent = graph.mountpoints.get(mountpoint.parentid)
        if parent is not None and parent is not mountpoint:
            mountpoint.parent = parent
            parent.children.append(mountpoint)
        peergroupid = as_id(mountpoint.tags.get("shared"))
        if peergroupid is not None:
            mountpoint.peergroup = _peergroup(graph, peergroupid)
            mountpoint.peergroup.members.append(mountpoint)
        # Slaves go into their master's peer group too.
        mastergroupid = as_id(mountpoint.tags.get("master"))
        if mastergroupid is not None:
            mountpoint.mastergroup = _peergroup(graph, mastergroupid)
            mountpoint.mastergroup.members.append(mountpoint)
    break_cycles(graph.mountpoints.values())

    for bypath in graph.mounts.values():
        root = bypath.get("/")
        if root is not None:
            insert_common_prefix_mount_paths(root)


def _new_mountpath(
    graph: DiscoveryGraph, mntnsid: int, key: str, entry: Any
) -> MountPath | None:
    if not isinstance(entry, Mapping):
        raise MalformedSnapshotError(f"mount path {key!r} is not an object")
    mountentries = list_field(entry, "mounts")
    for mountentry in mountentries:
        if not isinstance(mountentry, Mapping):
            raise MalformedSnapshotError(f"mount path {key!r} mount {mountentry!r} is not an object")
    if not mountentries:
        logger.debug("skipping mount path %r without mount points", key)
        return None
    mountpath = MountPath(
        path=str(mountentries[0].get("mountpoint") or ""),
        pathid=as_id(entry.get("pathid", key)),
        parentid=as_id(entry.get("parentid")),
    )
    for mountentry in mountentries:
        mountid = as_id(mountentry.get("mountid"))
        if mountid is None:
            continue
        mountpoint = MountPoint(
            mountid=mountid,
            parentid=as_id(mountentry.get("parentid")) or 0,
            mountpoint=str(mountentry.get("mountpoint") or mountpath.path),
            mntnsid=mntnsid,
            hidden=bool(mountentry.get("hidden")),
            major=mountentry.get("major") or 0,
            minor=mountentry.get("minor") or 0,
            root=mountentry.get("root") or "",
            mountoptions=[str(option) for option in list_field(mountentry, "mountoptions")],
            tags={str(tag): str(value) for tag, value in mapping_field(mountentry, "tags").items()},
            fstype=mountentry.get("fstype") or "",
            source=mountentry.get("source") or "",
            superoptions=mountentry.get("superoptions") or "",
            mountpath=mountpath,
        )
        mountpath.mounts.append(mountpoint)
        graph.mountpoints[mountid] = mountpoint
    return mountpath


def _peergroup(graph: DiscoveryGraph, groupid: int) -> PeerGroup:
    group = graph.peergroups.get(groupid)
    if group is None:
        group = graph.peergroups[groupid] = PeerGroup(id=groupid)
    return group


def insert_common_prefix_mount_paths(mountpath: MountPath) -> None:
    """Insert fake mount paths for child mount paths sharing a directory.

    When several child mount paths start with the same first directory below
    this mount path, they get reparented to a new fake mount path for that
    directory. Chains of fake mount paths with only a single fake child are
    squashed into one node afterwards.
    """
    starters: dict[str, list[MountPath]] = {}
    skip = len(mountpath.path) + 1 if mountpath.path != "/" else 1
    for child in mountpath.children:
        starter = starter_dir(child.path[skip:])
        if starter:
            starters.setdefault(starter, []).append(child)

    base = mountpath.path + "/" if mountpath.path != "/" else "/"
    for starter, children in starters.items():
        if len(children) == 1:
            insert_common_prefix_mount_paths(children[0])
            continue
        newparent = MountPath(path=base + starter, parent=mountpath, children=children)
        for child in children:
            child.parent = newparent
            mountpath.children.remove(child)
        mountpath.children.append(newparent)
        insert_common_prefix_mount_paths(newparent)
        if len(newparent.children) == 1 and newparent.children[0].fake:
            single = newparent.children[0]
            newparent.path = single.path
            newparent.children = single.children
            for child in newparent.children:
                child.parent = newparent


def starter_dir(path: str) -> str:
    """Return the first directory of a path, or "" for the root path."""
    start = 1 if path.startswith("/") else 0
    end = path.find("/", start)
    return path[start:end] if end > 0 else path[start:]


def unescape_mount_path(path: str) -> str:
    """Replace the octal escapes of /proc/[PID]/mountinfo, such as \\040."""
    return _OCTAL_ESCAPE.sub(lambda match: chr(int(match.group(1), 8)), path)


def count_mounts(mountpath: MountPath) -> int:
    """Count the mount points of a mount path and all mount paths below."""
    return len(mountpath.mounts) + count_child_mounts(mountpath)


def count_child_mounts(mountpath: MountPath) -> int:
    """Count the mount points below a mount path, excluding its own."""
    return sum(count_mounts(child) for child in mountpath.children)


def natural_key(text: str) -> list[Any]:
    """Sort key comparing runs of digits numerically: "sda2" < "sda10"."""
    return [
        int(part) if idx % 2 else part
        for idx, part in enumerate(_DIGITS.split(text))
    ]


def mount_sort_key(mountpoint: MountPoint) -> tuple[bool, list[Any]]:
    """Hidden mount points first, then by mount point path."""
    return (not mountpoint.hidden, natural_key(mountpoint.mountpoint))


def mount_peer_sort_key(mountpoint: MountPoint) -> tuple[list[Any], int]:
    return (natural_key(mountpoint.mountpoint), mountpoint.mountid)


def peers(mountpoint: MountPoint) -> list[MountPoint]:
    """Return the true peers of a mount point, without itself and slaves."""
    group = mountpoint.peergroup
    if group is None:
        return []
    return [m for m in group.members if m is not mountpoint and m.peergroup is group]


def masters(mountpoint: MountPoint) -> list[MountPoint]:
    """Return the master peers a slave mount point receives events from."""
    group = mountpoint.mastergroup
    if group is None:
        return []
    return [m for m in group.members if m is not mountpoint and m.peergroup is group]


def slaves(mountpoint: MountPoint) -> list[MountPoint]:
    """Return the slaves of a mount point's peer group."""
    group = mountpoint.peergroup
    if group is None:
        return []
    return [m for m in group.members if m is not mountpoint and m.mastergroup is group]


def grouped_propagation_members(
    members: Iterable[MountPoint],
) -> list[tuple[int, list[MountPoint]]]:
    """Bucket propagation group members by their mount namespaces.

    Buckets are ordered by mount namespace id; members inside each bucket are
    ordered by their mount point paths.
    """
    buckets: dict[int, list[MountPoint]] = {}
    for mountpoint in members:
        buckets.setdefault(mountpoint.mntnsid, []).append(mountpoint)
    return [
        (mntnsid, sorted(buckets[mntnsid], key=mount_peer_sort_key))
        for mntnsid in sorted(buckets)
    ]
