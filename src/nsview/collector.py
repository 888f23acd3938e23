"""Discovery snapshot providers.

`collect_snapshot` discovers the namespaces, processes, tasks and mounts of
the local host using psutil and the proc filesystem, producing the same JSON
shape a discovery service delivers. Processes come and go while we look at
them, so anything that vanishes or denies access is simply skipped.
"""

import fcntl
import json
import logging
import os
import posixpath
import pwd
import struct
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import psutil

from nsview.affinity import parse_cpu_list
from nsview.models import NamespaceType

logger = logging.getLogger(__name__)

# ioctl(2) requests of the namespace API, see ioctl_ns(2).
NS_GET_USERNS = 0xB701
NS_GET_PARENT = 0xB702
NS_GET_OWNER_UID = 0xB704

NAMESPACE_TYPES = [nstype.value for nstype in NamespaceType]


def load_snapshot(path: str | Path) -> dict[str, Any]:
    """Read a discovery snapshot from a JSON file."""
    return json.loads(Path(path).read_text(encoding="utf-8"))


def collect_snapshot() -> dict[str, Any]:
    """Collect a discovery snapshot of the local host."""
    processes = _collect_processes()
    namespaces = _collect_namespaces(processes)
    return {
        "namespaces": {str(nsid): ns for nsid, ns in namespaces.items()},
        "processes": {str(pid): proc for pid, proc in processes.items()},
        "mounts": _collect_mounts(namespaces),
        "online-cpus": online_cpus(),
    }


def online_cpus() -> list[list[int]]:
    """Return the online logical CPUs as a JSON CPU list."""
    try:
        text = Path("/sys/devices/system/cpu/online").read_text()
        return [[first, last] for first, last in parse_cpu_list(text)]
    except (OSError, ValueError):
        count = psutil.cpu_count(logical=True) or 1
        return [[0, count - 1]]


def cpu_ranges(cpus: Iterable[int] | None) -> list[list[int]] | None:
    """Compress CPU numbers into inclusive [from, to] ranges."""
    if cpus is None:
        return None
    ranges: list[list[int]] = []
    for cpu in sorted(cpus):
        if ranges and cpu == ranges[-1][1] + 1:
            ranges[-1][1] = cpu
        else:
            ranges.append([cpu, cpu])
    return ranges


def _collect_processes() -> dict[int, dict[str, Any]]:
    processes: dict[int, dict[str, Any]] = {}

    attrs = ["pid", "ppid", "name", "cmdline", "create_time", "cpu_affinity"]

    for proc in psutil.process_iter(attrs=attrs):
        try:
            with proc.oneshot():
                info = proc.info
                pid = info["pid"]
                processes[pid] = {
                    "pid": pid,
                    "ppid": info.get("ppid") or 0,
                    "name": info.get("name") or "",
                    "cmdline": info.get("cmdline") or [],
                    # milliseconds since the epoch, good enough for seniority
                    "starttime": int((info.get("create_time") or 0) * 1000),
                    "cpucgroup": _cpu_cgroup(pid),
                    "affinity": cpu_ranges(info.get("cpu_affinity")),
                    "namespaces": _namespace_ids(f"/proc/{pid}"),
                    "tasks": _collect_tasks(proc),
                }
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue

    return processes


def _collect_tasks(proc: psutil.Process) -> list[dict[str, Any]]:
    tasks = []
    for thread in proc.threads():
        taskdir = f"/proc/{proc.pid}/task/{thread.id}"
        try:
            name = Path(taskdir, "comm").read_text().strip()
            affinity = os.sched_getaffinity(thread.id)
        except OSError:
            continue
        tasks.append(
            {
                "tid": thread.id,
                "name": name,
                "affinity": cpu_ranges(affinity),
                "namespaces": _namespace_ids(taskdir),
            }
        )
    return tasks


def _namespace_ids(procdir: str) -> dict[str, int]:
    """Return the namespace ids of a process or task directory in /proc."""
    nsids = {}
    for nstype in NAMESPACE_TYPES:
        try:
            nsids[nstype] = os.stat(f"{procdir}/ns/{nstype}").st_ino
        except OSError:
            pass  # not supported by this kernel, or gone
    return nsids


def _cpu_cgroup(pid: int) -> str:
    """Return the cgroup path of a process for the cpu controller."""
    try:
        lines = Path(f"/proc/{pid}/cgroup").read_text().splitlines()
    except OSError:
        return ""
    unified = ""
    for line in lines:
        _, controllers, path = line.split(":", 2)
        if "cpu" in controllers.split(","):
            return path
        if not controllers:
            unified = path
    return unified


def _collect_namespaces(processes: dict[int, dict[str, Any]]) -> dict[int, dict[str, Any]]:
    namespaces: dict[int, dict[str, Any]] = {}
    members: dict[int, list[int]] = {}

    for pid, proc in processes.items():
        for nstype, nsid in proc["namespaces"].items():
            if nsid not in namespaces:
                namespaces[nsid] = {"nsid": nsid, "type": nstype, "reference": [f"/proc/{pid}/ns/{nstype}"]}
            members.setdefault(nsid, []).append(pid)

    # Leaders are processes whose parents are not in the same namespace; the
    # oldest leader is the ealdorman.
    for nsid, pids in members.items():
        nstype = namespaces[nsid]["type"]
        leaders = sorted(
            pid
            for pid in pids
            if processes.get(processes[pid]["ppid"], {}).get("namespaces", {}).get(nstype) != nsid
        )
        namespaces[nsid]["leaders"] = leaders
        if leaders:
            namespaces[nsid]["ealdorman"] = min(
                leaders, key=lambda pid: (processes[pid]["starttime"], pid)
            )

    for pid, proc in processes.items():
        for task in proc["tasks"]:
            for nstype, nsid in task["namespaces"].items():
                if nsid == proc["namespaces"].get(nstype):
                    continue
                if nsid not in namespaces:
                    namespaces[nsid] = {
                        "nsid": nsid,
                        "type": nstype,
                        "reference": [f"/proc/{pid}/task/{task['tid']}/ns/{nstype}"],
                    }
                namespaces[nsid].setdefault("loose-threads", []).append(task["tid"])

    for ns in namespaces.values():
        _add_relations(ns)
    return namespaces


def _add_relations(ns: dict[str, Any]) -> None:
    """Add owner, parent and owner user information to a namespace."""
    try:
        fd = os.open(ns["reference"][0], os.O_RDONLY)
    except OSError:
        return
    try:
        if ns["type"] != "user":
            owner = _related_nsid(fd, NS_GET_USERNS)
            if owner is not None:
                ns["owner"] = owner
        if ns["type"] in ("pid", "user"):
            parent = _related_nsid(fd, NS_GET_PARENT)
            if parent is not None:
                ns["parent"] = parent
        if ns["type"] == "user":
            try:
                (uid,) = struct.unpack("I", fcntl.ioctl(fd, NS_GET_OWNER_UID, bytes(4)))
            except OSError:
                return
            ns["user-id"] = uid
            try:
                ns["user-name"] = pwd.getpwuid(uid).pw_name
            except KeyError:
                ns["user-name"] = str(uid)
    finally:
        os.close(fd)


def _related_nsid(fd: int, request: int) -> int | None:
    """Return the id of a related namespace, or None if out of reach."""
    try:
        relfd = fcntl.ioctl(fd, request)
    except OSError:
        return None
    try:
        return os.fstat(relfd).st_ino
    finally:
        os.close(relfd)


def _collect_mounts(namespaces: dict[int, dict[str, Any]]) -> dict[str, Any]:
    mounts: dict[str, Any] = {}
    for nsid, ns in namespaces.items():
        if ns["type"] != "mnt" or "ealdorman" not in ns:
            continue
        try:
            lines = Path(f"/proc/{ns['ealdorman']}/mountinfo").read_text().splitlines()
        except OSError:
            continue
        mounts[str(nsid)] = mount_paths(parse_mountinfo(lines))
    return mounts


def parse_mountinfo(lines: Iterable[str]) -> list[dict[str, Any]]:
    """Parse the lines of /proc/[PID]/mountinfo, see proc(5)."""
    mountpoints = []
    for line in lines:
        fields = line.split()
        try:
            separator = fields.index("-", 6)
            major, minor = fields[2].split(":")
            tags = {}
            for tag in fields[6:separator]:
                name, _, value = tag.partition(":")
                tags[name] = value
            mountpoints.append(
                {
                    "mountid": int(fields[0]),
                    "parentid": int(fields[1]),
                    "major": int(major),
                    "minor": int(minor),
                    "root": fields[3],
                    "mountpoint": fields[4],
                    "mountoptions": fields[5].split(","),
                    "tags": tags,
                    "fstype": fields[separator + 1],
                    "source": fields[separator + 2],
                    "superoptions": fields[separator + 3] if len(fields) > separator + 3 else "",
                }
            )
        except (ValueError, IndexError):
            logger.debug("skipping malformed mountinfo line %r", line)
    return mountpoints


def mount_paths(mountpoints: list[dict[str, Any]]) -> dict[str, Any]:
    """Group mount points by their paths into a mount path map."""
    stacks: dict[str, list[dict[str, Any]]] = {}
    for mountpoint in mountpoints:
        stacks.setdefault(mountpoint["mountpoint"], []).append(mountpoint)

    # A mount point is hidden when it got overmounted in place.
    for stack in stacks.values():
        for mountpoint in stack:
            mountpoint["hidden"] = any(other["parentid"] == mountpoint["mountid"] for other in stack)

    pathids = {path: pathid for pathid, path in enumerate(sorted(stacks), start=1)}
    return {
        str(pathids[path]): {
            "pathid": pathids[path],
            "parentid": pathids.get(_parent_path(path, stacks), 0),
            "mounts": stack,
        }
        for path, stack in stacks.items()
    }


def _parent_path(path: str, paths: dict[str, Any]) -> str:
    """Return the nearest ancestor path that is a mount path, or ""."""
    candidate = path
    while candidate not in ("/", ""):
        candidate = posixpath.dirname(candidate)
        if candidate in paths:
            return candidate
    return ""
