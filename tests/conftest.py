"""Shared discovery snapshots for the nsview tests.

The snapshot describes a small host: systemd and kthreadd in the initial
namespaces, a docker daemon with a pinned worker thread, and a containerized
process in its own user, PID and network namespaces. A network namespace
without processes is kept alive by a bind mount.
"""

import pytest

from nsview.resolver import resolve

INIT_NAMESPACES = {"user": 1000, "pid": 2000, "mnt": 3000, "net": 4000}
CONTAINER_NAMESPACES = {"user": 1001, "pid": 2001, "mnt": 3000, "net": 4001}


def _snapshot() -> dict:
    return {
        "namespaces": {
            "1000": {"nsid": 1000, "type": "user", "reference": ["/proc/1/ns/user"],
                     "leaders": [1], "ealdorman": 1, "user-id": 0, "user-name": "root"},
            "1001": {"nsid": 1001, "type": "user", "reference": ["/proc/300/ns/user"],
                     "leaders": [300], "ealdorman": 300, "parent": 1000,
                     "user-id": 1000, "user-name": "alice"},
            "2000": {"nsid": 2000, "type": "pid", "reference": ["/proc/1/ns/pid"],
                     "leaders": [1], "ealdorman": 1, "owner": 1000},
            "2001": {"nsid": 2001, "type": "pid", "reference": ["/proc/300/ns/pid"],
                     "leaders": [300], "ealdorman": 300, "parent": 2000, "owner": 1001},
            "3000": {"nsid": 3000, "type": "mnt", "reference": ["/proc/1/ns/mnt"],
                     "leaders": [1], "ealdorman": 1, "owner": 1000},
            "4000": {"nsid": 4000, "type": "net", "reference": ["/proc/1/ns/net"],
                     "leaders": [1], "ealdorman": 1, "owner": 1000},
            "4001": {"nsid": 4001, "type": "net", "reference": ["/proc/300/ns/net"],
                     "leaders": [300], "ealdorman": 300, "owner": 1001},
            "4002": {"nsid": 4002, "type": "net", "reference": ["/run/netns/foo"],
                     "owner": 1001},
        },
        "processes": {
            "1": {"pid": 1, "ppid": 0, "name": "systemd", "cpucgroup": "/init.scope",
                  "affinity": [[0, 3]], "namespaces": dict(INIT_NAMESPACES),
                  "tasks": [{"tid": 1, "name": "systemd", "affinity": [[0, 3]],
                             "namespaces": dict(INIT_NAMESPACES)}]},
            "2": {"pid": 2, "ppid": 0, "name": "kthreadd", "cpucgroup": "",
                  "affinity": [[0, 3]], "namespaces": dict(INIT_NAMESPACES)},
            "100": {"pid": 100, "ppid": 1, "name": "dockerd",
                    "cpucgroup": "/system.slice/docker.service",
                    "affinity": [[0, 3]], "namespaces": dict(INIT_NAMESPACES),
                    "tasks": [
                        {"tid": 100, "name": "dockerd", "affinity": [[0, 3]],
                         "namespaces": dict(INIT_NAMESPACES)},
                        {"tid": 101, "name": "worker", "affinity": [[1, 1]],
                         "namespaces": dict(INIT_NAMESPACES)},
                    ]},
            "300": {"pid": 300, "ppid": 100, "name": "sleep",
                    "cpucgroup": "/system.slice/docker-abc.scope",
                    "affinity": [[2, 3]], "namespaces": dict(CONTAINER_NAMESPACES),
                    "tasks": [{"tid": 300, "name": "sleep", "affinity": [[2, 3]],
                               "namespaces": dict(CONTAINER_NAMESPACES)}]},
        },
        "mounts": {
            "3000": {
                "1": {"pathid": 1, "parentid": 0, "mounts": [
                    {"mountid": 20, "parentid": 1, "mountpoint": "/", "major": 8, "minor": 1,
                     "root": "/", "fstype": "ext4", "source": "/dev/sda1",
                     "tags": {"shared": "1"}}]},
                "2": {"pathid": 2, "parentid": 1, "mounts": [
                    {"mountid": 21, "parentid": 20, "mountpoint": "/proc", "fstype": "proc",
                     "source": "proc", "tags": {"shared": "2"}}]},
                "3": {"pathid": 3, "parentid": 1, "mounts": [
                    {"mountid": 22, "parentid": 20, "mountpoint": "/sys/fs/cgroup",
                     "fstype": "cgroup2", "source": "cgroup2", "tags": {"master": "1"}}]},
                "4": {"pathid": 4, "parentid": 1, "mounts": [
                    {"mountid": 23, "parentid": 20, "mountpoint": "/sys/kernel/debug",
                     "fstype": "debugfs", "source": "debugfs", "tags": {"shared": "1"}}]},
            },
        },
        "containers": {
            "abc": {"id": "abc", "name": "sleepy", "type": "docker", "flavor": "docker",
                    "pid": 300, "engine": 1, "groups": [7]},
        },
        "container-engines": {
            "1": {"id": "docker-1", "type": "docker", "api": "unix:///run/docker.sock", "pid": 100},
        },
        "container-groups": {
            "7": {"name": "proj", "type": "com.docker.compose.project",
                  "flavor": "com.docker.compose.project"},
        },
        "online-cpus": [[0, 3]],
    }


@pytest.fixture
def snapshot() -> dict:
    """A fresh discovery snapshot, safe to modify."""
    return _snapshot()


@pytest.fixture
def make_snapshot():
    """Factory for independent copies of the discovery snapshot."""
    return _snapshot


@pytest.fixture
def graph(snapshot):
    """The discovery snapshot, resolved."""
    return resolve(snapshot)
