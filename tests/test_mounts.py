"""Tests for mount path hierarchies and mount propagation."""

import pytest

from nsview.models import MountPath, MountPoint
from nsview.mounts import (
    count_child_mounts,
    count_mounts,
    grouped_propagation_members,
    insert_common_prefix_mount_paths,
    masters,
    mount_sort_key,
    natural_key,
    peers,
    slaves,
    starter_dir,
    unescape_mount_path,
)
from nsview.resolver import MalformedSnapshotError, resolve


def _paths(mountpaths):
    return sorted(mp.path for mp in mountpaths)


class TestMountPaths:
    """Tests for the mount path tree of a mount namespace."""

    def test_mount_paths_indexed_by_path(self, graph):
        """Test mount paths are indexed per mount namespace by path."""
        assert sorted(graph.mounts[3000]) == ["/", "/proc", "/sys/fs/cgroup", "/sys/kernel/debug"]
        assert graph.namespaces[3000].mountpaths is graph.mounts[3000]

    def test_common_prefix_inserted(self, graph):
        """Test sibling mount paths below /sys get a fake /sys parent."""
        root = graph.mounts[3000]["/"]
        assert _paths(root.children) == ["/proc", "/sys"]
        sys = next(mp for mp in root.children if mp.path == "/sys")
        assert sys.fake
        assert sys.parent is root
        assert _paths(sys.children) == ["/sys/fs/cgroup", "/sys/kernel/debug"]
        assert all(child.parent is sys for child in sys.children)

    def test_mount_counts(self, graph):
        """Test mount point counting below mount paths."""
        root = graph.mounts[3000]["/"]
        assert count_mounts(root) == 4
        assert count_child_mounts(root) == 3

    def test_mountpoint_tree(self, graph):
        """Test mount point parents are resolved by mount id."""
        mps = graph.mountpoints
        assert mps[21].parent is mps[20]
        assert mps[20].parent is None
        assert {m.mountid for m in mps[20].children} == {21, 22, 23}
        assert mps[21].mountnamespace is graph.namespaces[3000]
        assert mps[21].mountpath is graph.mounts[3000]["/proc"]

    def test_mount_path_without_mounts_skipped(self, snapshot):
        """Test mount path entries without mount points are dropped."""
        snapshot["mounts"]["3000"]["9"] = {"pathid": 9, "parentid": 1, "mounts": []}
        graph = resolve(snapshot)
        assert len(graph.mounts[3000]) == 4

    def test_unknown_mount_namespace(self, snapshot):
        """Test mounts of a mount namespace absent from the namespaces map."""
        snapshot["mounts"]["3999"] = {
            "1": {"pathid": 1, "parentid": 0, "mounts": [
                {"mountid": 90, "parentid": 20, "mountpoint": "/"}]},
        }
        graph = resolve(snapshot)
        assert graph.mounts[3999]["/"].mounts[0].mountnamespace is None
        # bind mounts may cross mount namespaces
        assert graph.mountpoints[90].parent is graph.mountpoints[20]

    @pytest.mark.parametrize(
        "field, value",
        [("tags", ["shared:1"]), ("mountoptions", "rw"), ("mounts", 5)],
    )
    def test_malformed_mount_entries(self, snapshot, field, value):
        """Test mount entries of the wrong shape reject the snapshot."""
        pathentry = snapshot["mounts"]["3000"]["2"]
        if field == "mounts":
            pathentry["mounts"] = value
        else:
            pathentry["mounts"][0][field] = value
        with pytest.raises(MalformedSnapshotError):
            resolve(snapshot)


class TestCommonPrefixes:
    """Tests for inserting fake mount paths."""

    def _tree(self, root, *paths):
        parent = MountPath(root, mounts=[MountPoint(1, 0, root, 1)])
        for idx, path in enumerate(paths, start=2):
            child = MountPath(path, parent=parent, mounts=[MountPoint(idx, 1, path, 1)])
            parent.children.append(child)
        return parent

    def test_single_fake_chains_squashed(self):
        """Test a chain of fake mount paths collapses into one."""
        root = self._tree("/12", "/12/a", "/12/b", "/12/c/a/b/c", "/12/c/a/b/d", "/12/d")
        insert_common_prefix_mount_paths(root)

        assert _paths(root.children) == ["/12/a", "/12/b", "/12/c/a/b", "/12/d"]
        fake = next(mp for mp in root.children if mp.fake)
        assert fake.parent is root
        assert _paths(fake.children) == ["/12/c/a/b/c", "/12/c/a/b/d"]
        assert all(child.parent is fake for child in fake.children)

    def test_no_common_prefix(self):
        """Test nothing changes without shared directories."""
        root = self._tree("/", "/a", "/b/c")
        insert_common_prefix_mount_paths(root)
        assert _paths(root.children) == ["/a", "/b/c"]
        assert not any(mp.fake for mp in root.children)

    def test_fake_mount_path_is_not_a_mount(self):
        """Test fake mount paths have no mounts and no path id."""
        root = self._tree("/", "/var/a", "/var/b")
        insert_common_prefix_mount_paths(root)
        (var,) = root.children
        assert var.path == "/var"
        assert var.mounts == []
        assert var.pathid is None


class TestPropagation:
    """Tests for mount propagation peers, masters and slaves."""

    def test_peer_groups(self, graph):
        """Test shared and master tags end up in the same peer group."""
        group = graph.peergroups[1]
        assert {m.mountid for m in group.members} == {20, 22, 23}

    def test_peers(self, graph):
        """Test peers exclude the mount point itself and slaves."""
        mps = graph.mountpoints
        assert peers(mps[20]) == [mps[23]]
        assert peers(mps[21]) == []
        assert peers(mps[22]) == []

    def test_slaves(self, graph):
        """Test slaves of a peer group."""
        mps = graph.mountpoints
        assert slaves(mps[20]) == [mps[22]]
        assert slaves(mps[22]) == []

    def test_masters(self, graph):
        """Test masters of a slave are the peers of its master group."""
        mps = graph.mountpoints
        assert {m.mountid for m in masters(mps[22])} == {20, 23}
        assert masters(mps[20]) == []

    def test_grouped_members(self, graph):
        """Test members are bucketed by mount namespace and sorted by path."""
        groups = grouped_propagation_members(graph.peergroups[1].members)
        assert [(nsid, [m.mountid for m in members]) for nsid, members in groups] == [
            (3000, [20, 22, 23]),
        ]

    def test_grouped_members_ordering(self):
        """Test buckets are ordered by mount namespace id."""
        members = [
            MountPoint(1, 0, "/b", 20),
            MountPoint(2, 0, "/a10", 10),
            MountPoint(3, 0, "/a9", 10),
        ]
        groups = grouped_propagation_members(members)
        assert [nsid for nsid, _ in groups] == [10, 20]
        assert [m.mountid for m in groups[0][1]] == [3, 2]


class TestPathHelpers:
    """Tests for mount path helper functions."""

    def test_starter_dir(self):
        assert starter_dir("/a/b") == "a"
        assert starter_dir("a/b") == "a"
        assert starter_dir("a") == "a"
        assert starter_dir("") == ""
        assert starter_dir("/") == ""

    def test_unescape_mount_path(self):
        """Test octal escapes from mountinfo are replaced."""
        assert unescape_mount_path(r"/mnt/my\040disk") == "/mnt/my disk"
        assert unescape_mount_path(r"/a\011b\134c") == "/a\tb\\c"
        assert unescape_mount_path("/plain") == "/plain"

    def test_natural_key(self):
        """Test digit runs compare numerically."""
        assert sorted(["sda10", "sda2", "sda1"], key=natural_key) == ["sda1", "sda2", "sda10"]

    def test_mount_sort_key_hidden_first(self):
        """Test hidden mount points sort before visible ones."""
        visible = MountPoint(1, 0, "/a", 1)
        hidden = MountPoint(2, 0, "/b", 1, hidden=True)
        assert sorted([visible, hidden], key=mount_sort_key) == [hidden, visible]


def test_peers_exclude_slaves():
    """Test M1{shared=5}, M2{shared=5}, M3{master=5}: M2 is a peer, M3 a slave."""
    graph = resolve({
        "namespaces": {},
        "processes": {},
        "mounts": {"1": {
            "1": {"pathid": 1, "mounts": [{"mountid": 1, "mountpoint": "/", "tags": {"shared": "5"}}]},
            "2": {"pathid": 2, "parentid": 1, "mounts": [
                {"mountid": 2, "parentid": 1, "mountpoint": "/a", "tags": {"shared": 5}}]},
            "3": {"pathid": 3, "parentid": 1, "mounts": [
                {"mountid": 3, "parentid": 1, "mountpoint": "/b", "tags": {"master": "5"}}]},
        }},
    })
    m1, m2, m3 = (graph.mountpoints[mountid] for mountid in (1, 2, 3))
    assert peers(m1) == [m2]
    assert slaves(m1) == [m3]
    assert m3 not in peers(m2)
