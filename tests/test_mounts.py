"""
Tests for mount snapshot comparison and watch tree reconciliation.
"""

import pytest

from pathwatch.models import CREATED, MOUNTED, UNMOUNTED
from pathwatch.mounts import (MountEntry, MountReconciler, MountSnapshot,
                              has_parent, take_snapshot)


@pytest.fixture
def reconciler(context, tree, event_filter, dispatcher):
    return MountReconciler(context, tree, event_filter, dispatcher,
                           snapshot_source=lambda: MountSnapshot())


@pytest.fixture
def mnt(tmp_path):
    root = tmp_path / "mnt"
    (root / "sub" / "deep").mkdir(parents=True)
    (root / "other").mkdir()
    return root


def test_snapshot_deduplicates_and_compares_as_set():
    a = MountSnapshot([("dev1", "/a"), ("dev2", "/b"), ("dev1", "/a")])
    b = MountSnapshot([("dev2", "/b"), ("dev1", "/a")])
    assert len(a) == 2
    assert a == b
    assert MountEntry("dev1", "/a") in a


def test_snapshot_difference():
    old = MountSnapshot([("dev1", "/a"), ("dev2", "/b")])
    new = MountSnapshot([("dev2", "/b"), ("dev3", "/c")])
    assert old.difference(new) == [MountEntry("dev1", "/a")]
    assert new.difference(old) == [MountEntry("dev3", "/c")]


def test_take_snapshot_reads_mount_table():
    snapshot = take_snapshot()
    assert all(isinstance(entry, MountEntry) for entry in snapshot)


def test_has_parent():
    assert has_parent("/mnt/a")
    assert not has_parent("/")


def test_unmount_of_root_tears_down_watcher(reconciler, tree, make_watcher, mnt):
    watcher = make_watcher(mnt, recursive=True)
    tree.install_subtree(watcher, watcher.root, 0)
    assert len(watcher.active_paths()) == 4

    old = MountSnapshot([("dev1", str(mnt))])
    fired = reconciler.reconcile([watcher], old, MountSnapshot())

    assert len(fired) == 1
    assert fired[0].kind == UNMOUNTED
    assert fired[0].path == str(mnt)
    assert fired[0].rfile == ""
    assert watcher.active_paths() == []
    assert reconciler.snapshot == MountSnapshot()


def test_mount_at_root_reinstalls_tree(reconciler, tree, make_watcher, mnt):
    watcher = make_watcher(mnt, recursive=True)
    tree.install_subtree(watcher, watcher.root, 0)
    before = watcher.active_paths()

    fired = reconciler.reconcile([watcher], MountSnapshot(), MountSnapshot([("dev1", str(mnt))]))

    assert [event.kind for event in fired] == [MOUNTED]
    assert watcher.active_paths() == before
    assert str(mnt) in watcher.subscriber.cancelled


def test_mount_below_root_rebuilds_only_that_subtree(reconciler, tree, make_watcher, mnt):
    watcher = make_watcher(mnt, recursive=True)
    tree.install_subtree(watcher, watcher.root, 0)
    mount_point = str(mnt / "sub")

    fired = reconciler.reconcile([watcher], MountSnapshot(), MountSnapshot([("dev2", mount_point)]))

    assert len(fired) == 1
    assert fired[0].kind == MOUNTED
    assert fired[0].rfile == "sub"
    assert sorted(watcher.subscriber.cancelled) == [mount_point, str(mnt / "sub" / "deep")]
    assert mount_point in watcher.active_paths()
    assert str(mnt / "sub" / "deep") in watcher.active_paths()
    assert str(mnt / "other") in watcher.active_paths()


def test_unmount_below_root_removes_subtree(reconciler, tree, make_watcher, mnt):
    watcher = make_watcher(mnt, recursive=True)
    tree.install_subtree(watcher, watcher.root, 0)
    mount_point = str(mnt / "sub")

    reconciler.reconcile([watcher], MountSnapshot([("dev2", mount_point)]), MountSnapshot())

    assert watcher.active_paths() == [str(mnt), str(mnt / "other")]


def test_unrelated_mount_is_ignored(reconciler, tree, make_watcher, mnt, tmp_path):
    watcher = make_watcher(mnt, recursive=True)
    tree.install_subtree(watcher, watcher.root, 0)
    before = watcher.active_paths()

    elsewhere = MountSnapshot([("dev9", str(tmp_path / "elsewhere"))])
    assert reconciler.reconcile([watcher], MountSnapshot(), elsewhere) == []
    # Sibling with a shared name prefix is not below the root.
    sibling = MountSnapshot([("dev9", str(mnt) + "2")])
    assert reconciler.reconcile([watcher], MountSnapshot(), sibling) == []
    assert watcher.active_paths() == before


def test_path_without_parent_is_skipped(reconciler, make_watcher):
    watcher = make_watcher("/")
    assert reconciler.reconcile([watcher], MountSnapshot([("dev0", "/")]), MountSnapshot()) == []


def test_rebuild_happens_even_when_event_is_filtered(reconciler, tree, make_watcher, mnt):
    watcher = make_watcher(mnt, recursive=True, events=(CREATED,))
    tree.install_subtree(watcher, watcher.root, 0)

    fired = reconciler.reconcile([watcher], MountSnapshot([("dev1", str(mnt))]), MountSnapshot())

    assert fired == []
    assert watcher.active_paths() == []


def test_error_for_one_watcher_does_not_skip_the_others(reconciler, tree, make_watcher, mnt, caplog):
    first = make_watcher(mnt, name="w1", recursive=True)
    second = make_watcher(mnt, name="w2", recursive=True)
    for watcher in (first, second):
        tree.install_subtree(watcher, watcher.root, 0)
    dispatched = []

    def dispatch(watcher, event):
        if watcher is first:
            raise BrokenPipeError(32, "Broken pipe")
        dispatched.append(watcher.name)

    reconciler.dispatcher.dispatch = dispatch
    new = MountSnapshot()
    fired = reconciler.reconcile([first, second], MountSnapshot([("dev1", str(mnt))]), new)

    assert [event.watcher for event in fired] == [second]
    assert dispatched == ["w2"]
    assert first.active_paths() == [] and second.active_paths() == []
    assert reconciler.snapshot is new
    assert "w1: failed to handle unmounted event" in caplog.text


def test_mount_over_non_recursive_root_recreates_its_subscription(reconciler, tree, make_watcher, mnt):
    watcher = make_watcher(mnt)
    tree.install_subtree(watcher, watcher.root, 0)
    old_subscription = watcher.registry.get(str(mnt))

    fired = reconciler.reconcile([watcher], MountSnapshot(), MountSnapshot([("dev1", str(mnt))]))

    assert [event.kind for event in fired] == [MOUNTED]
    assert watcher.active_paths() == [str(mnt)]
    assert old_subscription.cancelled
    assert watcher.registry.get(str(mnt)) is not old_subscription


def test_mount_below_non_recursive_root_keeps_tree(reconciler, tree, make_watcher, mnt):
    watcher = make_watcher(mnt)
    tree.install_subtree(watcher, watcher.root, 0)

    fired = reconciler.reconcile([watcher], MountSnapshot(), MountSnapshot([("dev2", str(mnt / "sub"))]))

    assert [event.rfile for event in fired] == ["sub"]
    assert watcher.active_paths() == [str(mnt)]
    assert watcher.subscriber.cancelled == []


def test_refresh_only_reconciles_on_change(context, tree, event_filter, dispatcher, make_watcher, mnt):
    snapshots = [MountSnapshot([("dev1", str(mnt))])]
    reconciler = MountReconciler(context, tree, event_filter, dispatcher,
                                 snapshot_source=lambda: snapshots[-1])
    watcher = make_watcher(mnt, recursive=True)
    tree.install_subtree(watcher, watcher.root, 0)
    reconciler.reset()

    assert reconciler.refresh([watcher]) == []

    snapshots.append(MountSnapshot())
    fired = reconciler.refresh([watcher])
    assert [event.kind for event in fired] == [UNMOUNTED]
    assert reconciler.refresh([watcher]) == []
