"""
Tests for the Application: notification handling, lifecycle and reload.
"""

import sys

import pytest
from inotify_simple import flags

from pathwatch.app import Application
from pathwatch.config import ConfigError
from pathwatch.models import CREATED, DELETED, Action, WatcherSpec
from pathwatch.mounts import MountSnapshot
from pathwatch.subscriptions import RawNotification


@pytest.fixture
def make_app(context, spawner, fake_subscriber_factory):
    apps = []

    def _make(specs, subscriber_factory=fake_subscriber_factory, spec_loader=None):
        app = Application(
            context,
            specs,
            spec_loader=spec_loader,
            subscriber_factory=subscriber_factory,
            snapshot_source=lambda: MountSnapshot(),
            mount_poll_interval=0,
        )
        app.dispatcher.spawn = spawner
        apps.append(app)
        return app

    yield _make

    for app in apps:
        app.stop()
        app.loop.close()


def _spec(root, **kwargs):
    kwargs.setdefault("name", "w1")
    return WatcherSpec(root=str(root), **kwargs)


def _pump(app, until, attempts=50):
    for _ in range(attempts):
        app.loop.run_once(0.1)
        if until():
            return True
    return False


def test_start_installs_watch_tree(make_app, tmp_path):
    (tmp_path / "a" / "b").mkdir(parents=True)
    app = make_app([_spec(tmp_path, recursive=True)])

    app.start()

    assert app.list_active_paths("w1") == [str(tmp_path), str(tmp_path / "a"), str(tmp_path / "a" / "b")]


def test_start_and_stop_are_idempotent(make_app, tmp_path):
    app = make_app([_spec(tmp_path)])
    app.start()
    watcher = app.get_watcher("w1")
    subscriber = watcher.subscriber
    app.start()
    assert watcher.subscriber is subscriber

    app.stop()
    app.stop()
    assert not app.started
    assert app.list_active_paths("w1") == []


def test_missing_root_is_logged_not_fatal(make_app, tmp_path):
    app = make_app([_spec(tmp_path / "missing"), _spec(tmp_path, name="w2")])
    app.start()
    assert app.list_active_paths("w1") == []
    assert app.list_active_paths("w2") == [str(tmp_path)]


def test_list_active_paths_unknown_watcher(make_app, tmp_path):
    app = make_app([_spec(tmp_path)])
    with pytest.raises(KeyError):
        app.list_active_paths("nope")


def test_created_directory_is_watched_then_reported(make_app, spawner, tmp_path):
    spec = _spec(tmp_path, recursive=True, action=Action(command="echo $event $rfile"))
    app = make_app([spec])
    app.start()
    watcher = app.get_watcher("w1")

    sub = tmp_path / "sub"
    sub.mkdir()
    event = app.handle_notification(watcher, RawNotification(flags.CREATE, str(sub)))

    assert event.kind == CREATED
    assert str(sub) in app.list_active_paths("w1")
    assert spawner.commands == ["echo created sub"]


def test_failing_stdout_does_not_drop_rest_of_batch(make_app, broken_stdout, tmp_path, caplog):
    app = make_app([_spec(tmp_path, recursive=True, action=Action(print_path=True))])
    app.start()
    watcher = app.get_watcher("w1")

    first, second = tmp_path / "d1", tmp_path / "d2"
    first.mkdir()
    second.mkdir()
    watcher.subscriber.read = lambda: [
        RawNotification(flags.CREATE, str(first)),
        RawNotification(flags.CREATE, str(second)),
    ]
    app._on_readable(watcher)

    assert app.list_active_paths("w1") == [str(tmp_path), str(first), str(second)]
    assert "failed to print the file name" in caplog.text


def test_error_in_one_notification_does_not_stop_the_next(make_app, spawner, tmp_path, caplog):
    app = make_app([_spec(tmp_path, recursive=True, action=Action(command="echo $rfile"))])
    app.start()
    watcher = app.get_watcher("w1")

    first, second = tmp_path / "d1", tmp_path / "d2"
    first.mkdir()
    second.mkdir()

    def spawn(command):
        if command == "echo d1":
            raise RuntimeError("unexpected")
        spawner(command)

    app.dispatcher.spawn = spawn
    watcher.subscriber.read = lambda: [
        RawNotification(flags.CREATE, str(first)),
        RawNotification(flags.CREATE, str(second)),
    ]
    app._on_readable(watcher)

    assert spawner.commands == ["echo d2"]
    assert str(second) in app.list_active_paths("w1")
    assert "failed to handle event" in caplog.text


def test_created_directory_beyond_max_depth_is_not_watched(make_app, tmp_path):
    (tmp_path / "a").mkdir()
    app = make_app([_spec(tmp_path, recursive=True, max_depth=1)])
    app.start()

    deep = tmp_path / "a" / "deep"
    deep.mkdir()
    app.handle_notification(app.get_watcher("w1"), RawNotification(flags.CREATE, str(deep)))

    assert str(deep) not in app.list_active_paths("w1")


def test_created_symlink_to_directory_is_not_watched(make_app, tmp_path):
    target = tmp_path / "target"
    target.mkdir()
    root = tmp_path / "root"
    root.mkdir()
    app = make_app([_spec(root, recursive=True)])
    app.start()

    link = root / "link"
    link.symlink_to(target, target_is_directory=True)
    app.handle_notification(app.get_watcher("w1"), RawNotification(flags.CREATE, str(link)))

    assert app.list_active_paths("w1") == [str(root)]


def test_tree_is_updated_even_when_event_is_rejected(make_app, spawner, tmp_path):
    spec = _spec(tmp_path, recursive=True, file_type="regular", action=Action(command="echo $file"))
    app = make_app([spec])
    app.start()

    sub = tmp_path / "sub"
    sub.mkdir()
    event = app.handle_notification(app.get_watcher("w1"), RawNotification(flags.CREATE, str(sub)))

    assert event is None
    assert str(sub) in app.list_active_paths("w1")
    assert spawner.commands == []


def test_deleted_directory_removes_subtree(make_app, tmp_path):
    (tmp_path / "sub" / "inner").mkdir(parents=True)
    (tmp_path / "subway").mkdir()
    app = make_app([_spec(tmp_path, recursive=True)])
    app.start()

    event = app.handle_notification(
        app.get_watcher("w1"), RawNotification(flags.DELETE, str(tmp_path / "sub"))
    )

    assert event.kind == DELETED
    assert app.list_active_paths("w1") == [str(tmp_path), str(tmp_path / "subway")]


def test_deleted_root_removes_root_entry(make_app, tmp_path):
    app = make_app([_spec(tmp_path, recursive=True)])
    app.start()

    event = app.handle_notification(
        app.get_watcher("w1"), RawNotification(flags.DELETE_SELF, str(tmp_path))
    )

    assert event.kind == DELETED
    assert event.rfile == ""
    assert app.list_active_paths("w1") == []


def test_reload_keeps_configuration_on_error(make_app, tmp_path):
    def broken_loader():
        raise ConfigError("w1: invalid event 'bogus'")

    app = make_app([_spec(tmp_path)], spec_loader=broken_loader)
    app.start()
    watcher = app.get_watcher("w1")

    assert app.reload() is False
    assert app.watchers == [watcher]
    assert app.started
    assert app.list_active_paths("w1") == [str(tmp_path)]


def test_reload_replaces_watchers(make_app, tmp_path):
    other = tmp_path / "other"
    other.mkdir()
    app = make_app([_spec(tmp_path)], spec_loader=lambda: [_spec(other, name="w2")])
    app.start()

    assert app.reload() is True

    assert [w.name for w in app.watchers] == ["w2"]
    assert app.list_active_paths("w2") == [str(other)]
    with pytest.raises(KeyError):
        app.get_watcher("w1")


def test_reload_without_loader_is_ignored(make_app, tmp_path):
    app = make_app([_spec(tmp_path)])
    assert app.reload() is False


def test_signal_requests_run_on_loop(make_app, tmp_path):
    app = make_app([_spec(tmp_path)])
    app.start()

    app.request_stop()
    assert app.started
    app.loop.run_once(0)
    assert not app.started

    app.request_start()
    app.loop.run_once(0)
    assert app.started
    assert app.list_active_paths("w1") == [str(tmp_path)]


def test_start_lists_active_paths_once(make_app, tmp_path, caplog):
    app = make_app([_spec(tmp_path)])
    app.start()
    app.stop()
    caplog.clear()

    app.request_start()
    app.loop.run_once(0)

    assert caplog.text.count("w1: listing monitors") == 1


def test_stop_joins_mount_poller(context, fake_subscriber_factory, tmp_path):
    app = Application(
        context,
        [_spec(tmp_path)],
        subscriber_factory=fake_subscriber_factory,
        snapshot_source=lambda: MountSnapshot(),
        mount_poll_interval=0.05,
    )
    try:
        app.start()
        worker = app._mount_worker
        assert worker.is_alive()

        app.stop()

        assert not worker.is_alive()
        assert app._mount_worker is None
    finally:
        app.loop.close()


def test_check_mounts_requires_started(make_app, tmp_path):
    app = make_app([_spec(tmp_path)])
    assert app.check_mounts() == []


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="inotify is Linux only")
def test_end_to_end_with_inotify(make_app, spawner, tmp_path):
    root = tmp_path / "w"
    root.mkdir()
    spec = _spec(root, recursive=True, action=Action(command="echo $event $file"))
    app = make_app([spec], subscriber_factory=None)
    app.start()

    sub = root / "sub"
    sub.mkdir()
    assert _pump(app, lambda: str(sub) in app.list_active_paths("w1"))
    assert spawner.commands[0] == f"echo created {sub}"

    target = sub / "file.txt"
    target.write_text("hello")
    expected = f"echo created {target}"
    assert _pump(app, lambda: expected in spawner.commands)
