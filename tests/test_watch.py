import asyncio

import pytest

from wasmstage.watch import WatchSystem


class Recorder:
    def __init__(self, fail=False):
        self.builds = 0
        self.done = 0
        self.fail = fail
        self.built = asyncio.Event()

    async def build(self):
        self.builds += 1
        self.built.set()
        if self.fail:
            raise RuntimeError("boom")

    def notify(self):
        self.done += 1


@pytest.fixture
def root(tmp_path):
    base = tmp_path.resolve() / "project"
    (base / "src").mkdir(parents=True)
    (base / "dist").mkdir()
    (base / ".git").mkdir()
    (base / "src" / "lib.rs").write_text("fn main() {}")
    (base / "dist" / "index.html").write_text("<html></html>")
    (base / ".git" / "HEAD").write_text("ref")
    return base


def test_relevance(root):
    watch = WatchSystem(Recorder().build, [root], ignored_paths=[root / "dist"])
    assert watch.is_relevant(root / "src" / "lib.rs")
    assert not watch.is_relevant(root / "dist" / "index.html")
    assert not watch.is_relevant(root / "dist")
    assert not watch.is_relevant(root / ".git" / "HEAD")
    assert not watch.is_relevant(root / "src" / "gone.rs")


def test_add_ignored_deduplicates(root):
    watch = WatchSystem(Recorder().build, [root])
    watch.add_ignored(root / "dist")
    watch.add_ignored(root / "src" / ".." / "dist")
    assert watch.ignored_paths == [root / "dist"]
    missing = root / "target"
    watch.add_ignored(missing)
    assert watch.ignored_paths == [root / "dist", missing]
    assert not watch.is_relevant(root / "dist" / "index.html")


def test_missing_watch_path_raises(tmp_path):
    with pytest.raises(FileNotFoundError, match="failed to watch"):
        WatchSystem(Recorder().build, [tmp_path / "absent"])


@pytest.mark.asyncio
async def test_handle_change_builds_and_notifies(root):
    rec = Recorder()
    watch = WatchSystem(rec.build, [root], ignored_paths=[root / "dist"], on_build_done=rec.notify)
    assert await watch.handle_change(root / "src" / "lib.rs") is True
    assert await watch.handle_change(root / "dist" / "index.html") is False
    assert (rec.builds, rec.done) == (1, 1)


@pytest.mark.asyncio
async def test_failed_build_still_notifies(root):
    rec = Recorder(fail=True)
    watch = WatchSystem(rec.build, [root], on_build_done=rec.notify)
    assert await watch.handle_change(root / "src" / "lib.rs") is True
    assert (rec.builds, rec.done) == (1, 1)


@pytest.mark.asyncio
async def test_run_rebuilds_on_file_change(root):
    rec = Recorder()
    watch = WatchSystem(rec.build, [root], on_build_done=rec.notify, debounce=0.05)
    stop = asyncio.Event()
    task = asyncio.create_task(watch.run(stop))
    await asyncio.sleep(0.5)
    (root / "src" / "new.rs").write_text("pub fn f() {}")
    await asyncio.wait_for(rec.built.wait(), timeout=10)
    stop.set()
    await asyncio.wait_for(task, timeout=10)
    assert rec.builds >= 1
    assert rec.done == rec.builds
    assert task.done()