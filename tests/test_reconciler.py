# tests/test_reconciler.py
"""
測試啟動對齊

測試目標：
1) 空 workspace → 不下載，日誌記錄遠端數量 0
2) 本地不存在 → 下載，內容與遠端一致，寫入前已標記回音
3) 本地 mtime 晚於遠端 updated_at → 不下載
4) 遠端較新 → 覆寫本地
5) 單一檔案失敗不中斷整輪
6) dry-run 不寫入
7) 超過大小上限的遠端文件不下載、不寫入
8) 清單取得失敗不當成空 workspace
"""

import os
from datetime import datetime, timedelta, timezone

import pytest

from core.echo_tracker import EchoSuppressionTracker
from core.models import RemoteDocument
from core.reconciler import Reconciler


class DummyLogger:
    def __init__(self):
        self.records = []

    def info(self, icon, msg, **kwargs):
        self.records.append(("info", icon, msg))

    def success(self, icon, msg, **kwargs):
        self.records.append(("success", icon, msg))

    def warning(self, icon, msg, **kwargs):
        self.records.append(("warning", icon, msg))

    def error(self, icon, msg, **kwargs):
        self.records.append(("error", icon, msg))

    def debug(self, msg):
        self.records.append(("debug", None, msg))

    def all_messages(self):
        return [msg for _, _, msg in self.records]


class FakeClient:
    def __init__(self, docs, contents):
        # docs = None 表示清單取得失敗
        self.docs = docs
        self.contents = contents
        self.downloads = []

    def list_documents(self, workspace_id):
        return None if self.docs is None else list(self.docs)

    def download(self, document_id):
        self.downloads.append(document_id)
        return self.contents.get(document_id)


class RecordingTracker(EchoSuppressionTracker):
    def __init__(self, root):
        super().__init__()
        self.root = root
        self.marked_before_write = []

    def mark(self, path):
        self.marked_before_write.append((path, (self.root / path).exists()))
        super().mark(path)


def remote(doc_id, path, updated_at, size=0):
    return RemoteDocument(
        id=doc_id, path=path, filename=path.rsplit("/", 1)[-1], updated_at=updated_at, size=size,
    )


def set_mtime(path, when):
    ts = when.timestamp()
    os.utime(path, (ts, ts))


NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def root(tmp_path):
    return tmp_path.resolve()


@pytest.mark.asyncio
async def test_empty_workspace_downloads_nothing(root):
    logger = DummyLogger()
    client = FakeClient([], {})

    result = await Reconciler(root, client, EchoSuppressionTracker(), logger).run("ws1")

    assert result.total == 0
    assert result.downloaded == 0
    assert client.downloads == []
    assert any("遠端既有檔案: 0 個" in msg for msg in logger.all_messages())


@pytest.mark.asyncio
async def test_missing_local_file_is_downloaded(root):
    tracker = RecordingTracker(root)
    client = FakeClient([remote("1", "q3/report.md", NOW)], {"1": "# Report\n"})

    result = await Reconciler(root, client, tracker, DummyLogger()).run("ws1")

    assert result.downloaded == 1
    assert (root / "q3" / "report.md").read_text(encoding="utf-8") == "# Report\n"
    assert tracker.marked_before_write == [("q3/report.md", False)]
    assert tracker.is_suppressed("q3/report.md")


@pytest.mark.asyncio
async def test_newer_local_file_is_kept(root):
    local = root / "notes.md"
    local.write_text("local edit", encoding="utf-8")
    set_mtime(local, NOW)
    client = FakeClient([remote("1", "notes.md", NOW - timedelta(hours=1))], {"1": "remote"})

    result = await Reconciler(root, client, EchoSuppressionTracker(), DummyLogger()).run("ws1")

    assert result.skipped == 1
    assert client.downloads == []
    assert local.read_text(encoding="utf-8") == "local edit"


@pytest.mark.asyncio
async def test_equal_timestamps_keep_local(root):
    local = root / "notes.md"
    local.write_text("local", encoding="utf-8")
    set_mtime(local, NOW)
    client = FakeClient([remote("1", "notes.md", NOW)], {"1": "remote"})

    result = await Reconciler(root, client, EchoSuppressionTracker(), DummyLogger()).run("ws1")

    assert result.skipped == 1
    assert local.read_text(encoding="utf-8") == "local"


@pytest.mark.asyncio
async def test_newer_remote_overwrites_local(root):
    local = root / "notes.md"
    local.write_text("old", encoding="utf-8")
    set_mtime(local, NOW - timedelta(days=1))
    client = FakeClient([remote("1", "notes.md", NOW)], {"1": "new"})

    result = await Reconciler(root, client, EchoSuppressionTracker(), DummyLogger()).run("ws1")

    assert result.downloaded == 1
    assert local.read_text(encoding="utf-8") == "new"


@pytest.mark.asyncio
async def test_failures_are_counted_and_do_not_abort(root):
    logger = DummyLogger()
    docs = [
        remote("1", "broken.md", NOW),
        remote("2", "../escape.md", NOW),
        remote("3", "ok.md", NOW),
    ]
    client = FakeClient(docs, {"3": "fine"})

    result = await Reconciler(root, client, EchoSuppressionTracker(), logger).run("ws1")

    assert result.total == 3
    assert result.failed == 2
    assert result.downloaded == 1
    assert (root / "ok.md").read_text(encoding="utf-8") == "fine"
    assert not (root.parent / "escape.md").exists()


@pytest.mark.asyncio
async def test_dry_run_does_not_write(root):
    client = FakeClient([remote("1", "a.md", NOW)], {"1": "x"})

    result = await Reconciler(root, client, EchoSuppressionTracker(), DummyLogger()).run("ws1", dry_run=True)

    assert result.downloaded == 1
    assert client.downloads == []
    assert not (root / "a.md").exists()


@pytest.mark.asyncio
async def test_oversized_remote_is_not_downloaded(root):
    logger = DummyLogger()
    client = FakeClient([remote("1", "big.md", NOW, size=5000)], {"1": "x" * 5000})

    result = await Reconciler(root, client, EchoSuppressionTracker(), logger, max_file_size=1000).run("ws1")

    assert result.skipped == 1
    assert client.downloads == []
    assert not (root / "big.md").exists()
    assert any(level == "warning" and "skipped" in msg for level, _, msg in logger.records)


@pytest.mark.asyncio
async def test_downloaded_content_over_limit_is_not_written(root):
    tracker = EchoSuppressionTracker()
    client = FakeClient([remote("1", "big.md", NOW)], {"1": "x" * 5000})

    result = await Reconciler(root, client, tracker, DummyLogger(), max_file_size=1000).run("ws1")

    assert result.failed == 1
    assert client.downloads == ["1"]
    assert not (root / "big.md").exists()
    assert not tracker.is_suppressed("big.md")


@pytest.mark.asyncio
async def test_failed_listing_is_not_reported_as_empty(root):
    logger = DummyLogger()

    result = await Reconciler(root, FakeClient(None, {}), EchoSuppressionTracker(), logger).run("ws1")

    assert result.failed == 1
    assert not any("遠端既有檔案" in msg for msg in logger.all_messages())
    assert any(level == "error" for level, _, _ in logger.records)
