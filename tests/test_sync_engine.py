# tests/test_sync_engine.py
"""
測試 SyncEngine（假遠端，真實檔案系統）

測試目標：
1) 本地新檔含 #sprint → 遠端記錄 tags=["sprint"]，內容以出處區塊開頭並標註目前使用者
2) 內容與遠端相同 → 不上傳
3) 再次編輯 → history 附加變更摘要
4) 本地刪除 → 遠端刪除
5) 遠端新增 q3/report.md → 寫入本地，隨後的本地事件被抑制，不會回傳上傳
6) 沒有 workspace → 只記錄事件
7) 訂閱失敗 → 同步照常啟動
8) 上傳後緊接著的使用者編輯照常轉送並上傳
9) 同一路徑的本地事件依監聽順序送到遠端
"""

import asyncio
import time
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from core.annotator import SENTINEL, ProvenanceAnnotator, strip_provenance
from core.echo_tracker import EchoSuppressionTracker
from core.file_monitor import FileMonitor
from core.models import ChangeKind, ChangeNotification, WatchEvent, WatchEventKind
from core.sync_engine import SyncEngine


# ----------------------------------------------------------------------
# 測試用假物件
# ----------------------------------------------------------------------

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

    def messages(self, level):
        return [msg for lvl, _, msg in self.records if lvl == level]


class FakeRemote:
    """記憶體內的遠端：path → record"""

    def __init__(self, subscribe_ok=True):
        self.records = {}
        self.updates = []
        self.deletes = []
        self.callback = None
        self.subscribe_ok = subscribe_ok
        self.unsubscribed = False

    def add(self, doc_id, path, content):
        self.records[path] = {"id": doc_id, "content": content, "workspace_id": "ws1", "original_path": path}

    def get_content(self, path, workspace_id):
        record = self.records.get(path)
        return record["content"] if record else None

    def update(self, doc):
        self.updates.append(doc)
        record = self.records.setdefault(doc.path, {"id": str(len(self.records) + 1)})
        record.update(content=doc.content, tags=doc.tags, workspace_id=doc.workspace_id, group=doc.group)
        doc.id = record["id"]
        return True

    def delete(self, path, workspace_id):
        self.deletes.append(path)
        self.records.pop(path, None)
        return True

    def list_documents(self, workspace_id):
        return []

    def download(self, document_id):
        for record in self.records.values():
            if record["id"] == document_id:
                return record["content"]
        return None

    async def subscribe(self, workspace_id, callback):
        self.callback = callback
        return self.subscribe_ok

    async def unsubscribe(self):
        self.unsubscribed = True


def fixed_clock():
    return datetime(2026, 10, 17, 9, 30, tzinfo=timezone.utc)


def make_config(workspace_id="ws1"):
    return {
        "workspace": {"id": workspace_id},
        "remote": {"realtime": True},
        "sync": {"annotate": True, "shutdown_timeout": 2, "max_workers": 2},
    }


@pytest.fixture
def root(tmp_path):
    return tmp_path.resolve()


@pytest.fixture
def make_engine(root):
    engines = []

    def factory(workspace_id="ws1", remote=None, max_file_size=1000):
        logger = DummyLogger()
        tracker = EchoSuppressionTracker(grace_seconds=10)
        monitor = FileMonitor(str(root), [".md", ".txt"], max_file_size, tracker, logger, delay=0)
        engine = SyncEngine(
            config=make_config(workspace_id),
            client=remote or FakeRemote(),
            tracker=tracker,
            monitor=monitor,
            annotator=ProvenanceAnnotator("alice", clock=fixed_clock, logger=logger),
            logger=logger,
            editor="alice",
        )
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        engine.executor.shutdown(wait=True)


def write(root, rel, content):
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


# ----------------------------------------------------------------------
# Tests
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_new_local_file_is_uploaded_with_tags_and_provenance(make_engine, root):
    engine = make_engine()
    original = "# Notes\nplanning for the #sprint\n"
    local = write(root, "notes.md", original)

    assert await engine.process_event(WatchEvent(WatchEventKind.CREATED, "notes.md")) is True

    record = engine.client.records["notes.md"]
    assert record["tags"] == ["sprint"]
    assert record["content"].startswith(SENTINEL)
    assert "created: alice @ 2026-10-17 09:30 UTC" in record["content"]
    assert strip_provenance(record["content"]) == original

    # 出處區塊寫回本地；寫回不標記回音
    assert local.read_text(encoding="utf-8") == record["content"]
    assert not engine.tracker.is_suppressed("notes.md")


@pytest.mark.asyncio
async def test_unchanged_content_is_not_uploaded(make_engine, root):
    remote = FakeRemote()
    remote.add("1", "same.md", "already there\n")
    engine = make_engine(remote=remote)
    write(root, "same.md", "already there\n")

    assert await engine.process_event(WatchEvent(WatchEventKind.CREATED, "same.md")) is True
    assert remote.updates == []


@pytest.mark.asyncio
async def test_second_edit_appends_history(make_engine, root):
    engine = make_engine()
    local = write(root, "plan.md", "line one\nline two\n")
    await engine.process_event(WatchEvent(WatchEventKind.CREATED, "plan.md"))

    local.write_text(local.read_text(encoding="utf-8") + "line three\n", encoding="utf-8")
    await engine.process_event(WatchEvent(WatchEventKind.MODIFIED, "plan.md"))

    content = engine.client.records["plan.md"]["content"]
    assert content.count("created:") == 1
    assert "- updated: alice @ 2026-10-17 09:30 UTC | added L3" in content
    assert len(engine.client.updates) == 2


@pytest.mark.asyncio
async def test_local_delete_is_pushed(make_engine):
    remote = FakeRemote()
    remote.add("1", "old.md", "x")
    engine = make_engine(remote=remote)

    assert await engine.process_event(WatchEvent(WatchEventKind.DELETED, "old.md")) is True
    assert remote.deletes == ["old.md"]


@pytest.mark.asyncio
async def test_annotation_exceeding_size_limit_is_skipped(make_engine, root):
    engine = make_engine(max_file_size=120)
    write(root, "tight.md", "x" * 100)

    assert await engine.process_event(WatchEvent(WatchEventKind.CREATED, "tight.md")) is False
    assert engine.client.updates == []
    assert any("skipped" in msg for msg in engine.logger.messages("warning"))


@pytest.mark.asyncio
async def test_remote_insert_is_written_and_local_echo_suppressed(make_engine, root):
    remote = FakeRemote()
    engine = make_engine(remote=remote)
    await engine.start()
    assert engine.subscribed

    try:
        remote.add("42", "q3/report.md", "# Q3\nnumbers\n")
        remote.callback(ChangeNotification(ChangeKind.INSERT, dict(remote.records["q3/report.md"]), {}))
        assert await engine.dispatcher.drain(2)

        target = root / "q3" / "report.md"
        assert target.read_text(encoding="utf-8") == "# Q3\nnumbers\n"

        # 寫入後立即出現的本地事件（真實或合成）都不會被轉送
        engine.monitor._on_raw_event(SimpleNamespace(
            event_type="modified", src_path=str(target), dest_path="", is_directory=False,
        ))
        await asyncio.sleep(0.3)
        assert await engine.serializer.drain(2)
    finally:
        await engine.shutdown()

    assert remote.updates == []
    assert remote.unsubscribed


def modified_event(path):
    return SimpleNamespace(event_type="modified", src_path=str(path), dest_path="", is_directory=False)


@pytest.mark.asyncio
async def test_edit_right_after_upload_is_forwarded_and_uploaded(make_engine, root):
    engine = make_engine()
    forwarded = []
    engine.monitor._emit = forwarded.append
    local = write(root, "notes.md", "v1\n")

    assert await engine.process_event(WatchEvent(WatchEventKind.CREATED, "notes.md")) is True

    # 寫回出處區塊引發的事件：內容與遠端相同，不再上傳
    engine.monitor._on_raw_event(modified_event(local))
    assert await engine.process_event(forwarded.pop()) is True
    assert len(engine.client.updates) == 1

    local.write_text(local.read_text(encoding="utf-8") + "v2 user edit\n", encoding="utf-8")
    engine.monitor._on_raw_event(modified_event(local))

    assert forwarded == [WatchEvent(WatchEventKind.MODIFIED, "notes.md")]
    assert await engine.process_event(forwarded[0]) is True
    assert "v2 user edit" in engine.client.records["notes.md"]["content"]
    assert len(engine.client.updates) == 2


class SlowUpdateRemote(FakeRemote):
    def __init__(self):
        super().__init__()
        self.operations = []

    def update(self, doc):
        time.sleep(0.2)
        self.operations.append(("update", doc.path))
        return super().update(doc)

    def delete(self, path, workspace_id):
        self.operations.append(("delete", path))
        return super().delete(path, workspace_id)


@pytest.mark.asyncio
async def test_local_events_for_one_path_reach_remote_in_order(make_engine, root):
    remote = SlowUpdateRemote()
    engine = make_engine(remote=remote)
    write(root, "a.md", "draft\n")

    engine.handle_event(WatchEvent(WatchEventKind.MODIFIED, "a.md"))
    engine.handle_event(WatchEvent(WatchEventKind.DELETED, "a.md"))
    assert await engine.serializer.drain(5)

    assert remote.operations == [("update", "a.md"), ("delete", "a.md")]
    assert "a.md" not in remote.records


@pytest.mark.asyncio
async def test_local_only_mode_only_logs(make_engine):
    engine = make_engine(workspace_id=None)

    assert engine.local_only
    assert engine.handle_event(WatchEvent(WatchEventKind.MODIFIED, "a.md")) is None
    assert any("[本地模式]" in msg for msg in engine.logger.messages("info"))


@pytest.mark.asyncio
async def test_subscription_failure_does_not_stop_sync(make_engine, root):
    remote = FakeRemote(subscribe_ok=False)
    engine = make_engine(remote=remote)
    write(root, "a.md", "hello\n")

    await engine.start()
    try:
        assert not engine.subscribed
        assert engine.monitor.status.is_running
        for _ in range(50):
            if remote.updates:
                break
            await asyncio.sleep(0.05)
    finally:
        await engine.shutdown()

    assert [doc.path for doc in remote.updates] == ["a.md"]


@pytest.mark.asyncio
async def test_run_stops_on_request(make_engine):
    engine = make_engine(workspace_id=None)

    task = asyncio.ensure_future(engine.run())
    await asyncio.sleep(0.1)
    engine.request_stop()
    await asyncio.wait_for(task, timeout=5)

    assert not engine.monitor.status.is_running
