"""
檔案監聽器
監控本地資料夾變更，過濾後以 WatchEvent 送進事件迴圈
"""

import asyncio
import os
import threading
from dataclasses import replace
from pathlib import Path, PurePosixPath
from typing import AsyncIterator, Dict, Iterable, List, Optional

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from utils import LogIcons
from .errors import SyncError, ValidationError
from .models import (
    Document,
    WatchEvent,
    WatchEventKind,
    WatcherStatus,
    normalize_path,
    utc_now,
)


class FileMonitor:
    """檔案變更監聽器"""

    def __init__(
        self,
        watch_path: str,
        allowed_extensions: Iterable[str],
        max_file_size: int,
        tracker=None,
        logger=None,
        delay: float = 0.5,
    ):
        """
        初始化監聽器

        Args:
            watch_path:         監聽根目錄（recursive）
            allowed_extensions: 允許的副檔名（如 ['.md', '.txt']，不分大小寫）
            max_file_size:      檔案大小上限（bytes），超過的檔案不轉送
            tracker:            回音抑制追蹤器，轉送前檢查
            logger:             日誌記錄器
            delay:              防抖延遲（秒），<= 0 表示不防抖
        """
        self.root = Path(watch_path).expanduser().resolve()
        self.allowed_extensions = {str(ext).lower() for ext in allowed_extensions}
        self.max_file_size = max_file_size
        self.tracker = tracker
        self.logger = logger
        self.delay = delay

        self.observer = None

        # 每個路徑一個防抖 timer 與待送出的事件種類
        self._timers: Dict[str, threading.Timer] = {}
        self._pending: Dict[str, WatchEventKind] = {}
        self._lock = threading.Lock()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._status = WatcherStatus()

    def _log(self, level: str, icon: str, message: str):
        if not self.logger:
            return
        if level == 'error':
            self.logger.error(icon, message)
        elif level == 'warning':
            self.logger.warning(icon, message)
        elif level == 'debug':
            self.logger.debug(f"{icon} {message}")
        else:
            self.logger.info(icon, message)

    # ── 過濾 ──────────────────────────────────────────────────────────────────

    def _relative(self, file_path) -> Optional[str]:
        """轉成相對於根目錄的路徑；不在根目錄底下回傳 None"""
        try:
            rel = Path(os.fsdecode(file_path)).relative_to(self.root)
        except ValueError:
            return None
        return normalize_path(rel.as_posix())

    def qualifies(self, rel_path: str) -> bool:
        """副檔名在允許清單內，且任何一層都不是 . 開頭"""
        parts = PurePosixPath(rel_path).parts
        if not parts or any(part.startswith('.') for part in parts):
            return False
        return PurePosixPath(rel_path).suffix.lower() in self.allowed_extensions

    # ── 事件處理器 ────────────────────────────────────────────────────────────

    def _make_handler(self) -> FileSystemEventHandler:
        monitor = self

        class Handler(FileSystemEventHandler):
            def on_any_event(self, event: FileSystemEvent):
                if event.is_directory:
                    return
                monitor._on_raw_event(event)

        return Handler()

    def _on_raw_event(self, event: FileSystemEvent) -> None:
        """watchdog 事件 → created / modified / deleted（移動拆成刪除 + 新增）"""
        event_type = event.event_type
        if event_type == EVENT_TYPE_MOVED:
            self._handle(WatchEventKind.DELETED, event.src_path)
            self._handle(WatchEventKind.CREATED, event.dest_path)
        elif event_type == EVENT_TYPE_CREATED:
            self._handle(WatchEventKind.CREATED, event.src_path)
        elif event_type == EVENT_TYPE_MODIFIED:
            self._handle(WatchEventKind.MODIFIED, event.src_path)
        elif event_type == EVENT_TYPE_DELETED:
            self._handle(WatchEventKind.DELETED, event.src_path)

    def _handle(self, kind: WatchEventKind, file_path) -> None:
        rel = self._relative(file_path)
        if rel is None or not self.qualifies(rel):
            return

        self._status.last_event_at = utc_now()

        if kind is WatchEventKind.DELETED:
            self._cancel_pending(rel)
            self._deliver(kind, rel)
        elif self.delay <= 0:
            self._deliver(kind, rel)
        else:
            self._schedule(rel, kind)

    # ── 防抖排程（每個路徑一個 timer）────────────────────────────────────────

    def _schedule(self, rel: str, kind: WatchEventKind) -> None:
        """
        重設該路徑的防抖 timer。
        待送出的 CREATED 不會被之後的 MODIFIED 蓋掉。
        """
        with self._lock:
            if self._pending.get(rel) is not WatchEventKind.CREATED:
                self._pending[rel] = kind

            previous = self._timers.pop(rel, None)
            if previous:
                previous.cancel()

            timer = threading.Timer(self.delay, lambda: self._fire(rel, timer))
            timer.daemon = True
            self._timers[rel] = timer
            timer.start()

    def _fire(self, rel: str, timer) -> None:
        with self._lock:
            if self._timers.get(rel) is not timer:
                return  # 已被新事件取代
            del self._timers[rel]
            kind = self._pending.pop(rel, WatchEventKind.MODIFIED)

        self._deliver(kind, rel)

    def _cancel_pending(self, rel: str) -> None:
        with self._lock:
            self._pending.pop(rel, None)
            timer = self._timers.pop(rel, None)
        if timer:
            timer.cancel()

    # ── 轉送 ──────────────────────────────────────────────────────────────────

    def _deliver(self, kind: WatchEventKind, rel: str) -> None:
        if kind is not WatchEventKind.DELETED:
            try:
                size = (self.root / rel).stat().st_size
            except FileNotFoundError:
                self._log('debug', LogIcons.SKIP, f"檔案已不存在，略過: {rel}")
                return
            except OSError as e:
                self._status.error_count += 1
                self._log('warning', LogIcons.WARNING, f"無法讀取檔案資訊 {rel}: {e}")
                return

            if size > self.max_file_size:
                self._log(
                    'warning',
                    LogIcons.SKIP,
                    f"檔案過大，已略過（skipped）: {rel} ({size} > {self.max_file_size} bytes)"
                )
                return

        if self.tracker is not None and self.tracker.is_suppressed(rel):
            self._log('debug', LogIcons.ECHO, f"略過自身寫入的回音事件: {kind.value} {rel}")
            return

        self._emit(WatchEvent(kind, rel))

    def _emit(self, event: Optional[WatchEvent]) -> None:
        """從任何執行緒把事件放進事件迴圈的佇列"""
        loop, queue = self._loop, self._queue
        if loop is None or queue is None:
            return
        try:
            loop.call_soon_threadsafe(queue.put_nowait, event)
        except RuntimeError:
            # 事件迴圈已關閉
            self._log('debug', LogIcons.SKIP, f"事件迴圈已關閉，丟棄事件: {event}")

    # ── 初始掃描 ──────────────────────────────────────────────────────────────

    def scan(self) -> List[str]:
        """列出根目錄下所有符合條件的檔案（相對路徑，已排序）"""
        found: List[str] = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith('.'))
            for name in filenames:
                rel = self._relative(Path(dirpath) / name)
                if rel and self.qualifies(rel):
                    found.append(rel)
        return sorted(found)

    # ── 讀取文件 ──────────────────────────────────────────────────────────────

    def load_document(
        self,
        path: str,
        workspace_id: Optional[str] = None,
        editor: Optional[str] = None,
    ) -> Document:
        """讀取本地檔案並建立 Document；不符合同步條件時拋出 ValidationError"""
        rel = normalize_path(path)
        if not self.qualifies(rel):
            raise ValidationError(f"不支援的檔案: {rel}")

        full_path = self.root / rel
        try:
            size = full_path.stat().st_size
            if size > self.max_file_size:
                raise ValidationError(f"檔案過大: {rel} ({size} > {self.max_file_size} bytes)")
            content = full_path.read_text(encoding='utf-8')
        except UnicodeDecodeError as e:
            raise ValidationError(f"不是 UTF-8 文字檔: {rel}") from e
        except OSError as e:
            raise ValidationError(f"無法讀取 {rel}: {e}") from e

        return Document.from_content(rel, content, workspace_id=workspace_id, last_editor=editor)

    # ── 生命週期 ──────────────────────────────────────────────────────────────

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """
        啟動監聽：建立根目錄、為既有檔案送出 created 事件，再啟動 observer。

        根目錄無法建立或讀取時拋出 SyncError（唯一的致命錯誤）。
        """
        self._loop = loop or asyncio.get_running_loop()
        self._queue = asyncio.Queue()

        try:
            self.root.mkdir(parents=True, exist_ok=True)
            existing = self.scan()
        except OSError as e:
            raise SyncError(f"無法建立或讀取監聽目錄 {self.root}: {e}") from e

        for rel in existing:
            self._deliver(WatchEventKind.CREATED, rel)

        self.observer = Observer()
        self.observer.schedule(self._make_handler(), str(self.root), recursive=True)
        self.observer.start()

        self._status = WatcherStatus(is_running=True, files_watched=len(existing))
        self._log('info', LogIcons.WATCH, f"開始監聽: {self.root}（既有檔案 {len(existing)} 個）")

    def stop(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
            self._pending.clear()
        for timer in timers:
            timer.cancel()

        if self.observer is not None:
            self.observer.stop()
            self.observer.join()
            self.observer = None

        self._status.is_running = False
        self._emit(None)

    async def events(self) -> AsyncIterator[WatchEvent]:
        """依序取出事件，stop() 之後結束"""
        queue = self._queue
        if queue is None:
            return
        while True:
            event = await queue.get()
            if event is None:
                break
            yield event

    @property
    def status(self) -> WatcherStatus:
        return replace(self._status)
