"""
同步引擎
串接啟動對齊、遠端訂閱與本地監聽，處理雙向同步
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional

from utils import LogIcons, SyncLogger
from . import local_files
from .annotator import ProvenanceAnnotator
from .dispatcher import ChangeDispatcher
from .echo_tracker import EchoSuppressionTracker
from .errors import SyncError, ValidationError
from .file_monitor import FileMonitor
from .models import ReconcileResult, WatchEvent, WatchEventKind
from .path_serializer import PathSerializer
from .reconciler import Reconciler
from .remote_client import RemoteSyncClient


class SyncEngine:
    """雙向同步引擎"""

    def __init__(
        self,
        config: Dict[str, Any],
        client: RemoteSyncClient,
        tracker: EchoSuppressionTracker,
        monitor: FileMonitor,
        annotator: ProvenanceAnnotator,
        logger: SyncLogger,
        editor: Optional[str] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        """
        初始化同步引擎

        Args:
            config:    完整配置字典
            client:    遠端客戶端
            tracker:   回音抑制追蹤器（與監聽器、分派器共用）
            monitor:   本地監聽器
            annotator: 出處標註器
            logger:    日誌記錄器
            editor:    目前使用者顯示名稱
            executor:  阻塞 IO 使用的執行緒池（None = 依 sync.max_workers 建立）
        """
        self.config = config
        self.client = client
        self.tracker = tracker
        self.monitor = monitor
        self.annotator = annotator
        self.logger = logger
        self.editor = editor

        # 從配置提取常用參數
        self.workspace_id = config['workspace']['id']
        self.annotate_enabled = config['sync']['annotate']
        self.shutdown_timeout = config['sync']['shutdown_timeout']
        self.realtime_enabled = config['remote']['realtime']

        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=config['sync']['max_workers'],
            thread_name_prefix='sync-io',
        )

        self.serializer = PathSerializer()
        self.reconciler = Reconciler(
            monitor.root, client, tracker, logger, self.executor,
            max_file_size=monitor.max_file_size,
        )
        self.dispatcher = ChangeDispatcher(
            monitor.root, client, tracker, logger, self.executor, self.serializer,
            max_file_size=monitor.max_file_size,
        )

        self.subscribed = False
        self._stop_event: Optional[asyncio.Event] = None
        self._consumer: Optional[asyncio.Task] = None

    @property
    def local_only(self) -> bool:
        """沒有 workspace 時只監聽、記錄，不做任何遠端操作"""
        return not self.workspace_id

    # ── 生命週期 ──────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """
        啟動順序：對齊 → 訂閱 → 監聽。

        監聽根目錄無法建立時拋出 SyncError。
        """
        self._stop_event = asyncio.Event()

        if self.local_only:
            self.logger.warning(LogIcons.WARNING, "未設定 workspace.id，僅本地監聽模式（不上傳、不下載）")
        else:
            await self.reconciler.run(self.workspace_id)

            if self.realtime_enabled:
                self.subscribed = await self.client.subscribe(self.workspace_id, self.dispatcher.submit)
            else:
                self.logger.info(LogIcons.NOTE, "即時通知已停用，遠端變更僅於下次啟動時對齊")

        self.monitor.start()
        self._consumer = asyncio.ensure_future(self._consume())
        self.logger.success(LogIcons.LAUNCH, f"同步已啟動: {self.monitor.root}")

    async def run(self) -> None:
        """啟動並持續運作，直到 request_stop()"""
        try:
            await self.start()
            await self._stop_event.wait()
        finally:
            await self.shutdown()

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def shutdown(self) -> None:
        """停止監聽、關閉訂閱，等待進行中的工作（逾時則取消）"""
        self.logger.info(LogIcons.STOP, "停止同步中...")

        self.monitor.stop()
        if self._consumer is not None:
            try:
                await asyncio.wait_for(self._consumer, timeout=self.shutdown_timeout)
            except asyncio.TimeoutError:
                self.logger.warning(LogIcons.WARNING, "事件佇列未能及時結束")
            self._consumer = None

        await self.client.unsubscribe()
        self.subscribed = False

        if not await self.serializer.drain(self.shutdown_timeout):
            cancelled = self.serializer.cancel_all()
            self.logger.warning(LogIcons.WARNING, f"等待逾時，已取消 {cancelled} 個進行中的工作")
            await self.serializer.drain(1)

        if self._owns_executor:
            self.executor.shutdown(wait=False)

        self.logger.success(LogIcons.COMPLETE, "同步已停止")

    async def reconcile_once(self, dry_run: bool = False) -> Optional[ReconcileResult]:
        """只執行一次啟動對齊（--mode once）"""
        if self.local_only:
            self.logger.warning(LogIcons.WARNING, "未設定 workspace.id，無法對齊")
            return None
        try:
            return await self.reconciler.run(self.workspace_id, dry_run=dry_run)
        finally:
            if self._owns_executor:
                self.executor.shutdown(wait=True)

    # ── 本地事件 ──────────────────────────────────────────────────────────────

    async def _consume(self) -> None:
        async for event in self.monitor.events():
            self.handle_event(event)

    def handle_event(self, event: WatchEvent) -> Optional[asyncio.Task]:
        """每個事件一個 task；同一路徑依序執行"""
        if self.local_only:
            self.logger.info(LogIcons.NOTE, f"[本地模式] {event.kind.value}: {event.path}")
            return None
        return self.serializer.submit(event.path, self.process_event(event))

    async def process_event(self, event: WatchEvent) -> bool:
        try:
            if event.kind is WatchEventKind.DELETED:
                return await self._push_delete(event.path)
            return await self._push_change(event.path)
        except (SyncError, OSError) as e:
            self.logger.error(LogIcons.ERROR, f"同步失敗 {event.path}: {e}")
            return False

    async def _push_change(self, path: str) -> bool:
        loop = asyncio.get_running_loop()

        try:
            doc = await loop.run_in_executor(
                self.executor, self.monitor.load_document, path, self.workspace_id, self.editor
            )
        except ValidationError as e:
            self.logger.warning(LogIcons.SKIP, f"略過: {e}")
            return False

        local_content = doc.content
        previous = await loop.run_in_executor(
            self.executor, self.client.get_content, path, self.workspace_id
        )
        if previous is not None and previous == local_content:
            self.logger.debug(f"{LogIcons.SKIP} 內容與遠端相同，不上傳: {path}")
            return True

        if self.annotate_enabled:
            annotated = self.annotator.annotate(local_content, doc.filename, previous)
            if len(annotated.encode('utf-8')) > self.monitor.max_file_size:
                self.logger.warning(LogIcons.SKIP, f"加上出處區塊後超過大小上限，略過（skipped）: {path}")
                return False
            doc = doc.with_content(annotated)

        ok = await loop.run_in_executor(self.executor, self.client.update, doc)
        if not ok:
            return False

        self.logger.info(LogIcons.UPLOAD, f"已上傳: {path}")

        if doc.content != local_content:
            await loop.run_in_executor(self.executor, self._write_back, path, local_content, doc.content)
        return True

    def _write_back(self, path: str, expected: str, content: str) -> None:
        """
        把加上出處區塊的內容寫回本地，讓下次編輯接續同一個區塊。
        讀取之後檔案又被改過就不寫。

        不標記回音：寫回引發的事件會在內容比對時略過，
        而使用者緊接著的編輯仍要照常上傳。
        """
        target = local_files.resolve_within(self.monitor.root, path)
        if local_files.read_text(target) != expected:
            self.logger.debug(f"{LogIcons.SKIP} 本地已再次修改，不寫回出處區塊: {path}")
            return
        local_files.write_text(target, content)

    async def _push_delete(self, path: str) -> bool:
        loop = asyncio.get_running_loop()
        ok = await loop.run_in_executor(self.executor, self.client.delete, path, self.workspace_id)
        if ok:
            self.logger.info(LogIcons.DELETE, f"已同步刪除: {path}")
        return ok
