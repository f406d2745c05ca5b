"""
啟動對齊
在監聽與訂閱開始之前，把遠端較新的文件拉到本地
"""

import asyncio
import time
from concurrent.futures import Executor
from pathlib import Path
from typing import Optional

from utils import LogIcons
from . import local_files
from .errors import SyncError, ValidationError
from .models import ReconcileResult, RemoteDocument


class Reconciler:
    """啟動時的一次性對齊（遠端 → 本地）"""

    def __init__(
        self,
        root,
        client,
        tracker,
        logger,
        executor: Optional[Executor] = None,
        max_file_size: Optional[int] = None,
    ):
        """
        Args:
            root:          監聽根目錄
            client:        RemoteSyncClient
            tracker:       回音抑制追蹤器（寫入前標記）
            logger:        日誌記錄器
            executor:      阻塞 IO 使用的執行緒池（None = 事件迴圈預設池）
            max_file_size: 檔案大小上限（bytes），超過的遠端文件不下載；None = 不限制
        """
        self.root = Path(root).expanduser().resolve()
        self.client = client
        self.tracker = tracker
        self.logger = logger
        self.executor = executor
        self.max_file_size = max_file_size

    def exceeds_limit(self, size: int) -> bool:
        return self.max_file_size is not None and size > self.max_file_size

    def needs_download(self, remote: RemoteDocument) -> bool:
        """
        本地不存在，或遠端 updated_at 嚴格晚於本地 mtime 才下載。

        時間相同或本地較新時保留本地（last-write-wins，沒有進一步比較）。
        """
        target = local_files.resolve_within(self.root, remote.path)
        local_mtime = local_files.modified_at(target)
        if local_mtime is None:
            return True
        if remote.updated_at is None:
            return False
        return remote.updated_at > local_mtime

    async def run(self, workspace_id: str, dry_run: bool = False) -> ReconcileResult:
        loop = asyncio.get_running_loop()

        self.logger.info(LogIcons.CONNECT, "啟動對齊：取得遠端文件清單...")
        remote_docs = await loop.run_in_executor(self.executor, self.client.list_documents, workspace_id)
        if remote_docs is None:
            self.logger.error(LogIcons.ERROR, "無法取得遠端文件清單，本次不對齊（保留本地現況）")
            return ReconcileResult(failed=1)

        result = ReconcileResult(total=len(remote_docs))
        self.logger.info(LogIcons.STATS, f"遠端既有檔案: {result.total} 個")

        if dry_run:
            self.logger.info(LogIcons.WARNING, "Dry-run 模式：僅預覽，不實際下載")

        t0 = time.perf_counter()
        step = max(1, result.total // 10)

        for done, remote in enumerate(remote_docs, start=1):
            try:
                if not self.needs_download(remote):
                    result.skipped += 1
                    self.logger.debug(f"{LogIcons.SKIP} 本地較新或相同，保留本地: {remote.path}")
                elif self.exceeds_limit(remote.size):
                    result.skipped += 1
                    self.logger.warning(
                        LogIcons.SKIP,
                        f"遠端文件過大，已略過（skipped）: {remote.path} ({remote.size} > {self.max_file_size} bytes)"
                    )
                elif dry_run:
                    result.downloaded += 1
                    self.logger.info(LogIcons.DOWNLOAD, f"[dry-run] 將下載: {remote.path}")
                elif await self._download(loop, remote):
                    result.downloaded += 1
                else:
                    result.failed += 1
            except ValidationError as e:
                result.failed += 1
                self.logger.warning(LogIcons.WARNING, f"略過 {remote.path}: {e}")
            except (SyncError, OSError) as e:
                result.failed += 1
                self.logger.error(LogIcons.ERROR, f"對齊失敗 {remote.path}: {e}")

            if result.total >= 20 and (done % step == 0 or done == result.total):
                self.logger.info(
                    LogIcons.PROGRESS,
                    f"對齊進度: {done}/{result.total} ({done * 100.0 / result.total:.1f}%)"
                )

        dt = time.perf_counter() - t0
        self.logger.success(
            LogIcons.COMPLETE,
            f"啟動對齊完成：共 {result.total}，下載 {result.downloaded}，"
            f"略過 {result.skipped}，失敗 {result.failed}，耗時 {dt:.2f}s"
        )
        return result

    async def _download(self, loop, remote: RemoteDocument) -> bool:
        target = local_files.resolve_within(self.root, remote.path)

        content = await loop.run_in_executor(self.executor, self.client.download, remote.id)
        if content is None:
            self.logger.warning(LogIcons.WARNING, f"下載失敗，保留本地現況: {remote.path}")
            return False

        size = len(content.encode('utf-8'))
        if self.exceeds_limit(size):
            self.logger.warning(
                LogIcons.SKIP,
                f"下載內容過大，未寫入（skipped）: {remote.path} ({size} > {self.max_file_size} bytes)"
            )
            return False

        self.tracker.mark(remote.path)
        await loop.run_in_executor(self.executor, local_files.write_text, target, content)
        self.logger.info(LogIcons.DOWNLOAD, f"已下載: {remote.path}")
        return True
