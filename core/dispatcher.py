"""
遠端變更分派
把遠端通知套用到本地檔案（寫入 / 刪除），寫入前先標記回音
"""

import asyncio
from concurrent.futures import Executor
from pathlib import Path
from typing import Optional

from utils import LogIcons
from . import local_files
from .errors import SyncError, ValidationError
from .models import ChangeKind, ChangeNotification
from .path_serializer import PathSerializer


class ChangeDispatcher:
    """遠端通知 → 本地檔案"""

    def __init__(
        self,
        root,
        client,
        tracker,
        logger,
        executor: Optional[Executor] = None,
        serializer: Optional[PathSerializer] = None,
        max_file_size: Optional[int] = None,
    ):
        """
        Args:
            root:          監聽根目錄
            client:        RemoteSyncClient（下載內容）
            tracker:       回音抑制追蹤器
            logger:        日誌記錄器
            executor:      阻塞 IO 使用的執行緒池
            serializer:    與上傳流程共用的單一路徑序列化器
            max_file_size: 檔案大小上限（bytes），超過的遠端內容不寫入；None = 不限制
        """
        self.root = Path(root).expanduser().resolve()
        self.client = client
        self.tracker = tracker
        self.logger = logger
        self.executor = executor
        self.serializer = serializer or PathSerializer()
        self.max_file_size = max_file_size

    def exceeds_limit(self, size: int) -> bool:
        return self.max_file_size is not None and size > self.max_file_size

    def submit(self, notification: ChangeNotification) -> Optional[asyncio.Task]:
        """排入處理；同一路徑的工作依到達順序執行"""
        path = notification.path
        if not path:
            self.logger.warning(
                LogIcons.WARNING,
                f"通知缺少路徑，略過: {notification.kind.value} id={notification.document_id}"
            )
            return None
        return self.serializer.submit(path, self.dispatch(notification))

    async def dispatch(self, notification: ChangeNotification) -> bool:
        path = notification.path
        loop = asyncio.get_running_loop()

        try:
            if not path:
                raise ValidationError("通知缺少路徑")
            target = local_files.resolve_within(self.root, path)

            if notification.kind is ChangeKind.DELETE:
                self.tracker.mark(path)
                removed = await loop.run_in_executor(self.executor, local_files.remove, target)
                if removed:
                    self.logger.info(LogIcons.DELETE, f"遠端已刪除，移除本地檔案: {path}")
                else:
                    self.logger.debug(f"{LogIcons.SKIP} 本地本來就沒有: {path}")
                return True

            document_id = notification.document_id
            if document_id is None:
                raise ValidationError(f"通知缺少文件 id: {path}")

            if self.exceeds_limit(notification.size):
                self.logger.warning(
                    LogIcons.SKIP,
                    f"遠端文件過大，已略過（skipped）: {path} ({notification.size} > {self.max_file_size} bytes)"
                )
                return False

            content = await loop.run_in_executor(self.executor, self.client.download, document_id)
            if content is None:
                self.logger.warning(LogIcons.WARNING, f"下載失敗，未套用遠端變更: {path}")
                return False

            size = len(content.encode('utf-8'))
            if self.exceeds_limit(size):
                self.logger.warning(
                    LogIcons.SKIP,
                    f"下載內容過大，未寫入（skipped）: {path} ({size} > {self.max_file_size} bytes)"
                )
                return False

            current = await loop.run_in_executor(self.executor, local_files.read_text, target)
            if current == content:
                self.logger.debug(f"{LogIcons.SKIP} 內容相同，不寫入: {path}")
                return True

            self.tracker.mark(path)
            await loop.run_in_executor(self.executor, local_files.write_text, target, content)

            icon = LogIcons.NEW if notification.kind is ChangeKind.INSERT else LogIcons.DOWNLOAD
            self.logger.info(icon, f"已套用遠端變更 ({notification.kind.value}): {path}")
            return True

        except ValidationError as e:
            self.logger.warning(LogIcons.WARNING, f"拒絕遠端變更: {e}")
            return False
        except (SyncError, OSError) as e:
            self.logger.error(LogIcons.ERROR, f"套用遠端變更失敗 {path}: {e}")
            return False

    async def drain(self, timeout: Optional[float] = None) -> bool:
        return await self.serializer.drain(timeout)
