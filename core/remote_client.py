"""
遠端同步客戶端
封裝遠端儲存的三個介面：blob 儲存、文件記錄、即時變更通知
"""

from __future__ import annotations

import random
import time
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests

from utils import LogIcons
from .errors import NotFoundError, StorageError, SyncError, TransportError, ValidationError
from .models import ChangeNotification, Document, RemoteDocument, normalize_path, utc_now
from .realtime import RealtimeChannel


LIST_COLUMNS = 'id,filename,original_path,file_size,updated_at'


def build_storage_key(workspace_id: str, group: Optional[str], filename: str) -> str:
    """
    儲存位置 = workspace_id/[group/]filename

    同一文件重複上傳一律得到相同 key（覆寫，不會產生重複 blob）。
    """
    parts = [str(workspace_id)]
    if group:
        parts.append(group)
    parts.append(filename)
    return '/'.join(parts)


class RemoteSyncClient:
    """遠端儲存客戶端（所有操作以 workspace 為範圍）"""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        bucket: str = 'cursor-files',
        table: str = 'files',
        events_table: Optional[str] = 'file_events',
        timeout: int = 30,
        max_attempts: int = 3,
        page_size: int = 1000,
        logger=None,
        channel_factory: Optional[Callable[[], Any]] = None,
    ):
        """
        初始化客戶端

        Args:
            base_url: 遠端服務基礎 URL
            api_key: API 金鑰
            bucket: blob 儲存 bucket
            table: 文件記錄表
            events_table: 活動紀錄表（None 表示不記錄）
            timeout: 單次請求逾時（秒）
            max_attempts: 暫時性錯誤（429 / 5xx / 連線錯誤）最大嘗試次數
            page_size: 清單分頁大小
            logger: 日誌記錄器
            channel_factory: 建立即時頻道的工廠（測試時可替換）
        """
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.bucket = bucket
        self.table = table
        self.events_table = events_table
        self.timeout = timeout
        self.max_attempts = max(1, int(max_attempts))
        self.page_size = page_size
        self.logger = logger
        self._sleep = time.sleep

        self.session = requests.Session()
        self.session.headers.update({
            'apikey': api_key,
            'Authorization': f'Bearer {api_key}',
        })

        self._channel_factory = channel_factory or (
            lambda: RealtimeChannel(self.base_url, self.api_key, self.table, logger=self.logger)
        )
        self._channel = None

    def _log(self, level: str, icon: str, message: str, exc_info=None):
        """內部日誌方法"""
        if not self.logger:
            return
        if level == 'error':
            self.logger.error(icon, message, exc_info=exc_info)
        elif level == 'warning':
            self.logger.warning(icon, message)
        else:
            self.logger.info(icon, message)

    # ── URL ──────────────────────────────────────────────────────────────────

    @property
    def table_url(self) -> str:
        return f"{self.base_url}/rest/v1/{self.table}"

    def _object_url(self, key: str) -> str:
        return f"{self.base_url}/storage/v1/object/{self.bucket}/{quote(key, safe='/')}"

    # ── HTTP ─────────────────────────────────────────────────────────────────

    def _request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        data=None,
        ok_status: Tuple[int, ...] = (200, 201, 204),
    ) -> requests.Response:
        """
        統一的 HTTP 入口（含暫時性錯誤退避）：
        - 429：尊重 Retry-After
        - 5xx / 連線錯誤：短暫故障重試
        - 404：NotFoundError
        - 其他失敗：StorageError（不重試）
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                resp = self.session.request(
                    method=method,
                    url=url,
                    params=params,
                    json=json,
                    headers=headers,
                    data=data,
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                if attempt == self.max_attempts:
                    raise StorageError(f"{method} {url} 連線失敗: {e}") from e
                backoff = min(10, (2 ** (attempt - 1))) + random.random()
                self._log(
                    "warning",
                    LogIcons.RETRY,
                    f"Request error: {e}，重試中（{attempt}/{self.max_attempts}），等待 {backoff:.1f}s"
                )
                self._sleep(backoff)
                continue

            code = resp.status_code

            if code in ok_status:
                return resp

            if code == 404:
                raise NotFoundError(f"{method} {url} 不存在")

            if (code == 429 or 500 <= code <= 599) and attempt < self.max_attempts:
                retry_after = resp.headers.get("Retry-After")
                if retry_after and str(retry_after).isdigit():
                    sleep_s = int(retry_after)
                else:
                    sleep_s = min(30, (2 ** (attempt - 1))) + random.random()

                self._log(
                    "warning",
                    LogIcons.RETRY,
                    f"HTTP {code} on {method} {url}，將重試（{attempt}/{self.max_attempts}），等待 {sleep_s:.1f}s"
                )
                self._sleep(sleep_s)
                continue

            try:
                err_detail = resp.json()
            except ValueError:
                err_detail = resp.text[:2000]
            raise StorageError(f"{code} Error on {method} {url}\nDetail: {err_detail}")

        raise StorageError(f"{method} {url} 失敗")

    # ── blob ─────────────────────────────────────────────────────────────────

    def _put_blob(self, key: str, doc: Document) -> str:
        self._request(
            "POST",
            self._object_url(key),
            data=doc.content.encode('utf-8'),
            headers={'Content-Type': doc.mime_type, 'x-upsert': 'true'},
            ok_status=(200, 201),
        )
        return key

    def _get_blob(self, key: str) -> str:
        resp = self._request("GET", self._object_url(key), ok_status=(200,))
        return resp.content.decode('utf-8')

    def _remove_blob(self, key: str) -> None:
        self._request(
            "DELETE",
            f"{self.base_url}/storage/v1/object/{self.bucket}",
            json={'prefixes': [key]},
            ok_status=(200, 204),
        )

    # ── 記錄 ─────────────────────────────────────────────────────────────────

    def _record_payload(self, doc: Document, storage_key: str) -> Dict[str, Any]:
        return {
            'filename': doc.filename,
            'original_path': doc.path,
            'content': doc.content,
            'file_size': doc.size,
            'mime_type': doc.mime_type,
            'storage_path': storage_key,
            'workspace_id': doc.workspace_id,
            'sprint_folder': doc.group,
            'tags': doc.tags,
            'updated_at': utc_now().isoformat(),
        }

    def _find_record(self, path: str, workspace_id: str, columns: str = 'id,storage_path') -> Optional[Dict[str, Any]]:
        """依 (workspace_id, 相對路徑) 找最新一筆記錄，找不到回傳 None"""
        resp = self._request(
            "GET",
            self.table_url,
            params={
                'select': columns,
                'workspace_id': f'eq.{workspace_id}',
                'original_path': f'eq.{normalize_path(path)}',
                'order': 'updated_at.desc',
                'limit': 1,
            },
            ok_status=(200,),
        )
        rows = resp.json() or []
        return rows[0] if rows else None

    def _insert_record(self, doc: Document, storage_key: str) -> str:
        resp = self._request(
            "POST",
            self.table_url,
            json=self._record_payload(doc, storage_key),
            headers={'Prefer': 'return=representation'},
            ok_status=(200, 201),
        )
        rows = resp.json() or []
        if not rows or rows[0].get('id') is None:
            raise StorageError(f"新增記錄未回傳 id: {doc.path}")
        return str(rows[0]['id'])

    def _record_event(self, file_id: str, event_type: str, workspace_id: Optional[str]) -> None:
        """活動紀錄（失敗只警告）"""
        if not self.events_table:
            return
        try:
            self._request(
                "POST",
                f"{self.base_url}/rest/v1/{self.events_table}",
                json={'file_id': file_id, 'event_type': event_type, 'workspace_id': workspace_id},
                headers={'Prefer': 'return=minimal'},
                ok_status=(200, 201, 204),
            )
        except SyncError as e:
            self._log("warning", LogIcons.WARNING, f"活動紀錄寫入失敗 ({event_type}): {e}")

    # ── 公開操作 ─────────────────────────────────────────────────────────────

    def upload(self, doc: Document) -> Optional[str]:
        """
        新增文件：先寫 blob，再寫記錄。

        blob 寫入失敗時不會寫記錄（避免記錄指向不存在的 blob）。

        Returns:
            新記錄 id；失敗回傳 None
        """
        try:
            if not doc.workspace_id:
                raise ValidationError("未設定 workspace_id")
            key = build_storage_key(doc.workspace_id, doc.group, doc.filename)
            self._put_blob(key, doc)
            record_id = self._insert_record(doc, key)
            doc.id = record_id
            self._record_event(record_id, 'created', doc.workspace_id)
            self._log("info", LogIcons.NEW, f"新文件上傳完成: {doc.path}")
            return record_id
        except (SyncError, ValueError) as e:
            self._log("error", LogIcons.ERROR, f"上傳失敗 {doc.path}: {e}")
            return None

    def update(self, doc: Document) -> bool:
        """
        更新文件；遠端沒有此路徑的記錄時改為新增。

        呼叫端不需要事先知道文件是否已存在。
        """
        try:
            if not doc.workspace_id:
                raise ValidationError("未設定 workspace_id")
            existing = self._find_record(doc.path, doc.workspace_id)
            if existing is None:
                self._log("info", LogIcons.NOTE, f"遠端尚無記錄，改為新增: {doc.path}")
                return self.upload(doc) is not None

            key = build_storage_key(doc.workspace_id, doc.group, doc.filename)
            self._put_blob(key, doc)

            payload = self._record_payload(doc, key)
            for identity_field in ('workspace_id', 'original_path', 'filename'):
                payload.pop(identity_field)
            self._request(
                "PATCH",
                self.table_url,
                params={'id': f"eq.{existing['id']}"},
                json=payload,
                ok_status=(200, 204),
            )

            old_key = existing.get('storage_path')
            if old_key and old_key != key:
                try:
                    self._remove_blob(old_key)
                except SyncError as e:
                    self._log("warning", LogIcons.WARNING, f"舊 blob 清理失敗 {old_key}: {e}")

            doc.id = str(existing['id'])
            self._record_event(doc.id, 'updated', doc.workspace_id)
            self._log("info", LogIcons.UPDATE, f"文件更新完成: {doc.path}")
            return True
        except (SyncError, ValueError) as e:
            self._log("error", LogIcons.ERROR, f"更新失敗 {doc.path}: {e}")
            return False

    def delete(self, path: str, workspace_id: str) -> bool:
        """
        刪除文件（冪等）：遠端本來就沒有記錄也回傳 True。
        """
        path = normalize_path(path)
        try:
            existing = self._find_record(path, workspace_id)
            if existing is None:
                self._log("info", LogIcons.SKIP, f"遠端不存在，視為已刪除: {path}")
                return True

            storage_key = existing.get('storage_path')
            if storage_key:
                try:
                    self._remove_blob(storage_key)
                except SyncError as e:
                    self._log("warning", LogIcons.WARNING, f"blob 刪除警告 {storage_key}: {e}")

            self._record_event(str(existing['id']), 'deleted', workspace_id)

            try:
                self._request(
                    "DELETE",
                    self.table_url,
                    params={'id': f"eq.{existing['id']}"},
                    ok_status=(200, 204),
                )
            except NotFoundError:
                pass

            self._log("info", LogIcons.DELETE, f"已刪除: {path}")
            return True
        except (SyncError, ValueError) as e:
            self._log("error", LogIcons.ERROR, f"刪除失敗 {path}: {e}")
            return False

    def download(self, document_id: str) -> Optional[str]:
        """依記錄 id 取得內容（記錄沒有內容時改讀 blob）"""
        try:
            resp = self._request(
                "GET",
                self.table_url,
                params={'select': 'id,content,storage_path', 'id': f'eq.{document_id}', 'limit': 1},
                ok_status=(200,),
            )
            rows = resp.json() or []
            if not rows:
                raise NotFoundError(f"記錄不存在: {document_id}")
            return self._content_of(rows[0])
        except NotFoundError as e:
            self._log("warning", LogIcons.WARNING, f"下載失敗（不存在） {document_id}: {e}")
            return None
        except (SyncError, ValueError) as e:
            self._log("error", LogIcons.ERROR, f"下載失敗 {document_id}: {e}")
            return None

    def get_content(self, path: str, workspace_id: str) -> Optional[str]:
        """
        取得遠端目前內容；遠端尚無此文件時回傳 None（不是錯誤）。
        """
        try:
            record = self._find_record(path, workspace_id, columns='id,content,storage_path')
            if record is None:
                return None
            return self._content_of(record)
        except NotFoundError:
            return None
        except (SyncError, ValueError) as e:
            self._log("error", LogIcons.ERROR, f"讀取遠端內容失敗 {path}: {e}")
            return None

    def _content_of(self, record: Dict[str, Any]) -> str:
        content = record.get('content')
        if content is None:
            if not record.get('storage_path'):
                raise NotFoundError(f"記錄沒有內容也沒有 blob: {record.get('id')}")
            content = self._get_blob(record['storage_path'])
        return content

    def list_documents(self, workspace_id: str) -> Optional[List[RemoteDocument]]:
        """取得 workspace 內所有文件的清單（不含內容）；失敗回傳 None"""
        documents: List[RemoteDocument] = []
        offset = 0

        try:
            while True:
                resp = self._request(
                    "GET",
                    self.table_url,
                    params={
                        'select': LIST_COLUMNS,
                        'workspace_id': f'eq.{workspace_id}',
                        'order': 'updated_at.desc',
                        'limit': self.page_size,
                        'offset': offset,
                    },
                    ok_status=(200,),
                )
                rows = resp.json() or []
                documents.extend(RemoteDocument.from_record(row) for row in rows)

                if len(rows) < self.page_size:
                    break
                offset += self.page_size
        except (SyncError, ValueError) as e:
            self._log("error", LogIcons.ERROR, f"取得文件清單失敗: {e}")
            return None

        return documents

    # ── 即時通知 ─────────────────────────────────────────────────────────────

    def _accepts(self, notification: ChangeNotification, workspace_id: str) -> bool:
        """伺服端已過濾，這裡再以 workspace_id 把關一次"""
        return notification.workspace_id == str(workspace_id)

    async def subscribe(self, workspace_id: str, callback: Callable[[ChangeNotification], None]) -> bool:
        """
        訂閱文件變更通知。

        無法建立頻道時只記錄一次警告並回傳 False，同步仍可運作。
        """
        await self.unsubscribe()

        def deliver(notification: ChangeNotification) -> None:
            if not self._accepts(notification, workspace_id):
                if self.logger:
                    self.logger.debug(
                        f"略過其他 workspace 的通知: {notification.workspace_id} ({notification.kind.value})"
                    )
                return
            callback(notification)

        channel = self._channel_factory()
        try:
            await channel.open(f"workspace_id=eq.{workspace_id}", deliver)
        except TransportError as e:
            self._log("warning", LogIcons.WARNING, f"即時通知無法建立，改為僅啟動對齊模式: {e}")
            return False

        self._channel = channel
        self._log("info", LogIcons.BELL, f"即時通知已啟用: {workspace_id}")
        return True

    async def unsubscribe(self) -> None:
        if self._channel is not None:
            channel, self._channel = self._channel, None
            await channel.close()

    def check_connection(self) -> Dict[str, bool]:
        """連線檢查：blob 儲存與記錄表是否可存取（不拋出例外）"""
        results: Dict[str, bool] = {}

        try:
            resp = self._request("GET", f"{self.base_url}/storage/v1/bucket", ok_status=(200,))
            names = [b.get('name') for b in (resp.json() or [])]
            results['storage'] = True
            results['bucket'] = self.bucket in names
            self._log("info", LogIcons.COMPLETE, f"儲存服務可用，bucket: {', '.join(filter(None, names)) or 'none'}")
        except (SyncError, ValueError) as e:
            results['storage'] = False
            results['bucket'] = False
            self._log("error", LogIcons.ERROR, f"儲存服務存取失敗: {e}")

        try:
            self._request("GET", self.table_url, params={'select': 'id', 'limit': 1}, ok_status=(200,))
            results['records'] = True
            self._log("info", LogIcons.COMPLETE, f"資料表 {self.table} 可存取")
        except (SyncError, ValueError) as e:
            results['records'] = False
            self._log("error", LogIcons.ERROR, f"資料表 {self.table} 存取失敗: {e}")

        return results

    def close(self) -> None:
        self.session.close()
