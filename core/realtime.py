"""
即時變更通知頻道
透過 websocket（Phoenix channel 協定）訂閱文件表的 insert / update / delete
"""

from __future__ import annotations

import asyncio
import itertools
import json
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import aiohttp

from utils import LogIcons, async_retry
from .errors import TransportError
from .models import ChangeKind, ChangeNotification


def decode_change(message: Dict[str, Any]) -> Optional[ChangeNotification]:
    """
    將頻道訊息解碼為 ChangeNotification。

    Returns:
        非資料變更訊息（心跳回覆、系統訊息）回傳 None

    Raises:
        ValueError: 變更類型無法辨識
    """
    if message.get('event') != 'postgres_changes':
        return None

    payload = message.get('payload') or {}
    data = payload.get('data') or payload
    raw_kind = str(data.get('type') or data.get('eventType') or '').upper()

    try:
        kind = ChangeKind(raw_kind)
    except ValueError:
        raise ValueError(f"無法辨識的變更類型: {raw_kind or '<empty>'}")

    return ChangeNotification(
        kind=kind,
        record=data.get('record') or data.get('new') or {},
        old_record=data.get('old_record') or data.get('old') or {},
    )


class RealtimeChannel:
    """單一資料表的即時訂閱（盡力而為，不保證送達）"""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        table: str,
        schema: str = 'public',
        heartbeat_interval: float = 25.0,
        join_timeout: float = 10.0,
        connect_attempts: int = 3,
        logger=None,
    ):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.table = table
        self.schema = schema
        self.heartbeat_interval = heartbeat_interval
        self.join_timeout = join_timeout
        self.connect_attempts = connect_attempts
        self.logger = logger

        self.topic = f"realtime:{schema}:{table}"
        self._refs = itertools.count(1)
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._heartbeat: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def websocket_url(self) -> str:
        parts = urlsplit(self.base_url)
        scheme = 'wss' if parts.scheme == 'https' else 'ws'
        query = urlencode({'apikey': self.api_key, 'vsn': '1.0.0'})
        return urlunsplit((scheme, parts.netloc, '/realtime/v1/websocket', query, ''))

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def _next_ref(self) -> str:
        return str(next(self._refs))

    async def _connect(self):
        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None, connect=10))
        try:
            ws = await session.ws_connect(self.websocket_url, heartbeat=None)
        except BaseException:
            await session.close()
            raise
        return session, ws

    def _on_connect_retry(self, attempt: int, error: BaseException, wait: float) -> None:
        self._log('warning', LogIcons.RETRY, f"即時頻道連線失敗（第 {attempt} 次）: {error}，{wait:.0f}s 後重試")

    async def open(self, filter_expr: str, on_change: Callable[[ChangeNotification], None]) -> None:
        """
        建立連線並加入頻道。

        Args:
            filter_expr: 伺服端過濾條件，例如 'workspace_id=eq.<id>'
            on_change:   每則變更依送達順序呼叫一次

        Raises:
            TransportError: 連線或加入頻道失敗
        """
        self._closing = False
        try:
            connect = async_retry(
                max_attempts=self.connect_attempts,
                delay=1.0,
                backoff=2.0,
                exceptions=(aiohttp.ClientError, asyncio.TimeoutError),
                on_retry=self._on_connect_retry,
            )(self._connect)
            self._session, self._ws = await connect()
            join_ref = self._next_ref()
            await self._ws.send_json({
                'topic': self.topic,
                'event': 'phx_join',
                'payload': {
                    'config': {
                        'broadcast': {'self': False},
                        'presence': {'key': ''},
                        'postgres_changes': [{
                            'event': '*',
                            'schema': self.schema,
                            'table': self.table,
                            'filter': filter_expr,
                        }],
                    },
                    'access_token': self.api_key,
                },
                'ref': join_ref,
                'join_ref': join_ref,
            })
            await asyncio.wait_for(self._await_join(join_ref), self.join_timeout)
        except TransportError:
            await self.close()
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
            await self.close()
            raise TransportError(f"即時頻道連線失敗: {e}") from e

        self._reader = asyncio.ensure_future(self._read_loop(on_change))
        self._heartbeat = asyncio.ensure_future(self._heartbeat_loop())

    async def _await_join(self, join_ref: str) -> None:
        async for msg in self._ws:
            if msg.type != aiohttp.WSMsgType.TEXT:
                break
            data = json.loads(msg.data)
            if data.get('event') == 'phx_reply' and data.get('ref') == join_ref:
                status = (data.get('payload') or {}).get('status')
                if status != 'ok':
                    raise TransportError(f"加入頻道被拒: {data.get('payload')}")
                return
        raise TransportError("加入頻道前連線已關閉")

    async def _read_loop(self, on_change: Callable[[ChangeNotification], None]) -> None:
        async for msg in self._ws:
            if msg.type != aiohttp.WSMsgType.TEXT:
                break
            try:
                data = json.loads(msg.data)
                notification = decode_change(data)
            except ValueError as e:
                self._log('warning', LogIcons.WARNING, f"忽略無法解析的通知: {e}")
                continue

            if notification is None:
                if data.get('event') in ('phx_error', 'phx_close'):
                    self._log('warning', LogIcons.WARNING, f"即時頻道回報 {data.get('event')}")
                continue

            try:
                on_change(notification)
            except Exception as e:
                self._log('error', LogIcons.ERROR, f"通知處理失敗: {e}", exc_info=e)

        if not self._closing:
            self._log('warning', LogIcons.WARNING, "即時頻道已中斷，後續變更需重新啟動才會對齊")

    async def _heartbeat_loop(self) -> None:
        while self.is_open:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self._ws.send_json({
                    'topic': 'phoenix',
                    'event': 'heartbeat',
                    'payload': {},
                    'ref': self._next_ref(),
                })
            except (aiohttp.ClientError, ConnectionError, RuntimeError):
                return

    async def close(self) -> None:
        self._closing = True
        current = asyncio.current_task()
        for task in (self._heartbeat, self._reader):
            if task and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._heartbeat = self._reader = None

        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _log(self, level: str, icon: str, message: str, exc_info=None) -> None:
        if not self.logger:
            return
        if level == 'error':
            self.logger.error(icon, message, exc_info=exc_info)
        elif level == 'warning':
            self.logger.warning(icon, message)
        else:
            self.logger.info(icon, message)
