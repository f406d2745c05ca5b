"""
單一路徑序列化
同一路徑的工作依提交順序逐一執行，不同路徑之間可並行
"""

import asyncio
import inspect
from typing import Awaitable, Dict, Optional, Set


class PathSerializer:
    """每個路徑一把 asyncio.Lock（FIFO），並追蹤所有進行中的 task"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiting: Dict[str, int] = {}
        self._tasks: Set[asyncio.Task] = set()

    def submit(self, key: str, coro: Awaitable) -> asyncio.Task:
        """
        排入一個工作。

        必須在事件迴圈內呼叫；task 依建立順序取得同一路徑的鎖，
        因此同一路徑的工作維持提交順序。
        """
        task = asyncio.ensure_future(self._run(key, coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, key: str, coro: Awaitable):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiting[key] = self._waiting.get(key, 0) + 1
        try:
            async with lock:
                return await coro
        except asyncio.CancelledError:
            # 排隊中就被取消時，coroutine 從未啟動
            if inspect.iscoroutine(coro):
                coro.close()
            raise
        finally:
            self._waiting[key] -= 1
            if self._waiting[key] == 0:
                del self._waiting[key]
                self._locks.pop(key, None)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """
        等待所有進行中的工作完成。

        Returns:
            True = 全部完成；False = 逾時（剩餘工作仍在執行）
        """
        while self._tasks:
            tasks = list(self._tasks)
            done, not_done = await asyncio.wait(tasks, timeout=timeout)
            if not_done:
                return False
        return True

    def cancel_all(self) -> int:
        """取消所有未完成工作，回傳取消數量"""
        count = 0
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
                count += 1
        return count
