"""
回音抑制追蹤器
記錄引擎自己剛寫入本地的路徑，讓監聽器忽略隨之而來的檔案事件
"""

import threading
import time
from typing import Callable, Dict

from .models import normalize_path


class EchoSuppressionTracker:
    """
    (路徑 → 標記時間) 的短期標記集合。

    標記在寬限時間後自動失效（不論對應的檔案事件是否出現過），
    避免標記永久擋住使用者之後真正的本地編輯。
    過期項目在 mark / is_suppressed 時惰性清除，不另開計時執行緒。
    """

    def __init__(self, grace_seconds: float = 10.0, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            grace_seconds: 標記有效時間（秒）
            clock:         時間來源（測試時可注入假時鐘）
        """
        self.grace_seconds = grace_seconds
        self._clock = clock
        self._markers: Dict[str, float] = {}
        self._lock = threading.Lock()

    def mark(self, path) -> None:
        """在引擎寫入 / 刪除本地檔案之前呼叫"""
        key = normalize_path(path)
        with self._lock:
            now = self._clock()
            self._sweep(now)
            self._markers[key] = now

    def is_suppressed(self, path) -> bool:
        key = normalize_path(path)
        with self._lock:
            now = self._clock()
            self._sweep(now)
            return key in self._markers

    def _sweep(self, now: float) -> None:
        # 呼叫端需持有 _lock
        expired = [
            key for key, inserted_at in self._markers.items()
            if now - inserted_at >= self.grace_seconds
        ]
        for key in expired:
            del self._markers[key]
