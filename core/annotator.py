"""
出處標註器
上傳前在文件開頭插入 / 更新出處區塊（建立者、編輯歷史、變更摘要）

區塊格式：
    <!-- team-docs-sync:provenance
    created: alice @ 2026-10-17 14:03 UTC
    history:
    - updated: bob @ 2026-10-17 15:10 UTC | modified L3-5, added L12
    -->
"""

from datetime import datetime
from typing import Callable, List, Optional, Tuple

from utils import LogIcons
from .errors import AnnotationError
from .models import utc_now


SENTINEL = '<!-- team-docs-sync:provenance'
TERMINATOR = '-->'
HISTORY_HEADER = 'history:'
MAX_DESCRIPTORS = 5
TIME_FORMAT = '%Y-%m-%d %H:%M UTC'


def has_provenance(content: str) -> bool:
    return (content or '').lstrip('\ufeff').startswith(SENTINEL)


def _split_block(content: str) -> Optional[Tuple[List[str], str]]:
    """
    拆出區塊行與正文。

    Returns:
        (區塊各行（不含結尾 -->）, 正文)；沒有區塊或區塊未結尾時回傳 None
    """
    if not has_provenance(content):
        return None
    lines = content.lstrip('\ufeff').split('\n')
    for idx, line in enumerate(lines):
        if line.strip() == TERMINATOR:
            return lines[:idx], '\n'.join(lines[idx + 1:])
    return None


def strip_provenance(content: str) -> str:
    """回傳去掉出處區塊後的正文（沒有區塊則原樣回傳）"""
    parts = _split_block(content)
    return parts[1] if parts else content


def describe_changes(previous: str, current: str, limit: int = MAX_DESCRIPTORS) -> List[str]:
    """
    雙指標逐行比對，產生最多 limit 個變更描述。

    兩邊游標在行相同時一起前進；不同時記為 modified；
    舊版先走完則剩餘新行記為 added，新版先走完則剩餘舊行記為 deleted。
    連續同類行合併為區間（deleted 以舊版行號表示）。

    Raises:
        AnnotationError: 比對過程發生任何錯誤
    """
    try:
        old_lines = previous.splitlines()
        new_lines = current.splitlines()
        spans: List[List] = []

        def push(kind: str, line_no: int) -> None:
            if spans and spans[-1][0] == kind and spans[-1][2] == line_no - 1:
                spans[-1][2] = line_no
            else:
                spans.append([kind, line_no, line_no])

        i = j = 0
        while i < len(old_lines) and j < len(new_lines):
            if old_lines[i] != new_lines[j]:
                push('modified', j + 1)
            i += 1
            j += 1
        while j < len(new_lines):
            push('added', j + 1)
            j += 1
        while i < len(old_lines):
            push('deleted', i + 1)
            i += 1

        return [
            f"{kind} L{start}" if start == end else f"{kind} L{start}-{end}"
            for kind, start, end in spans[:limit]
        ]
    except Exception as e:
        raise AnnotationError(f"差異計算失敗: {e}") from e


class ProvenanceAnnotator:
    """出處標註器（除了時間與使用者外無狀態）"""

    def __init__(
        self,
        user: str,
        clock: Callable[[], datetime] = utc_now,
        logger=None,
    ):
        """
        Args:
            user:   目前使用者顯示名稱
            clock:  時間來源
            logger: 日誌記錄器（可選）
        """
        self.user = user or 'anonymous'
        self._clock = clock
        self.logger = logger

    def _stamp(self) -> str:
        return f"{self.user} @ {self._clock().strftime(TIME_FORMAT)}"

    def annotate(self, new_content: str, filename: str, previous_content: Optional[str] = None) -> str:
        """
        回傳加上出處資訊的內容。

        Args:
            new_content:      本地最新內容
            filename:         檔名（僅用於日誌）
            previous_content: 遠端上一版內容；None 表示第一版或無從比較

        Returns:
            標註後內容（此函式不會拋出例外）
        """
        parts = _split_block(new_content)

        if parts is None:
            if has_provenance(new_content):
                if self.logger:
                    self.logger.warning(LogIcons.WARNING, f"出處區塊未結尾，略過標註: {filename}")
                return new_content
            header = [SENTINEL, f"created: {self._stamp()}", HISTORY_HEADER, TERMINATOR]
            return '\n'.join(header) + '\n' + new_content

        block, body = parts
        entry = f"- updated: {self._stamp()}"

        if previous_content is not None:
            try:
                changes = describe_changes(strip_provenance(previous_content), body)
            except AnnotationError as e:
                changes = []
                if self.logger:
                    self.logger.debug(f"{filename}: {e}")
            if changes:
                entry += " | " + ", ".join(changes)

        if not any(line.strip() == HISTORY_HEADER for line in block):
            block = block + [HISTORY_HEADER]
        return '\n'.join(block + [entry, TERMINATOR]) + '\n' + body
