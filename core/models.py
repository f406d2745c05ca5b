"""
資料模型
文件、遠端清單項目、監聽事件、遠端變更通知
"""

import mimetypes
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional


_TAG_PATTERN = re.compile(r'#(\w+)')

_MIME_TYPES = {
    '.md': 'text/markdown',
    '.markdown': 'text/markdown',
    '.txt': 'text/plain',
}


def normalize_path(path: Any) -> str:
    """統一成相對於監聽根目錄、以 / 分隔的路徑字串"""
    text = str(path).replace('\\', '/')
    return str(PurePosixPath(text)).lstrip('/')


def extract_tags(content: str) -> List[str]:
    """擷取內容中的 #hashtag（小寫、去重、保留首次出現順序）"""
    tags: List[str] = []
    for match in _TAG_PATTERN.finditer(content or ''):
        tag = match.group(1).lower()
        if tag not in tags:
            tags.append(tag)
    return tags


def guess_mime_type(filename: str) -> str:
    ext = PurePosixPath(filename).suffix.lower()
    if ext in _MIME_TYPES:
        return _MIME_TYPES[ext]
    mime, _ = mimetypes.guess_type(filename)
    return mime or 'text/plain'


def group_for(path: str) -> Optional[str]:
    """第一層資料夾即群組（例如 q3/report.md → q3）"""
    parts = PurePosixPath(normalize_path(path)).parts
    return parts[0] if len(parts) > 1 else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """解析遠端 ISO 時間字串，統一為 UTC aware datetime"""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Document:
    """同步單位：一個文字檔"""

    path: str
    content: str
    workspace_id: Optional[str] = None
    id: Optional[str] = None
    last_editor: Optional[str] = None
    updated_at: datetime = field(default_factory=utc_now)
    tags: List[str] = field(default_factory=list)

    @property
    def filename(self) -> str:
        return PurePosixPath(self.path).name

    @property
    def group(self) -> Optional[str]:
        return group_for(self.path)

    @property
    def size(self) -> int:
        return len(self.content.encode('utf-8'))

    @property
    def mime_type(self) -> str:
        return guess_mime_type(self.filename)

    @classmethod
    def from_content(
        cls,
        path: str,
        content: str,
        workspace_id: Optional[str] = None,
        last_editor: Optional[str] = None,
    ) -> 'Document':
        return cls(
            path=normalize_path(path),
            content=content,
            workspace_id=workspace_id,
            last_editor=last_editor,
            tags=extract_tags(content),
        )

    def with_content(self, content: str) -> 'Document':
        """替換內容（標籤沿用原始內容的擷取結果）"""
        return replace(self, content=content)


@dataclass
class RemoteDocument:
    """遠端清單項目（不含內容）"""

    id: str
    path: str
    filename: str
    updated_at: Optional[datetime]
    size: int = 0

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'RemoteDocument':
        filename = record.get('filename') or ''
        path = record.get('original_path') or filename
        return cls(
            id=str(record.get('id')),
            path=normalize_path(path),
            filename=filename,
            updated_at=parse_timestamp(record.get('updated_at')),
            size=int(record.get('file_size') or 0),
        )


class WatchEventKind(Enum):
    CREATED = 'created'
    MODIFIED = 'modified'
    DELETED = 'deleted'


@dataclass(frozen=True)
class WatchEvent:
    kind: WatchEventKind
    path: str


class ChangeKind(Enum):
    INSERT = 'INSERT'
    UPDATE = 'UPDATE'
    DELETE = 'DELETE'


@dataclass
class ChangeNotification:
    """遠端變更通知（insert / update / delete）"""

    kind: ChangeKind
    record: Dict[str, Any] = field(default_factory=dict)
    old_record: Dict[str, Any] = field(default_factory=dict)

    @property
    def subject(self) -> Dict[str, Any]:
        """delete 看舊記錄，其餘看新記錄"""
        if self.kind is ChangeKind.DELETE:
            return self.old_record or self.record
        return self.record or self.old_record

    @property
    def workspace_id(self) -> Optional[str]:
        value = self.subject.get('workspace_id')
        return str(value) if value is not None else None

    @property
    def document_id(self) -> Optional[str]:
        value = self.subject.get('id')
        return str(value) if value is not None else None

    @property
    def size(self) -> int:
        return int(self.subject.get('file_size') or 0)

    @property
    def path(self) -> Optional[str]:
        subject = self.subject
        raw = subject.get('original_path') or subject.get('filename')
        return normalize_path(raw) if raw else None


@dataclass
class WatcherStatus:
    is_running: bool = False
    last_event_at: Optional[datetime] = None
    error_count: int = 0
    files_watched: int = 0


@dataclass
class ReconcileResult:
    total: int = 0
    downloaded: int = 0
    skipped: int = 0
    failed: int = 0
