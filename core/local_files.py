"""
本地檔案存取
把遠端的相對路徑對應到監聽根目錄下，並提供寫入 / 刪除 / 讀取
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .errors import ValidationError
from .models import normalize_path


def resolve_within(root: Path, rel_path: str) -> Path:
    """
    相對路徑 → 根目錄底下的絕對路徑。

    遠端記錄的路徑不可信，任何跳出根目錄的路徑（.. 或絕對路徑）都拒絕。
    """
    rel = normalize_path(rel_path)
    if not rel or rel == '.':
        raise ValidationError(f"無效的路徑: {rel_path!r}")

    root = Path(root).resolve()
    target = (root / rel).resolve()
    if target != root and root not in target.parents:
        raise ValidationError(f"路徑超出監聽目錄: {rel_path}")
    return target


def write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding='utf-8', newline='')


def read_text(path: Path) -> Optional[str]:
    """檔案不存在或不是 UTF-8 文字時回傳 None"""
    try:
        with open(path, encoding='utf-8', newline='') as f:
            return f.read()
    except (FileNotFoundError, UnicodeDecodeError):
        return None


def remove(path: Path) -> bool:
    """刪除檔案；本來就不存在回傳 False"""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def modified_at(path: Path) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
    except FileNotFoundError:
        return None
