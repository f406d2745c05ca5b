"""
統一日誌系統
終端輸出簡短格式，檔案（每日一檔）保留完整層級與來源
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional


CONSOLE_FORMAT = '[%(asctime)s] %(message)s'
FILE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class SyncLogger:
    """同步系統日誌管理器（訊息一律以 LogIcons 圖示開頭）"""

    def __init__(self, project_name: str, log_dir: Optional[str] = "logs", level: str = "INFO"):
        """
        Args:
            project_name: 專案名稱（logger 名稱與日誌檔名）
            log_dir:      日誌目錄；空值表示只輸出到終端
            level:        終端輸出層級（檔案固定記錄 DEBUG 以上）
        """
        self.project_name = project_name
        self.logger = logging.getLogger(f"team_docs_sync.{project_name}")
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False

        # 同一個專案重複建立時沿用既有 handler
        if self.logger.handlers:
            return

        self.logger.addHandler(self._console_handler(level))
        if log_dir:
            self.logger.addHandler(self._file_handler(Path(log_dir)))

    @staticmethod
    def _console_handler(level: str) -> logging.Handler:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(getattr(logging, str(level).upper(), logging.INFO))
        handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
        return handler

    def _file_handler(self, log_dir: Path) -> logging.Handler:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"{self.project_name}_{datetime.now():%Y%m%d}.log"
        handler = logging.FileHandler(log_file, encoding='utf-8')
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        return handler

    def info(self, icon, message):
        self.logger.info(f"{icon} {message}")

    def success(self, icon, message):
        """成功日誌（info 層級）"""
        self.logger.info(f"{icon} {message}")

    def warning(self, icon, message):
        self.logger.warning(f"{icon} {message}")

    def error(self, icon, message, exc_info=None):
        self.logger.error(f"{icon} {message}", exc_info=exc_info or None)

    def debug(self, message):
        """除錯日誌（呼叫端自行帶圖示）"""
        self.logger.debug(message)


class LogIcons:
    """統一的日誌圖示"""

    # 生命週期
    START = "🏁"
    LAUNCH = "🚀"
    STOP = "🛑"
    COMPLETE = "✅"

    # 本地 / 遠端操作
    WATCH = "👁️"
    CONNECT = "📡"
    PROGRESS = "🔄"
    UPLOAD = "📤"
    DOWNLOAD = "📥"
    NEW = "🆕"
    UPDATE = "✏️"
    DELETE = "🗑️"
    SKIP = "⏭️"
    ECHO = "🔁"
    BELL = "🔔"
    RETRY = "⏳"

    # 其他
    NOTE = "📝"
    USER = "👤"
    STATS = "📊"
    WARNING = "⚠️"
    ERROR = "❌"
