"""
使用者身分
在家目錄保存本機使用者身分（顯示名稱、機器指紋），供出處標註使用
"""

import getpass
import hashlib
import json
import os
import platform
import socket
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .logger import LogIcons


class UserIdentityManager:
    """載入或建立本機使用者身分"""

    def __init__(self, identity_file: str, logger=None):
        self.identity_file = Path(os.path.expanduser(identity_file))
        self.logger = logger
        self.identity: Optional[Dict[str, Any]] = None

    def get_or_create(self, display_name: Optional[str] = None, email: Optional[str] = None) -> Dict[str, Any]:
        """
        讀取既有身分；不存在或損壞時建立新的並寫回檔案。

        Args:
            display_name: 配置指定的顯示名稱（優先於檔案內容）
            email:        配置指定的 Email
        """
        if self.identity_file.exists():
            try:
                with open(self.identity_file, 'r', encoding='utf-8') as f:
                    self.identity = json.load(f)
                if display_name:
                    self.identity['display_name'] = display_name
                self._log('info', LogIcons.USER, f"歡迎回來，{self.identity.get('display_name')}")
                return self.identity
            except (OSError, ValueError) as e:
                self._log('warning', LogIcons.WARNING, f"身分檔讀取失敗，重新建立: {e}")

        self.identity = {
            'user_id': str(uuid.uuid4()),
            'display_name': self._resolve_display_name(display_name),
            'email': email or os.getenv('USER_EMAIL'),
            'machine_id': self.machine_id(),
            'created_at': datetime.now(timezone.utc).isoformat(),
        }

        try:
            self.identity_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.identity_file, 'w', encoding='utf-8') as f:
                json.dump(self.identity, f, ensure_ascii=False, indent=2)
            self._log('info', LogIcons.NEW, f"已建立使用者身分: {self.identity['display_name']}")
        except OSError as e:
            self._log('warning', LogIcons.WARNING, f"身分檔寫入失敗（本次仍可使用）: {e}")

        return self.identity

    @staticmethod
    def _resolve_display_name(display_name: Optional[str]) -> str:
        if display_name:
            return display_name
        env_name = os.getenv('USER_DISPLAY_NAME')
        if env_name:
            return env_name
        try:
            return getpass.getuser()
        except (KeyError, OSError):
            return 'anonymous'

    @staticmethod
    def machine_id() -> str:
        """主機名稱 + 平台 + 架構 + 帳號 的 sha256 前 16 碼"""
        try:
            username = getpass.getuser()
        except (KeyError, OSError):
            username = 'unknown'
        fingerprint = f"{socket.gethostname()}-{platform.system()}-{platform.machine()}-{username}"
        return hashlib.sha256(fingerprint.encode('utf-8')).hexdigest()[:16]

    def _log(self, level: str, icon: str, message: str) -> None:
        if not self.logger:
            return
        if level == 'warning':
            self.logger.warning(icon, message)
        else:
            self.logger.info(icon, message)
