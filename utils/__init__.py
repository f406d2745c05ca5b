"""
工具模組
"""

from .logger import SyncLogger, LogIcons
from .retry import async_retry
from .config_loader import ConfigLoader
from .user_identity import UserIdentityManager

__all__ = [
    'SyncLogger',
    'LogIcons',
    'async_retry',
    'ConfigLoader',
    'UserIdentityManager',
]
