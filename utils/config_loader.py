"""
配置載入器
支援 YAML 配置文件載入、.env 與環境變數替換、預設值補齊
"""

import copy
import os
import re
import yaml
from pathlib import Path
from typing import Dict, Any

from dotenv import load_dotenv


DEFAULTS: Dict[str, Any] = {
    'remote': {
        'bucket': 'cursor-files',
        'table': 'files',
        'events_table': 'file_events',
        'realtime': True,
        'timeout': 30,
        'max_attempts': 3,
    },
    'workspace': {
        'id': None,
    },
    'user': {
        'display_name': None,
        'email': None,
        'identity_file': '~/.team-docs-sync-identity.json',
    },
    'sync': {
        'max_file_size': 10 * 1024 * 1024,
        'allowed_extensions': ['.md', '.txt'],
        'echo_grace_seconds': 10,
        'debounce_seconds': 0.5,
        'max_workers': 4,
        'shutdown_timeout': 10,
        'annotate': True,
    },
    'logging': {
        'level': 'INFO',
        'log_dir': 'logs',
    },
}

# ${VAR} / ${VAR:-default} / $VAR
_ENV_PATTERN = re.compile(r'\$\{([^}:]+)(?::-([^}]*))?\}|\$([A-Za-z_][A-Za-z0-9_]*)')


class ConfigLoader:
    """配置載入器"""

    @staticmethod
    def load(config_path: str, env_file: str = '.env') -> Dict[str, Any]:
        """
        載入配置文件

        Args:
            config_path: 配置文件路徑
            env_file: 先行載入的 .env 路徑（不存在則略過）

        Returns:
            配置字典（已補齊預設值）

        Raises:
            FileNotFoundError: 配置文件不存在
            ValueError: 配置格式錯誤
        """
        config_file = Path(config_path)

        if not config_file.exists():
            raise FileNotFoundError(f"配置文件不存在: {config_path}")

        if env_file and Path(env_file).exists():
            load_dotenv(env_file, override=False)

        with open(config_file, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f) or {}

        if not isinstance(config, dict):
            raise ValueError(f"配置格式錯誤（頂層必須為 mapping）: {config_path}")

        # 替換環境變數
        config = ConfigLoader._replace_env_vars(config)

        config = ConfigLoader._apply_defaults(config)

        # 驗證必要欄位
        ConfigLoader._validate_config(config)
        ConfigLoader._normalize(config)

        return config

    @staticmethod
    def _replace_env_vars(obj: Any) -> Any:
        """
        遞迴替換配置中的環境變數
        支援 ${VAR_NAME}、${VAR_NAME:-預設值} 和 $VAR_NAME 格式
        """
        if isinstance(obj, dict):
            return {k: ConfigLoader._replace_env_vars(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [ConfigLoader._replace_env_vars(item) for item in obj]
        elif isinstance(obj, str):
            def replacer(match):
                var_name = match.group(1) or match.group(3)
                default = match.group(2)
                value = os.getenv(var_name)
                if value is None:
                    if default is not None:
                        return default
                    raise ValueError(
                        f"環境變數 '{var_name}' 未設定，"
                        f"請執行: export {var_name}='your_value'"
                    )
                return value

            return _ENV_PATTERN.sub(replacer, obj)
        else:
            return obj

    @staticmethod
    def _apply_defaults(config: Dict[str, Any]) -> Dict[str, Any]:
        merged = copy.deepcopy(DEFAULTS)

        def merge(base: Dict[str, Any], override: Dict[str, Any]) -> None:
            for key, value in override.items():
                if isinstance(value, dict) and isinstance(base.get(key), dict):
                    merge(base[key], value)
                else:
                    base[key] = value

        merge(merged, config)
        return merged

    @staticmethod
    def _validate_config(config: Dict[str, Any]) -> None:
        """
        驗證配置的必要欄位

        Raises:
            ValueError: 配置驗證失敗
        """
        required_fields = [
            ('project', 'name'),
            ('remote', 'url'),
            ('remote', 'api_key'),
            ('sync', 'watch_folder'),
        ]

        for *path, field in required_fields:
            obj = config
            try:
                for key in path:
                    obj = obj[key]
                if not obj.get(field):
                    raise KeyError
            except (KeyError, TypeError, AttributeError):
                field_path = '.'.join(path + [field])
                raise ValueError(f"配置缺少必要欄位: {field_path}")

        max_size = config['sync']['max_file_size']
        if not isinstance(max_size, int) or max_size <= 0:
            raise ValueError(f"sync.max_file_size 必須為正整數: {max_size!r}")

        if not isinstance(config['sync']['allowed_extensions'], list):
            raise ValueError("sync.allowed_extensions 必須為列表")

    @staticmethod
    def _normalize(config: Dict[str, Any]) -> None:
        """副檔名統一小寫並補上 '.'；空字串 workspace 視為未設定"""
        config['sync']['allowed_extensions'] = [
            ext if ext.startswith('.') else f'.{ext}'
            for ext in (str(e).strip().lower() for e in config['sync']['allowed_extensions'])
            if ext
        ]
        workspace_id = config['workspace'].get('id')
        config['workspace']['id'] = str(workspace_id).strip() if workspace_id else None
        if not config['workspace']['id']:
            config['workspace']['id'] = None
