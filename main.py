"""
Team Docs Sync - 主入口
本地資料夾與共用遠端儲存的雙向文件同步
"""

import sys
import asyncio
import argparse
import signal
from pathlib import Path

from utils import ConfigLoader, SyncLogger, LogIcons, UserIdentityManager
from core import (
    EchoSuppressionTracker,
    FileMonitor,
    ProvenanceAnnotator,
    RemoteSyncClient,
    SyncEngine,
    SyncError,
)


class SyncApplication:
    """同步應用程式"""

    def __init__(self, config_path: str):
        """
        初始化應用程式

        Args:
            config_path: 配置文件路徑
        """
        # 載入配置
        self.config = ConfigLoader.load(config_path)

        # 初始化日誌
        log_config = self.config['logging']
        self.logger = SyncLogger(
            self.config['project']['name'],
            log_dir=log_config['log_dir'],
            level=log_config['level'],
        )

        # 使用者身分（出處區塊中的名稱）
        user_config = self.config['user']
        self.identity = UserIdentityManager(user_config['identity_file'], logger=self.logger)
        identity = self.identity.get_or_create(
            display_name=user_config.get('display_name'),
            email=user_config.get('email'),
        )
        self.logger.info(LogIcons.USER, f"目前使用者: {identity['display_name']}")

        remote = self.config['remote']
        sync = self.config['sync']

        # 共用元件（同一個 tracker / client 注入到所有地方）
        self.tracker = EchoSuppressionTracker(grace_seconds=sync['echo_grace_seconds'])

        self.client = RemoteSyncClient(
            base_url=remote['url'],
            api_key=remote['api_key'],
            bucket=remote['bucket'],
            table=remote['table'],
            events_table=remote['events_table'],
            timeout=remote['timeout'],
            max_attempts=remote['max_attempts'],
            logger=self.logger,
        )

        self.monitor = FileMonitor(
            watch_path=sync['watch_folder'],
            allowed_extensions=sync['allowed_extensions'],
            max_file_size=sync['max_file_size'],
            tracker=self.tracker,
            logger=self.logger,
            delay=sync['debounce_seconds'],
        )

        self.annotator = ProvenanceAnnotator(identity['display_name'], logger=self.logger)

        self.engine = SyncEngine(
            config=self.config,
            client=self.client,
            tracker=self.tracker,
            monitor=self.monitor,
            annotator=self.annotator,
            logger=self.logger,
            editor=identity['display_name'],
        )

    def run_once(self, dry_run: bool = False) -> int:
        """
        執行單次啟動對齊

        Args:
            dry_run: 是否為模擬執行
        """
        self.logger.info(LogIcons.START, "執行啟動對齊...")

        try:
            result = asyncio.run(self.engine.reconcile_once(dry_run=dry_run))
        except KeyboardInterrupt:
            self.logger.info(LogIcons.WARNING, "使用者中斷")
            return 0
        except Exception as e:
            self.logger.error(LogIcons.ERROR, f"對齊失敗: {e}", exc_info=e)
            return 1
        finally:
            self.client.close()

        if result is None:
            return 1
        return 0 if result.failed == 0 else 1

    def run_watch(self) -> int:
        """執行監聽模式（直到 SIGINT / SIGTERM）"""
        try:
            asyncio.run(self._watch())
        except SyncError as e:
            self.logger.error(LogIcons.ERROR, f"無法啟動同步: {e}")
            return 1
        except KeyboardInterrupt:
            self.logger.info(LogIcons.COMPLETE, "已安全退出")
        finally:
            self.client.close()
        return 0

    async def _watch(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.engine.request_stop)
            except (NotImplementedError, RuntimeError):
                # Windows：SIGINT 改由 KeyboardInterrupt 處理
                pass

        self.logger.info(LogIcons.WATCH, "監控模式啟動中，按 Ctrl+C 停止...")
        await self.engine.run()

    def run_check(self) -> int:
        """連線檢查"""
        self.logger.info(LogIcons.CONNECT, f"檢查遠端連線: {self.config['remote']['url']}")
        try:
            results = self.client.check_connection()
        finally:
            self.client.close()

        for name, ok in results.items():
            icon = LogIcons.COMPLETE if ok else LogIcons.ERROR
            self.logger.info(icon, f"{name}: {'OK' if ok else 'FAILED'}")

        if not self.config['workspace']['id']:
            self.logger.warning(LogIcons.WARNING, "未設定 workspace.id，監聽模式將只在本地運作")

        return 0 if all(results.values()) else 1


def main():
    """主函數"""
    parser = argparse.ArgumentParser(
        description='Team Docs Sync - 本地資料夾與遠端儲存的雙向文件同步',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
範例:
  # 監聽模式（持續運行）
  python main.py --config config/example.yaml --mode watch

  # 單次啟動對齊
  python main.py --config config/example.yaml --mode once

  # Dry-run 模式（僅預覽會下載哪些文件）
  python main.py --config config/example.yaml --mode once --dry-run

  # 連線檢查
  python main.py --config config/example.yaml --mode check
        """
    )

    parser.add_argument(
        '--config',
        required=True,
        help='配置文件路徑 (例如: config/example.yaml)'
    )

    parser.add_argument(
        '--mode',
        choices=['watch', 'once', 'check'],
        default='watch',
        help='運行模式: watch=監聽模式, once=單次對齊, check=連線檢查 (預設: watch)'
    )

    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Dry-run 模式：僅預覽，不實際下載（僅在 once 模式下有效）'
    )

    args = parser.parse_args()

    # 檢查配置文件是否存在
    if not Path(args.config).exists():
        print(f"❌ 錯誤：配置文件不存在: {args.config}")
        sys.exit(1)

    # 創建應用程式實例
    try:
        app = SyncApplication(args.config)
    except Exception as e:
        print(f"❌ 初始化失敗: {e}")
        sys.exit(1)

    # 執行對應模式
    if args.mode == 'once':
        sys.exit(app.run_once(dry_run=args.dry_run))

    if args.dry_run:
        print("⚠️  警告：Dry-run 模式僅在 once 模式下有效，已忽略")

    if args.mode == 'check':
        sys.exit(app.run_check())
    sys.exit(app.run_watch())


if __name__ == '__main__':
    main()
