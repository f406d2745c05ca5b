"""
同步錯誤分類
所有錯誤都在操作邊界被攔截，轉成 bool / None 結果並寫入日誌
"""


class SyncError(Exception):
    """同步子系統錯誤基類"""


class ValidationError(SyncError):
    """檔案不符合同步條件（過大、副檔名不允許、路徑越界），略過即可"""


class StorageError(SyncError):
    """Blob 或記錄讀寫失敗，單一操作失敗，不自動重試"""


class NotFoundError(SyncError):
    """遠端目標不存在（刪除 / 更新時視為成功）"""


class TransportError(SyncError):
    """即時通知頻道無法建立，降級為僅啟動對齊模式"""


class AnnotationError(SyncError):
    """差異計算失敗，退回不含差異說明的歷史行"""
