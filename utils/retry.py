"""
重試裝飾器
非同步指數退避重試（即時頻道連線使用）
"""

import asyncio
from functools import wraps
from typing import Callable, Optional, Tuple, Type


def async_retry(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> Callable:
    """
    非同步重試裝飾器

    Args:
        max_attempts: 最大嘗試次數（含第一次）
        delay: 第一次重試前的等待時間（秒）
        backoff: 每次重試等待時間的倍數
        exceptions: 需要重試的異常類型，其餘異常直接拋出
        on_retry: 每次重試前呼叫 on_retry(第幾次失敗, 異常, 等待秒數)

    Example:
        connect = async_retry(3, exceptions=(aiohttp.ClientError,))(channel.connect)
        session, ws = await connect()
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            current_delay = delay

            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_attempts:
                        raise
                    if on_retry is not None:
                        on_retry(attempt, e, current_delay)
                    await asyncio.sleep(current_delay)
                    current_delay *= backoff

        return wrapper
    return decorator
