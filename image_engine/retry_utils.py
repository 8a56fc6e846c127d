"""
重试工具模块

使用 tenacity 的 AsyncRetrying 实现单张图片的重试策略：
- 错误分类：根据错误描述判断是否值得再试一次
- 退避策略：限流错误等待较久，其他错误短暂等待
- 取消感知：令牌触发后不再重试，退避等待也会被打断
"""

import asyncio
import re
from typing import Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)

from .cancellation import CancelToken
from .config import AppConfig
from .errors import (
    GenerationCancelled,
    NoImageFoundError,
    OperationAborted,
    ProviderHTTPError,
    ProviderStreamError,
    RequestTimeoutError,
    CANCELLED_MESSAGE,
    TIMEOUT_MESSAGE,
)
from .logging_config import retry_logger

_STATUS_PATTERN = re.compile(r'API error (\d{3})')

# 明确放弃或超时的描述：重试超时往往只会再次超时
_ABORT_INDICATORS = (
    'aborted',
    'timed out',
    TIMEOUT_MESSAGE,
    CANCELLED_MESSAGE,
    '已取消',
)

_RATE_LIMIT_INDICATORS = (
    'too many requests',
    'rate limit',
    'rate_limit_exceeded',
    'quota exceeded',
    'resource exhausted',
)


# ============================================================================
# 错误检测函数
# ============================================================================

def extract_status_code(message: str) -> Optional[int]:
    match = _STATUS_PATTERN.search(message or '')
    return int(match.group(1)) if match else None


def classify_error_message(message: str, cancelled: bool = False) -> bool:
    """
    根据错误描述判断是否可以重试

    判断顺序：
    1. 取消已生效：不重试
    2. 描述表明操作被放弃或超时：不重试
    3. 描述中带有 4xx 状态码（429 除外）：不重试，请求或凭证问题不会自愈
    4. 429、5xx、无法识别的网络错误：重试

    Args:
        message: 错误描述文本
        cancelled: 共享取消令牌是否已触发

    Returns:
        bool: True 表示值得再试一次
    """
    if cancelled:
        return False

    lowered = (message or '').lower()
    if any(indicator.lower() in lowered for indicator in _ABORT_INDICATORS):
        return False

    status = extract_status_code(message)
    if status is not None and 400 <= status < 500 and status != 429:
        return False

    return True


def is_retryable_error(exception: BaseException, cancelled: bool = False) -> bool:
    """
    判断异常是否应该重试

    终态异常（取消、超时、无图片、流内错误、ValueError）直接判定为不可重试，
    其余交给 classify_error_message 按描述文本判断。
    """
    if cancelled:
        return False
    if isinstance(exception, (GenerationCancelled, OperationAborted, RequestTimeoutError)):
        return False
    if isinstance(exception, (NoImageFoundError, ProviderStreamError, ValueError)):
        return False

    retryable = classify_error_message(str(exception), cancelled)
    retry_logger.info(
        f"错误分类: {type(exception).__name__} - {str(exception)[:200]} -> "
        f"{'可重试' if retryable else '不可重试'}"
    )
    return retryable


def is_rate_limit_error(exception: BaseException) -> bool:
    if isinstance(exception, ProviderHTTPError) and exception.status_code == 429:
        return True
    message = str(exception)
    if extract_status_code(message) == 429:
        return True
    lowered = message.lower()
    return any(indicator in lowered for indicator in _RATE_LIMIT_INDICATORS)


def backoff_seconds(exception: Optional[BaseException]) -> float:
    """限流错误等待较长时间，其他错误只做短暂等待"""
    if exception is not None and is_rate_limit_error(exception):
        return AppConfig.RATE_LIMIT_BACKOFF_SECONDS
    return AppConfig.RETRY_BACKOFF_SECONDS


# ============================================================================
# 重试策略
# ============================================================================

def _wait_for_failure(retry_state: RetryCallState) -> float:
    exception = retry_state.outcome.exception() if retry_state.outcome else None
    return backoff_seconds(exception)


def _log_before_sleep(retry_state: RetryCallState) -> None:
    exception = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0
    retry_logger.warning(
        f"第 {retry_state.attempt_number} 次尝试失败，等待 {delay:.1f} 秒后重试: "
        f"{str(exception)[:200]}"
    )


def build_retrying(token: Optional[CancelToken] = None,
                   max_attempts: Optional[int] = None) -> AsyncRetrying:
    """
    构建单张图片的重试器

    重试配置：
    - 最大尝试次数: AppConfig.MAX_ATTEMPTS（默认 2 次，即失败后重试 1 次）
    - 等待策略: 限流 RATE_LIMIT_BACKOFF_SECONDS，其他 RETRY_BACKOFF_SECONDS
    - 重试条件: is_retryable_error，且取消令牌未触发
    - 退避等待可被取消令牌打断
    - 最终行为: 重新抛出最后一次的异常 (reraise=True)

    Example:
        retrying = build_retrying(token)
        image = await retrying(attempt_once)
    """
    attempts = max_attempts or AppConfig.MAX_ATTEMPTS

    def should_retry(exception: BaseException) -> bool:
        return is_retryable_error(exception, bool(token and token.cancelled))

    async def sleep(seconds: float) -> None:
        if token is None:
            await asyncio.sleep(seconds)
            return
        await token.sleep(seconds)

    return AsyncRetrying(
        retry=retry_if_exception(should_retry),
        stop=stop_after_attempt(attempts),
        wait=_wait_for_failure,
        sleep=sleep,
        reraise=True,
        before_sleep=_log_before_sleep,
    )
