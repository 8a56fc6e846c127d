"""
批量生成

- 解析：只有显式使用 --- 分隔行时才拆分为多个提示词
- 限额：提示词数 × 每条张数 不超过 MAX_BATCH_TOTAL
- 执行：每条提示词是一个任务，任务之间用同一个有界并发执行器调度
"""

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from .cancellation import CancelToken
from .config import AppConfig
from .errors import CANCELLED_MESSAGE
from .logging_config import engine_logger, log_error
from .models import GeneratedImage, GenerationRequest, ProviderConfig
from .orchestrator import generate_images
from .runner import run_with_concurrency

BATCH_CANCELLED_MESSAGE = '已取消'
_SEPARATOR = re.compile(r'\n-{3,}\n?')


def _now_ms() -> int:
    return int(datetime.now().timestamp() * 1000)


@dataclass(frozen=True)
class BatchTaskResult:
    prompt: str
    status: str = 'pending'
    images: List[GeneratedImage] = field(default_factory=list)
    error: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: Optional[int] = None
    completed_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'prompt': self.prompt,
            'status': self.status,
            'images': [image.to_dict() for image in self.images],
            'error': self.error,
            'startedAt': self.started_at,
            'completedAt': self.completed_at,
        }


# ============================================================================
# 解析与限额
# ============================================================================

def parse_prompts_to_batch(text: str) -> List[str]:
    """
    解析提示词为批量任务

    普通换行始终视为同一个提示词的一部分，避免多行提示词被误拆。
    """
    trimmed = (text or '').strip()
    if not trimmed:
        return []
    if '\n---' not in trimmed:
        return [trimmed]
    return [part.strip() for part in _SEPARATOR.split(trimmed) if part.strip()]


def clamp_count_per_prompt(count_per_prompt) -> int:
    try:
        count = int(count_per_prompt or 1)
    except (TypeError, ValueError):
        count = 1
    return max(1, min(AppConfig.MAX_BATCH_COUNT_PER_PROMPT, count))


def clamp_concurrency(concurrency) -> int:
    try:
        value = int(concurrency or 1)
    except (TypeError, ValueError):
        value = 1
    return max(1, min(AppConfig.MAX_BATCH_CONCURRENCY, value))


def clamp_batch_prompts(prompts: List[str], count_per_prompt: int) -> List[str]:
    """总张数超过上限时截断提示词列表"""
    count = clamp_count_per_prompt(count_per_prompt)
    max_prompts = AppConfig.MAX_BATCH_TOTAL // count
    if len(prompts) > max_prompts:
        engine_logger.warning(
            f"批量总数超出上限 {AppConfig.MAX_BATCH_TOTAL}，只保留前 {max_prompts} 条提示词（共 {len(prompts)} 条）"
        )
        return prompts[:max_prompts]
    return prompts


# ============================================================================
# 执行
# ============================================================================

def _finish(task: BatchTaskResult, outcomes) -> BatchTaskResult:
    images = [outcome.image for outcome in outcomes if outcome.ok]
    errors = [outcome.reason for outcome in outcomes if not outcome.ok]
    now = _now_ms()

    if images:
        error = f"部分失败：{errors[0]}" if errors else None
        return replace(task, status='success', images=images, error=error, completed_at=now)
    if any(error in (CANCELLED_MESSAGE, BATCH_CANCELLED_MESSAGE) for error in errors):
        return replace(task, status='error', error=BATCH_CANCELLED_MESSAGE, completed_at=now)
    return replace(task, status='error', error=errors[0] if errors else '生成失败', completed_at=now)


async def _run_task(task: BatchTaskResult, base_request: GenerationRequest, provider: ProviderConfig,
                    token: Optional[CancelToken], count_per_prompt: int,
                    on_update: Optional[Callable[[BatchTaskResult], None]],
                    generate_kwargs: Dict[str, Any]) -> BatchTaskResult:
    def publish(result: BatchTaskResult) -> BatchTaskResult:
        if on_update is not None:
            on_update(result)
        return result

    if token is not None and token.cancelled:
        return publish(replace(task, status='error', error=BATCH_CANCELLED_MESSAGE, completed_at=_now_ms()))

    running = publish(replace(task, status='running', started_at=_now_ms()))
    request = replace(base_request, prompt=task.prompt, count=count_per_prompt)
    try:
        outcomes = await generate_images(request, provider, token, **generate_kwargs)
    except Exception as exc:
        log_error('批量任务失败', str(exc), f"提示词: {task.prompt[:50]}")
        error = BATCH_CANCELLED_MESSAGE if token is not None and token.cancelled else (str(exc) or '未知错误')
        return publish(replace(running, status='error', error=error, completed_at=_now_ms()))

    if token is not None and token.cancelled and not any(outcome.ok for outcome in outcomes):
        return publish(replace(running, status='error', error=BATCH_CANCELLED_MESSAGE, completed_at=_now_ms()))
    return publish(_finish(running, outcomes))


async def run_batch(
    prompts: List[str],
    base_request: GenerationRequest,
    provider: ProviderConfig,
    token: Optional[CancelToken] = None,
    concurrency: int = 1,
    count_per_prompt: int = 1,
    on_update: Optional[Callable[[BatchTaskResult], None]] = None,
    **generate_kwargs,
) -> List[BatchTaskResult]:
    """
    批量执行多条提示词

    Args:
        prompts: 提示词列表（超过总数上限的部分会被截断）
        base_request: 除 prompt/count 外的公共参数
        provider: 服务端地址与凭证
        token: 共享取消令牌
        concurrency: 同时执行的提示词数（1-MAX_BATCH_CONCURRENCY）
        count_per_prompt: 每条提示词生成的张数（1-MAX_BATCH_COUNT_PER_PROMPT）
        on_update: 任务状态变化回调
        **generate_kwargs: 透传给 generate_images（transport、timeout 等）

    Returns:
        List[BatchTaskResult]: 与截断后的提示词按下标对齐
    """
    count = clamp_count_per_prompt(count_per_prompt)
    prompts = clamp_batch_prompts(prompts, count)
    tasks = [BatchTaskResult(prompt=prompt) for prompt in prompts]
    engine_logger.info(f"开始批量生成: {len(tasks)} 条提示词, 每条 {count} 张, 并发 {clamp_concurrency(concurrency)}")

    units = [
        partial(_run_task, task, base_request, provider, token, count, on_update, generate_kwargs)
        for task in tasks
    ]
    results: List[BatchTaskResult] = list(tasks)
    for index, result in await run_with_concurrency(units, clamp_concurrency(concurrency), token):
        results[index] = result

    # 取消后从未启动的任务
    now = _now_ms()
    results = [
        replace(result, status='error', error=BATCH_CANCELLED_MESSAGE, completed_at=now)
        if result.status == 'pending' else result
        for result in results
    ]

    success_count = sum(1 for result in results if result.status == 'success')
    engine_logger.info(f"批量完成：{success_count}/{len(results)} 成功")
    return results
