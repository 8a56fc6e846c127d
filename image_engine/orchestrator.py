"""
生成编排层

把一个 GenerationRequest 拆成 count 个独立的生成单元，在有界并发下执行：

    排队 → 尝试 →（成功 | 等待重试 → 尝试 | 失败 | 已取消）

每个单元独立完成"请求 → 提取图片 → 下载外部 URL → 构建 GeneratedImage"，
失败由重试策略决定是否再试一次。所有异常都在单元内部转换为 Failure，
generate_images 总是返回与 count 等长、按下标对齐的结果列表。
"""

import asyncio
from datetime import datetime
from functools import partial
from typing import List, Optional

import httpx

from .cancellation import CancelToken
from .config import AppConfig
from .errors import (
    CANCELLED_MESSAGE,
    UNKNOWN_ERROR_MESSAGE,
    GenerationCancelled,
    OperationAborted,
)
from .http_client import ProviderClient
from .logging_config import engine_logger, log_api_call, log_error, log_image_operation
from .models import Failure, GeneratedImage, GenerationRequest, Outcome, ProviderConfig, Success
from .payload import extract_image
from .providers import ImageProvider, get_provider
from .retry_utils import build_retrying
from .runner import run_with_concurrency


async def _attempt_once(adapter: ImageProvider, client: ProviderClient,
                        request: GenerationRequest, token: Optional[CancelToken]) -> GeneratedImage:
    """单次尝试：请求 → 提取 → URL 转 data URI"""
    response = await adapter.fetch_response(request, token)
    ref = extract_image(response)
    if ref.is_url:
        data_uri = await client.fetch_image_as_data_uri(ref.source, token)
    else:
        data_uri = ref.to_data_uri()
    return GeneratedImage(base64=data_uri, prompt=request.prompt, model=request.model, params=request)


async def _generate_unit(adapter: ImageProvider, client: ProviderClient,
                         request: GenerationRequest, token: Optional[CancelToken],
                         index: int) -> Outcome:
    """
    执行一个生成单元，永不抛出异常

    Returns:
        Outcome: Success(image) 或 Failure(reason)
    """
    if token is not None and token.cancelled:
        return Failure(CANCELLED_MESSAGE)

    retrying = build_retrying(token)
    try:
        image = await retrying(_attempt_once, adapter, client, request, token)
    except Exception as exc:
        if (token is not None and token.cancelled) or isinstance(exc, (GenerationCancelled, OperationAborted)):
            engine_logger.info(f"第{index + 1}张已停止")
            return Failure(CANCELLED_MESSAGE)
        log_error('单张图片生成失败', str(exc), f"第{index + 1}张, 类型: {type(exc).__name__}")
        return Failure(str(exc) or UNKNOWN_ERROR_MESSAGE)

    log_image_operation('生成成功', f"第{index + 1}张: {len(image.base64)}字符")
    return Success(image)


async def generate_images(
    request: GenerationRequest,
    provider: ProviderConfig,
    token: Optional[CancelToken] = None,
    *,
    max_concurrency: Optional[int] = None,
    timeout: Optional[float] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    genai_client=None,
) -> List[Outcome]:
    """
    并发生成 request.count 张图片

    Args:
        request: 生成请求
        provider: 服务端地址与凭证
        token: 共享取消令牌；触发后不再启动新单元，在途单元以"已停止"结束
        max_concurrency: 并发上限，默认 AppConfig.MAX_CONCURRENCY
        timeout: 单次 HTTP 交换的超时秒数，默认 AppConfig.REQUEST_TIMEOUT_SECONDS
        transport: 自定义 httpx 传输层（测试时注入 MockTransport）
        genai_client: 自定义 google-genai 客户端（测试时注入）

    Returns:
        List[Outcome]: 与 request.count 等长、按下标对齐的结果
    """
    limit = max_concurrency or AppConfig.MAX_CONCURRENCY
    log_api_call(
        'engine',
        '开始图像生成',
        f"模型: {request.model}, 生成数量: {request.count}, 并发: {limit}, "
        f"参考图: {len(request.reference_images)}"
    )
    start = datetime.now()
    slots: List[Optional[Outcome]] = [None] * request.count

    async with ProviderClient(provider, timeout=timeout, transport=transport) as client:
        adapter = get_provider(request, client, genai_client=genai_client)
        units = [
            partial(_generate_unit, adapter, client, request, token, index)
            for index in range(request.count)
        ]
        for index, outcome in await run_with_concurrency(units, limit, token):
            slots[index] = outcome

    cancelled = token is not None and token.cancelled
    outcomes: List[Outcome] = [
        slot if slot is not None else Failure(CANCELLED_MESSAGE if cancelled else UNKNOWN_ERROR_MESSAGE)
        for slot in slots
    ]

    success_count = sum(1 for outcome in outcomes if outcome.ok)
    duration = (datetime.now() - start).total_seconds()
    if 0 < success_count < request.count:
        engine_logger.warning(f"部分生成失败: 请求{request.count}张，成功{success_count}张")
    log_api_call('engine', '图像生成完成', f"成功: {success_count}/{request.count}, 耗时: {duration:.2f}秒")
    return outcomes


def generate_images_sync(request: GenerationRequest, provider: ProviderConfig,
                         token: Optional[CancelToken] = None, **kwargs) -> List[Outcome]:
    """同步入口（Flask 视图函数使用），在新的事件循环中运行 generate_images"""
    return asyncio.run(generate_images(request, provider, token, **kwargs))
