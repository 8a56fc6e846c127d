"""
提示词优化服务

调用 OpenAI 兼容的 Chat Completions 接口，把用户的简短描述改写为更适合图像生成的提示词。
"""

from typing import Optional

import httpx
from openai import APIConnectionError, APIStatusError, AsyncOpenAI

from .config import AppConfig
from .errors import ProviderHTTPError, TransportError
from .logging_config import log_api_call, log_error
from .models import ProviderConfig

SYSTEM_PROMPT = (
    'You are an expert prompt engineer for AI image generation. Rewrite prompts to be more '
    'descriptive, detailed, and optimized for high-quality generation. Keep the core intent '
    'but enhance lighting, texture, and style details. Return ONLY the optimized prompt text.'
)
TEMPERATURE = 0.7


def _api_base(provider: ProviderConfig) -> str:
    if provider.base_url.endswith('/v1'):
        return provider.base_url
    return provider.base_url + '/v1'


def build_client(provider: ProviderConfig,
                 http_client: Optional[httpx.AsyncClient] = None) -> AsyncOpenAI:
    """重试由调用方决定，SDK 自身不再重试"""
    return AsyncOpenAI(
        base_url=_api_base(provider),
        api_key=provider.api_key,
        timeout=AppConfig.REQUEST_TIMEOUT_SECONDS,
        max_retries=0,
        http_client=http_client,
    )


async def optimize_prompt(prompt: str, provider: ProviderConfig, model: str,
                          http_client: Optional[httpx.AsyncClient] = None) -> str:
    """
    优化提示词

    Args:
        prompt: 原始提示词
        provider: 服务端地址与凭证
        model: 优化使用的文本模型
        http_client: 自定义 httpx 客户端（测试时注入 MockTransport）

    Returns:
        str: 优化后的提示词

    Raises:
        ValueError: 未设置模型或提示词为空
        ProviderHTTPError: 服务端返回错误状态码
        TransportError: 网络失败
        RuntimeError: 模型没有返回内容
    """
    if not model or not model.strip():
        raise ValueError('请先设置提示词优化模型')
    if not prompt or not prompt.strip():
        raise ValueError('请输入需要优化的提示词')

    log_api_call('openai', '提示词优化', f"模型: {model}, 原始长度: {len(prompt)}")
    client = build_client(provider, http_client)
    try:
        completion = await client.chat.completions.create(
            model=model.strip(),
            messages=[
                {'role': 'system', 'content': SYSTEM_PROMPT},
                {'role': 'user', 'content': f"Original Prompt: {prompt}"},
            ],
            temperature=TEMPERATURE,
        )
    except APIStatusError as exc:
        log_error('提示词优化失败', f"状态码 {exc.status_code}", exc.message)
        raise ProviderHTTPError(exc.status_code, exc.response.text[:500]) from exc
    except APIConnectionError as exc:
        log_error('提示词优化失败', '网络错误', str(exc))
        raise TransportError(f"网络请求失败: {exc}") from exc
    finally:
        # 调用方注入的 http_client 由调用方负责关闭
        if http_client is None:
            await client.close()

    content = completion.choices[0].message.content if completion.choices else None
    optimized = (content or '').strip()
    if not optimized:
        raise RuntimeError('No response from optimization model')

    log_api_call('openai', '提示词优化完成', f"优化后长度: {len(optimized)}")
    return optimized
