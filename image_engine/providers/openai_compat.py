"""
OpenAI 兼容接口 Provider

两种端点风格：
- Images API: POST /v1/images/generations，只接受像素尺寸
- Chat Completions: POST /v1/chat/completions，流式返回，携带 response_format/aspect_ratio/size

一次尝试内的回退链：
1. 无参考图时优先 Images API；端点不存在（404/405/501 等）才转向 Chat
2. Chat 带 response_format → 不被接受时去掉 response_format
   → 仍失败则不带任何图像参数 → 再失败且无参考图时回到 Images API
每一步内部都会做 size 协商。
"""

import re
from typing import Dict, Optional

from ..cancellation import CancelToken
from ..errors import GenerationCancelled, RequestTimeoutError
from ..logging_config import log_provider_message, truncate_for_log
from ..models import GenerationRequest
from ..sizing import (
    ImageConfig,
    build_image_config,
    negotiate_size,
    render_chat_fields,
    render_images_fields,
)
from .base import ImageProvider, reference_data_uris

CHAT_COMPLETIONS_PATH = '/v1/chat/completions'
IMAGES_GENERATIONS_PATH = '/v1/images/generations'
CHAT_MAX_TOKENS = 8192

_INVALID_RESPONSE_FORMAT = re.compile(r'不合法的response_format|invalid\s+response_format', re.IGNORECASE)
_UNSUPPORTED_STATUS = re.compile(r'API error (404|405|501)')
_UNSUPPORTED_TEXT = re.compile(r'not\s+found|not\s+supported', re.IGNORECASE)


def is_invalid_response_format_error(error: BaseException) -> bool:
    return bool(_INVALID_RESPONSE_FORMAT.search(str(error)))


def is_endpoint_unsupported(error: BaseException) -> bool:
    message = str(error)
    return bool(_UNSUPPORTED_STATUS.search(message) or _UNSUPPORTED_TEXT.search(message))


def _is_abort(error: BaseException) -> bool:
    return isinstance(error, (RequestTimeoutError, GenerationCancelled))


def build_message_content(request: GenerationRequest) -> list:
    """构建多模态 message content：参考图在前，文字在后"""
    if not request.has_reference_images:
        return [{'type': 'text', 'text': request.full_prompt}]

    content = [
        {'type': 'image_url', 'image_url': {'url': data_uri}}
        for data_uri in reference_data_uris(request)
    ]
    content.append({
        'type': 'text',
        'text': f"Generate an image based on these references: {request.full_prompt}",
    })
    return content


class OpenAICompatProvider(ImageProvider):
    name = 'openai'

    async def fetch_response(self, request: GenerationRequest,
                             token: Optional[CancelToken] = None) -> dict:
        config = build_image_config(request.aspect_ratio, request.image_size, request.model)
        has_image_input = request.has_reference_images

        log_provider_message(
            'openai',
            f"开始生成: model={request.model}, 参考图={len(request.reference_images)}, "
            f"aspect_ratio={config.aspect_ratio}, size={config.image_size}"
        )

        if not has_image_input:
            try:
                return await self.request_images(request, config, token)
            except Exception as error:
                if not is_endpoint_unsupported(error):
                    raise
                log_provider_message('openai', f"Images API 不可用，改用 Chat Completions: {str(error)[:120]}", "WARNING")

        try:
            return await self.request_chat(request, config, token)
        except Exception as error:
            if not is_invalid_response_format_error(error):
                raise
            log_provider_message('openai', "服务端不接受 response_format，去掉后重试", "WARNING")

        try:
            return await self.request_chat(request, config, token, omit_response_format=True)
        except Exception as error:
            if _is_abort(error):
                raise
            log_provider_message('openai', f"不带 response_format 仍失败，改为不带图像参数: {str(error)[:120]}", "WARNING")

        try:
            return await self.request_chat(request, None, token, omit_response_format=True)
        except Exception as error:
            if has_image_input or _is_abort(error):
                raise
            log_provider_message('openai', f"Chat 全部失败，回到 Images API: {str(error)[:120]}", "WARNING")

        return await self.request_images(request, config, token)

    # ------------------------------------------------------------------

    async def request_chat(self, request: GenerationRequest, config: Optional[ImageConfig],
                           token: Optional[CancelToken] = None,
                           omit_response_format: bool = False) -> dict:
        messages = [{'role': 'user', 'content': build_message_content(request)}]

        async def send(fields: Dict[str, str]) -> dict:
            body = {
                'model': request.model,
                'messages': messages,
                'max_tokens': CHAT_MAX_TOKENS,
                'stream': True,
            }
            # 不带图像参数时也不声明 response_format
            if config is not None and not omit_response_format:
                body['response_format'] = {'type': 'image'}
            body.update(fields)
            log_provider_message('openai', f"Chat 请求体: {truncate_for_log(body, 200)}", "DEBUG")
            return await self.client.post_json(CHAT_COMPLETIONS_PATH, body, token)

        return await negotiate_size(send, config, render_chat_fields)

    async def request_images(self, request: GenerationRequest, config: Optional[ImageConfig],
                             token: Optional[CancelToken] = None) -> dict:
        async def send(fields: Dict[str, str]) -> dict:
            body = {
                'model': request.model,
                'prompt': request.full_prompt,
                'n': 1,
            }
            if request.output_format:
                body['output_format'] = 'jpeg' if request.output_format == 'jpg' else request.output_format
            body.update(fields)
            log_provider_message('openai', f"Images 请求体: {truncate_for_log(body, 200)}", "DEBUG")
            return await self.client.post_json(IMAGES_GENERATIONS_PATH, body, token)

        return await negotiate_size(send, config, render_images_fields)
