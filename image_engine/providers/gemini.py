import base64
import re
from typing import Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from ..cancellation import CancelToken
from ..errors import ProviderHTTPError, TransportError
from ..logging_config import log_api_call, log_error, log_provider_message
from ..models import GenerationRequest
from ..sizing import ImageConfig, build_image_config
from .base import ImageProvider, reference_data_uris, split_data_uri

CHAT_COMPLETIONS_PATH = '/v1/chat/completions'
CHAT_MAX_TOKENS = 8192

# 不可重试的 finish_reason
SAFETY_REASONS = (
    'SAFETY',               # 安全过滤
    'BLOCKLIST',            # 黑名单
    'PROHIBITED_CONTENT',   # 禁止内容
    'RECITATION',           # 版权内容
    'HARMFUL_CATEGORY',     # 有害内容
    'IMAGE_SAFETY',
)


def is_gemini_model(model: str) -> bool:
    return model.lower().startswith('gemini-')


def is_native_gemini_url(base_url: str) -> bool:
    return 'generativelanguage.googleapis.com' in base_url or '/v1beta' in base_url


def reference_prompt(request: GenerationRequest) -> str:
    if request.has_reference_images:
        return f"Generate an image based on these references: {request.full_prompt}"
    return request.full_prompt


def build_gemini_contents(request: GenerationRequest) -> list:
    """REST 风格的 contents：参考图 inlineData 在前，文字在后"""
    parts = []
    for data_uri in reference_data_uris(request):
        mime_type, data = split_data_uri(data_uri)
        parts.append({'inlineData': {'data': data, 'mimeType': mime_type}})
    parts.append({'text': reference_prompt(request)})
    return [{'role': 'user', 'parts': parts}]


def image_config_dict(config: ImageConfig) -> dict:
    result = {}
    if config.aspect_ratio:
        result['aspectRatio'] = config.aspect_ratio
    if config.image_size:
        result['imageSize'] = config.image_size
    return result


def build_genai_client(api_key: str, base_url: str) -> genai.Client:
    """为指定地址构建 google-genai 客户端（地址中的 /v1beta 交给 SDK 拼接）"""
    root = re.sub(r'/v1beta/?$', '', base_url.rstrip('/'))
    return genai.Client(
        api_key=api_key,
        http_options=types.HttpOptions(base_url=root, api_version='v1beta'),
    )


def check_finish_reason(response, model: str) -> None:
    """
    检查安全拦截

    Raises:
        ValueError: 内容被安全机制拦截（不可重试）
    """
    for candidate in getattr(response, 'candidates', None) or []:
        finish_reason = getattr(candidate, 'finish_reason', None)
        if finish_reason is None:
            continue
        finish_reason = str(finish_reason)
        if any(reason in finish_reason.upper() for reason in SAFETY_REASONS):
            log_error('安全拦截', finish_reason, f"模型: {model}")
            raise ValueError(f"内容被安全机制拦截: {finish_reason}")


def response_to_dict(response) -> dict:
    """把 SDK 响应对象转换为 REST 风格的 candidates dict，图片数据编码为 base64"""
    candidates = []
    for candidate in getattr(response, 'candidates', None) or []:
        parts = []
        content = getattr(candidate, 'content', None)
        for part in getattr(content, 'parts', None) or []:
            inline = getattr(part, 'inline_data', None)
            if inline is not None and inline.data:
                data = inline.data
                if isinstance(data, bytes):
                    data = base64.b64encode(data).decode('ascii')
                parts.append({'inlineData': {'data': data, 'mimeType': inline.mime_type or 'image/png'}})
            elif getattr(part, 'text', None):
                parts.append({'text': part.text})
        candidates.append({'content': {'parts': parts}})
    return {'candidates': candidates}


class GeminiNativeProvider(ImageProvider):
    """官方 generateContent 接口（通过 google-genai 的异步客户端）"""
    name = 'gemini'

    def __init__(self, client, genai_client=None):
        super().__init__(client)
        self._genai = genai_client

    @property
    def genai_client(self):
        if self._genai is None:
            provider = self.client.provider
            self._genai = build_genai_client(provider.api_key, provider.base_url)
        return self._genai

    def _build_contents(self, request: GenerationRequest) -> list:
        parts = []
        for data_uri in reference_data_uris(request):
            mime_type, data = split_data_uri(data_uri)
            parts.append(types.Part.from_bytes(data=base64.b64decode(data), mime_type=mime_type))
        parts.append(types.Part(text=reference_prompt(request)))
        return [types.Content(role='user', parts=parts)]

    def _build_config(self, config: ImageConfig) -> types.GenerateContentConfig:
        config_params = {'response_modalities': ['IMAGE']}
        if not config.is_empty:
            image_config_params = {}
            if config.aspect_ratio:
                image_config_params['aspect_ratio'] = config.aspect_ratio
            if config.image_size:
                # API 参数名是 image_size，不是 resolution
                image_config_params['image_size'] = config.image_size
            config_params['image_config'] = types.ImageConfig(**image_config_params)
        return types.GenerateContentConfig(**config_params)

    async def fetch_response(self, request: GenerationRequest,
                             token: Optional[CancelToken] = None) -> dict:
        model_name = request.model.split('/')[-1]
        config = build_image_config(request.aspect_ratio, request.image_size, model_name)
        log_provider_message(
            'gemini',
            f"generateContent: model={model_name}, aspect_ratio={config.aspect_ratio}, "
            f"image_size={config.image_size}, 参考图={len(request.reference_images)}"
        )
        log_api_call('gemini', 'generateContent', f"模型: {model_name}")

        call = self.genai_client.aio.models.generate_content(
            model=model_name,
            contents=self._build_contents(request),
            config=self._build_config(config),
        )
        try:
            response = await self.client.guarded(call, token)
        except genai_errors.APIError as exc:
            log_error('Google Gemini API错误', str(exc), f"模型: {model_name}")
            raise ProviderHTTPError(exc.code or 500, exc.message or str(exc)) from exc
        except httpx.TransportError as exc:
            raise TransportError(f"网络请求失败: {exc}") from exc

        check_finish_reason(response, model_name)
        return response_to_dict(response)


class GeminiChatRelayProvider(ImageProvider):
    """第三方中转：通过 Chat Completions 转发 Gemini 请求"""
    name = 'gemini'

    async def fetch_response(self, request: GenerationRequest,
                             token: Optional[CancelToken] = None) -> dict:
        config = build_image_config(request.aspect_ratio, request.image_size, request.model)
        body = {
            'model': request.model,
            'stream': True,
            'max_tokens': CHAT_MAX_TOKENS,
            'messages': [{'role': 'user', 'content': request.full_prompt}],
            'contents': build_gemini_contents(request),
            'extra_body': {
                'generationConfig': {
                    'responseModalities': ['IMAGE'],
                    'imageConfig': image_config_dict(config),
                },
            },
        }
        log_provider_message('gemini', f"Chat 中转: model={request.model}, imageConfig={image_config_dict(config)}")
        return await self.client.post_json(CHAT_COMPLETIONS_PATH, body, token)
