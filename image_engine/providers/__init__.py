from ..http_client import ProviderClient
from ..logging_config import log_provider_message
from ..models import GenerationRequest
from .base import ImageProvider
from .gemini import GeminiChatRelayProvider, GeminiNativeProvider, is_gemini_model, is_native_gemini_url
from .kie import KieTaskProvider
from .openai_compat import OpenAICompatProvider


def get_provider(request: GenerationRequest, client: ProviderClient, genai_client=None) -> ImageProvider:
    """
    根据模型名和服务地址选择端点风格

    - gemini-* 模型 + 官方地址（或 /v1beta 路径）: 原生 generateContent
    - gemini-* 模型 + 其他地址: Chat Completions 中转
    - 其他模型: OpenAI 兼容接口（Images API / Chat Completions 回退链）
    - kie 类别: 任务式接口（创建任务后轮询），与模型名无关
    """
    if client.provider.scope == 'kie':
        log_provider_message('kie', f"使用任务接口: {client.provider.base_url}")
        return KieTaskProvider(client)

    base_url = client.provider.base_url
    if is_gemini_model(request.model):
        if is_native_gemini_url(base_url):
            log_provider_message('gemini', f"使用原生接口: {base_url}")
            return GeminiNativeProvider(client, genai_client=genai_client)
        log_provider_message('gemini', f"使用 Chat 中转: {base_url}")
        return GeminiChatRelayProvider(client)
    return OpenAICompatProvider(client)


__all__ = [
    'ImageProvider',
    'OpenAICompatProvider',
    'GeminiNativeProvider',
    'GeminiChatRelayProvider',
    'KieTaskProvider',
    'get_provider',
]
