"""配置中心 - 统一管理生成引擎的所有可调参数

此模块提供引擎的集中配置管理，支持环境变量覆盖。
超时、并发、重试、批量上限以及前端需要的供应商信息都从这里统一维护。
"""

import os
from typing import Dict, Any


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


class AppConfig:
    """引擎配置中心 - 支持环境变量覆盖"""

    # === 请求与并发 ===
    REQUEST_TIMEOUT_SECONDS = float(os.getenv('REQUEST_TIMEOUT_SECONDS', '60'))
    DOWNLOAD_TIMEOUT_SECONDS = float(os.getenv('DOWNLOAD_TIMEOUT_SECONDS', '30'))
    MAX_CONCURRENCY = int(os.getenv('MAX_CONCURRENCY', '2'))
    MAX_IMAGE_COUNT = int(os.getenv('MAX_IMAGE_COUNT', '4'))

    # === 重试策略 ===
    # 每张图最多尝试 2 次（失败后再重试 1 次）
    MAX_ATTEMPTS = int(os.getenv('MAX_ATTEMPTS', '2'))
    RETRY_BACKOFF_SECONDS = float(os.getenv('RETRY_BACKOFF_SECONDS', '0.3'))
    RATE_LIMIT_BACKOFF_SECONDS = float(os.getenv('RATE_LIMIT_BACKOFF_SECONDS', '3.0'))

    # === 任务轮询（Kie Jobs API） ===
    KIE_POLL_INTERVAL_SECONDS = float(os.getenv('KIE_POLL_INTERVAL_SECONDS', '1.5'))

    # === 批量模式 ===
    MAX_BATCH_TOTAL = int(os.getenv('MAX_BATCH_TOTAL', '32'))
    MAX_BATCH_CONCURRENCY = int(os.getenv('MAX_BATCH_CONCURRENCY', '8'))
    MAX_BATCH_COUNT_PER_PROMPT = int(os.getenv('MAX_BATCH_COUNT_PER_PROMPT', '4'))

    # === 日志 ===
    LOG_TO_FILE = _env_bool('LOG_TO_FILE', '1')
    LOG_DIR = os.getenv('LOG_DIR', 'logs')

    # === 取值范围 ===
    ASPECT_RATIOS = ('1:1', '2:3', '3:2', '4:3', '3:4', '4:5', '5:4', '16:9', '9:16', '21:9', 'auto')
    IMAGE_SIZES = ('1K', '2K', '4K')

    # 不支持 image_size 参数的模型
    MODELS_WITHOUT_SIZE = ('gemini-2.5-flash-image',)

    # === Provider 配置字典 ===
    PROVIDERS = {
        'openai_proxy': {
            'name': 'OpenAI 兼容接口',
            'default_model': 'gpt-image-1',
            'api_key_label': 'API Key',
            'api_key_placeholder': '输入 OpenAI 兼容服务的 API Key',
            'base_url': os.getenv('OPENAI_PROXY_BASE_URL', 'https://api.openai.com'),
            'models': [
                {'value': 'gpt-image-1', 'text': 'GPT Image 1'},
                {'value': 'gemini-3-pro-image-preview', 'text': 'Gemini 3 Pro Image Preview (中转)'},
                {'value': 'gemini-2.5-flash-image', 'text': 'Gemini 2.5 Flash Image (中转)'},
            ],
        },
        'gemini': {
            'name': 'Google Gemini',
            'default_model': 'gemini-3-pro-image-preview',
            'api_key_label': 'Google API Key',
            'api_key_placeholder': '输入您的 Google Gemini API Key',
            'base_url': os.getenv('GEMINI_BASE_URL', 'https://generativelanguage.googleapis.com'),
            'models': [
                {'value': 'gemini-3-pro-image-preview', 'text': 'Nano Banana Pro'},
                {'value': 'gemini-2.5-flash-image', 'text': 'Nano Banana'},
            ],
        },
        'kie': {
            'name': 'Kie AI',
            'default_model': 'nano-banana-pro',
            'api_key_label': 'Kie API Key',
            'api_key_placeholder': '输入您的 Kie AI API Key',
            'base_url': os.getenv('KIE_BASE_URL', 'https://api.kie.ai'),
            'models': [
                {'value': 'nano-banana-pro', 'text': 'Nano Banana Pro'},
                {'value': 'google/nano-banana', 'text': 'Nano Banana'},
                {'value': 'google/nano-banana-edit', 'text': 'Nano Banana Edit'},
                {'value': 'google/imagen4', 'text': 'Imagen 4'},
            ],
        },
    }


# === 配置访问函数 ===

def get_provider_config(scope: str) -> Dict[str, Any]:
    """获取指定供应商类别的配置

    Args:
        scope: 供应商类别（openai_proxy, gemini, kie）

    Returns:
        Dict: 供应商配置字典

    Raises:
        ValueError: 如果类别不存在
    """
    if scope not in AppConfig.PROVIDERS:
        raise ValueError(f"未知的provider: {scope}")
    return AppConfig.PROVIDERS[scope]


def get_default_base_url(scope: str) -> str:
    return get_provider_config(scope).get('base_url', '')


def model_supports_size(model: str) -> bool:
    """判断模型是否接受 image_size 参数（去掉 "google/" 之类的前缀再比较）"""
    model_name = model.split('/')[-1].lower()
    return model_name not in AppConfig.MODELS_WITHOUT_SIZE


def get_frontend_config() -> Dict[str, Any]:
    """返回前端需要的完整配置

    通过 /api/config 接口提供给前端。
    """
    providers = {}
    for scope, config in AppConfig.PROVIDERS.items():
        providers[scope] = {
            'name': config['name'],
            'apiKeyLabel': config['api_key_label'],
            'apiKeyPlaceholder': config['api_key_placeholder'],
            'defaultModel': config['default_model'],
            'baseUrl': config['base_url'],
            'models': config['models'],
        }

    return {
        'providers': providers,
        'imageOptions': {
            'aspectRatios': list(AppConfig.ASPECT_RATIOS),
            'imageSizes': list(AppConfig.IMAGE_SIZES),
        },
        'limits': {
            'maxImageCount': AppConfig.MAX_IMAGE_COUNT,
            'maxBatchTotal': AppConfig.MAX_BATCH_TOTAL,
            'maxBatchConcurrency': AppConfig.MAX_BATCH_CONCURRENCY,
            'maxBatchCountPerPrompt': AppConfig.MAX_BATCH_COUNT_PER_PROMPT,
        },
    }
