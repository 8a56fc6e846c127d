"""
图像生成执行引擎

把一次生成请求拆成多个并发单元，负责重试、取消、超时，
并从事先未知格式的响应中解码出图片。
"""

from .batch import BatchTaskResult, parse_prompts_to_batch, run_batch
from .cancellation import CancelToken, TimeoutSignal, race_with_signal
from .models import Failure, GeneratedImage, GenerationRequest, Outcome, ProviderConfig, Success
from .optimizer import optimize_prompt
from .orchestrator import generate_images, generate_images_sync

__all__ = [
    'BatchTaskResult',
    'CancelToken',
    'Failure',
    'GeneratedImage',
    'GenerationRequest',
    'Outcome',
    'ProviderConfig',
    'Success',
    'TimeoutSignal',
    'generate_images',
    'generate_images_sync',
    'optimize_prompt',
    'parse_prompts_to_batch',
    'race_with_signal',
    'run_batch',
]
