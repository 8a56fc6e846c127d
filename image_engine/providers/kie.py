"""
Kie AI 任务式接口 Provider

一次尝试 = 创建任务 → 轮询 recordInfo 直到 success / fail → 返回结果 URL。
超时覆盖创建任务与整个轮询周期；结果 URL 由编排层下载并编码为 data URI。

不同模型的 input 字段：
- nano-banana-pro: prompt, aspect_ratio, resolution, output_format, image_input（最多 8 张）
- google/nano-banana-edit: prompt, image_urls（必需，最多 10 张）, image_size(比例), output_format
- google/imagen4 系列: prompt, aspect_ratio
- google/nano-banana: prompt, image_size(比例), output_format
"""

import asyncio
import json
from typing import List, Optional

from ..cancellation import CancelToken
from ..config import AppConfig
from ..errors import GenerationError
from ..logging_config import log_provider_message
from ..models import GenerationRequest
from .base import ImageProvider

CREATE_TASK_PATH = '/api/v1/jobs/createTask'
RECORD_INFO_PATH = '/api/v1/jobs/recordInfo'

MAX_IMAGE_INPUTS = 8
MAX_EDIT_IMAGE_URLS = 10


def is_pro_model(model: str) -> bool:
    name = model.lower()
    return 'nano-banana-pro' in name or 'nanobananapro' in name


def is_edit_model(model: str) -> bool:
    name = model.lower()
    return 'nano-banana-edit' in name or 'nanobananaedit' in name


def is_imagen_model(model: str) -> bool:
    name = model.lower()
    return 'imagen-4' in name or 'imagen4' in name


def format_for_api(output_format: Optional[str], model: str) -> str:
    """Pro 模型接受 jpg，其余模型要求 jpeg"""
    fmt = output_format or 'png'
    if fmt == 'jpg' and not is_pro_model(model):
        return 'jpeg'
    return fmt


def reference_image_urls(request: GenerationRequest) -> List[str]:
    """
    Kie 的参考图字段只接受 http(s) URL

    Raises:
        ValueError: 参考图不是 URL（data URI 需先上传到可公开访问的位置）
    """
    urls = []
    for image in request.reference_images:
        if not image.startswith(('http://', 'https://')):
            raise ValueError('Kie 参考图仅支持 http(s) URL')
        urls.append(image)
    return urls


def build_kie_input(request: GenerationRequest, image_urls: List[str]) -> dict:
    model = request.model

    if is_imagen_model(model):
        return {'prompt': request.full_prompt, 'aspect_ratio': request.aspect_ratio}

    if is_edit_model(model):
        if not image_urls:
            raise ValueError('Nano Banana Edit 模型需要提供参考图片（image_urls）')
        return {
            'prompt': request.full_prompt,
            'image_urls': image_urls[:MAX_EDIT_IMAGE_URLS],
            'image_size': request.aspect_ratio,
            'output_format': format_for_api(request.output_format, model),
        }

    if is_pro_model(model):
        task_input = {
            'prompt': request.full_prompt,
            'aspect_ratio': request.aspect_ratio,
            'output_format': format_for_api(request.output_format, model),
        }
        if request.image_size:
            task_input['resolution'] = request.image_size
        if image_urls:
            task_input['image_input'] = image_urls[:MAX_IMAGE_INPUTS]
        return task_input

    # 标准 nano-banana 不支持 image_input
    return {
        'prompt': request.full_prompt,
        'image_size': request.aspect_ratio,
        'output_format': format_for_api(request.output_format, model),
    }


def extract_result_urls(record: dict) -> List[str]:
    raw = record.get('resultJson') if isinstance(record, dict) else None
    if not raw:
        return []
    try:
        parsed = json.loads(raw) if isinstance(raw, str) else raw
    except ValueError:
        return []
    urls = parsed.get('resultUrls') if isinstance(parsed, dict) else None
    if not isinstance(urls, list):
        return []
    return [url for url in urls if isinstance(url, str) and url.strip()]


class KieTaskProvider(ImageProvider):
    name = 'kie'

    async def fetch_response(self, request: GenerationRequest,
                             token: Optional[CancelToken] = None) -> dict:
        task_input = build_kie_input(request, reference_image_urls(request))
        log_provider_message('kie', f"创建任务: model={request.model}, 参考图={len(request.reference_images)}")
        return await self.client.guarded(self._run_task(request.model, task_input), token)

    async def _run_task(self, model: str, task_input: dict) -> dict:
        task_id = await self.create_task(model, task_input)
        urls = await self.wait_for_result_urls(task_id)
        return {'data': [{'url': url} for url in urls]}

    async def create_task(self, model: str, task_input: dict) -> str:
        response = await self.client.request_json('POST', CREATE_TASK_PATH, {'model': model, 'input': task_input})
        if response.get('code') != 200:
            raise GenerationError(response.get('msg') or 'Kie createTask failed')

        data = response.get('data') or {}
        task_id = data.get('recordId') or data.get('taskId') or data.get('id')
        if not task_id:
            raise GenerationError('Kie createTask 返回缺少 taskId/recordId')
        log_provider_message('kie', f"任务已创建: {task_id}")
        return task_id

    async def get_record_info(self, task_id: str) -> dict:
        response = await self.client.request_json('GET', RECORD_INFO_PATH, params={'taskId': task_id})
        if response.get('code') != 200:
            raise GenerationError(response.get('msg') or 'Kie recordInfo failed')
        return response.get('data') or {}

    async def wait_for_result_urls(self, task_id: str) -> List[str]:
        """轮询直到任务结束；等待由外层的超时与取消信号打断"""
        polls = 0
        while True:
            record = await self.get_record_info(task_id)
            polls += 1
            state = str(record.get('state') or '').lower()

            if state == 'success':
                urls = extract_result_urls(record)
                if not urls:
                    raise GenerationError('Kie 任务成功但未返回 resultUrls')
                log_provider_message('kie', f"任务完成: {task_id}, 轮询{polls}次, 结果{len(urls)}张")
                return urls

            if state == 'fail':
                raise GenerationError(record.get('error') or record.get('msg') or 'Kie 任务失败')

            await asyncio.sleep(AppConfig.KIE_POLL_INTERVAL_SECONDS)
