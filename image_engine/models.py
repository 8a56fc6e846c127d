"""
生成引擎数据模型

- GenerationRequest: 一次生成请求（构造时完成参数验证）
- ProviderConfig: 服务端地址与凭证
- GeneratedImage: 成功生成的图片（base64 始终是 data URI）
- Success / Failure: 每个生成单元的终态结果
"""

import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

from .config import AppConfig

OUTPUT_FORMATS = ('png', 'jpg')


# ============================================================================
# 参数验证函数
# ============================================================================

def _validate_prompt(prompt: str) -> None:
    if not prompt or not prompt.strip():
        raise ValueError('请输入图像描述')


def _validate_count(count: int) -> None:
    """
    验证图片数量范围

    Raises:
        ValueError: 如果数量不在 1-MAX_IMAGE_COUNT 之间
    """
    if isinstance(count, bool) or not isinstance(count, int):
        raise ValueError('图像数量必须是整数')
    if count < 1 or count > AppConfig.MAX_IMAGE_COUNT:
        raise ValueError(f'图像数量必须在1-{AppConfig.MAX_IMAGE_COUNT}之间')


def _validate_choice(value: Optional[str], choices, label: str) -> None:
    if value is not None and value not in choices:
        raise ValueError(f"不支持的{label}: {value}")


# ============================================================================
# 请求与配置
# ============================================================================

@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    model: str
    aspect_ratio: str = '1:1'
    image_size: Optional[str] = '1K'
    count: int = 4
    reference_images: Tuple[str, ...] = ()
    negative_prompt: Optional[str] = None
    output_format: Optional[str] = None

    def __post_init__(self):
        _validate_prompt(self.prompt)
        if not self.model or not self.model.strip():
            raise ValueError('请选择模型')
        _validate_count(self.count)
        _validate_choice(self.aspect_ratio, AppConfig.ASPECT_RATIOS, '宽高比')
        _validate_choice(self.image_size, AppConfig.IMAGE_SIZES, '分辨率')
        _validate_choice(self.output_format, OUTPUT_FORMATS, '输出格式')
        # 允许传入 list，统一转为 tuple 保持不可变
        object.__setattr__(self, 'reference_images', tuple(self.reference_images or ()))

    @property
    def has_reference_images(self) -> bool:
        return bool(self.reference_images)

    @property
    def full_prompt(self) -> str:
        """拼接负面提示词后的最终 prompt"""
        if self.negative_prompt and self.negative_prompt.strip():
            return f"{self.prompt}\n\nAvoid: {self.negative_prompt.strip()}"
        return self.prompt

    def to_dict(self) -> Dict[str, Any]:
        """回显请求参数（不包含参考图内容，只给数量）"""
        return {
            'prompt': self.prompt,
            'model': self.model,
            'aspectRatio': self.aspect_ratio,
            'imageSize': self.image_size,
            'count': self.count,
            'referenceImageCount': len(self.reference_images),
            'negativePrompt': self.negative_prompt,
            'outputFormat': self.output_format,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GenerationRequest':
        """从前端 JSON 构建请求（camelCase 字段）"""
        count = data.get('count', 4)
        try:
            count = int(count)
        except (TypeError, ValueError):
            raise ValueError('图像数量必须是整数')
        return cls(
            prompt=(data.get('prompt') or '').strip(),
            model=(data.get('model') or '').strip(),
            aspect_ratio=data.get('aspectRatio') or '1:1',
            image_size=data.get('imageSize') or None,
            count=count,
            reference_images=tuple(data.get('referenceImages') or ()),
            negative_prompt=data.get('negativePrompt') or None,
            output_format=data.get('outputFormat') or None,
        )


@dataclass(frozen=True)
class ProviderConfig:
    api_key: str
    base_url: str
    # 供应商类别（AppConfig.PROVIDERS 的键），决定任务式接口等特殊端点风格
    scope: str = ''

    def __post_init__(self):
        if not self.api_key:
            raise ValueError('请提供 API Key')
        if not self.base_url:
            raise ValueError('请提供 API 地址')
        object.__setattr__(self, 'base_url', self.base_url.rstrip('/'))

    def url_for(self, path: str) -> str:
        """拼接接口地址；base_url 已以 /v1 结尾时不重复添加"""
        if not path.startswith('/'):
            path = '/' + path
        if self.base_url.endswith('/v1') and path.startswith('/v1/'):
            path = path[3:]
        return self.base_url + path

    def __repr__(self) -> str:
        return f"ProviderConfig(base_url={self.base_url!r}, scope={self.scope!r}, api_key=***)"


# ============================================================================
# 结果
# ============================================================================

def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class GeneratedImage:
    base64: str
    prompt: str
    model: str
    params: GenerationRequest
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: int = field(default_factory=_now_ms)

    def __post_init__(self):
        if not self.base64.startswith('data:'):
            raise ValueError('GeneratedImage.base64 必须是 data URI')

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'base64': self.base64,
            'prompt': self.prompt,
            'model': self.model,
            'timestamp': self.timestamp,
            'params': self.params.to_dict(),
        }


@dataclass(frozen=True)
class Success:
    image: GeneratedImage
    ok = True

    def to_dict(self) -> Dict[str, Any]:
        return {'ok': True, 'image': self.image.to_dict()}


@dataclass(frozen=True)
class Failure:
    reason: str
    ok = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self) | {'ok': False}


Outcome = Union[Success, Failure]
