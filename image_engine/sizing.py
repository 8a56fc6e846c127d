"""
尺寸/比例参数协商

把抽象的分辨率档位（1K/2K/4K）和宽高比映射为各接口需要的请求字段；
当服务端明确拒绝 size 取值时，依次退回到规范像素尺寸、再到完全省略 size。
只有 size 相关的拒绝会触发这条回退链，其他错误立即向上抛出。
"""

import re
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from .config import AppConfig, model_supports_size
from .logging_config import engine_logger

T = TypeVar('T')

_PIXEL_SIZE = re.compile(r'^\d+x\d+$', re.IGNORECASE)
_INVALID_SIZE = re.compile(r'不合法的size|invalid\s+size', re.IGNORECASE)


@dataclass(frozen=True)
class ImageConfig:
    aspect_ratio: Optional[str] = None
    image_size: Optional[str] = None

    def with_size(self, image_size: Optional[str]) -> 'ImageConfig':
        return replace(self, image_size=image_size)

    def without_size(self) -> 'ImageConfig':
        return replace(self, image_size=None)

    @property
    def is_empty(self) -> bool:
        return not self.aspect_ratio and not self.image_size


@dataclass(frozen=True)
class ModelNameParams:
    """模型名中已经写死的方向/分辨率（如 gemini-3.0-pro-image-landscape-4k）"""
    detected_ratio: Optional[str] = None
    detected_size: Optional[str] = None


def parse_aspect_ratio(ratio: Optional[str]) -> Optional[float]:
    """解析 "16:9" 为宽/高数值比，auto 或无效返回 None"""
    if not ratio or ratio == 'auto':
        return None
    parts = ratio.split(':')
    if len(parts) != 2:
        return None
    try:
        width, height = float(parts[0]), float(parts[1])
    except ValueError:
        return None
    if height == 0:
        return None
    return width / height


def map_image_size(image_size: Optional[str], aspect_ratio: Optional[str] = None) -> Optional[str]:
    """
    把分辨率档位映射为像素尺寸字符串

    - 已经是 "WxH" 的原样返回
    - 1K: 1024x1024 / 竖版 1024x1536 / 横版 1536x1024
    - 2K、4K: 以 2048、4096 为短边，长边 ×1.5
    - 无法识别的档位原样返回
    """
    if not image_size:
        return None
    if _PIXEL_SIZE.match(image_size):
        return image_size

    normalized = image_size.upper()
    if normalized not in AppConfig.IMAGE_SIZES:
        return image_size

    ratio = parse_aspect_ratio(aspect_ratio)
    is_landscape = ratio is not None and ratio > 1.05
    is_portrait = ratio is not None and ratio < 0.95

    if normalized == '1K':
        if is_portrait:
            return '1024x1536'
        if is_landscape:
            return '1536x1024'
        return '1024x1024'

    base = 2048 if normalized == '2K' else 4096
    long_side = round(base * 1.5)
    if is_portrait:
        return f"{base}x{long_side}"
    if is_landscape:
        return f"{long_side}x{base}"
    return f"{base}x{base}"


def parse_model_name_params(model: str) -> ModelNameParams:
    """
    从模型名解析方向/分辨率后缀

    第三方中转常提供带后缀的模型变体：
        gemini-3.0-pro-image-landscape-4k -> 16:9, 4K
        gemini-2.5-flash-image-portrait   -> 9:16
        xxx-16x9                          -> 16:9
    """
    name = (model or '').lower()
    ratio = None
    if re.search(r'(?:^|[-_])landscape(?:$|[-_])', name):
        ratio = '16:9'
    elif re.search(r'(?:^|[-_])portrait(?:$|[-_])', name):
        ratio = '9:16'
    elif re.search(r'(?:^|[-_])square(?:$|[-_])', name):
        ratio = '1:1'
    else:
        match = re.search(r'(?:^|[-_])(1|2|3|4|5|9|16|21)[x-](1|2|3|4|5|9|16)(?:$|[-_])', name)
        if match:
            candidate = f"{match.group(1)}:{match.group(2)}"
            if candidate in AppConfig.ASPECT_RATIOS:
                ratio = candidate

    size = None
    match = re.search(r'(?:^|[-_])(2k|4k)(?:$|[-_])', name)
    if match:
        size = match.group(1).upper()

    return ModelNameParams(detected_ratio=ratio, detected_size=size)


def build_image_config(aspect_ratio: Optional[str], image_size: Optional[str], model: str) -> ImageConfig:
    """
    根据请求构建图像配置

    - 不支持分辨率的模型不发送 image_size
    - 模型名已决定比例/分辨率时不再发送对应字段，避免与模型名冲突
    - "auto" 比例等同于不指定
    """
    detected = parse_model_name_params(model)
    ratio = None if aspect_ratio == 'auto' else aspect_ratio
    if detected.detected_ratio:
        ratio = None

    size = image_size if model_supports_size(model) else None
    if detected.detected_size:
        size = None

    return ImageConfig(aspect_ratio=ratio, image_size=size)


def is_invalid_size_error(error: BaseException) -> bool:
    return bool(_INVALID_SIZE.search(str(error)))


def render_chat_fields(config: Optional[ImageConfig]) -> Dict[str, str]:
    """chat 接口：档位原样发送，并携带 aspect_ratio"""
    fields = {}
    if config is None:
        return fields
    if config.aspect_ratio:
        fields['aspect_ratio'] = config.aspect_ratio
    if config.image_size:
        fields['size'] = config.image_size
    return fields


def render_images_fields(config: Optional[ImageConfig]) -> Dict[str, str]:
    """images 接口：只接受像素尺寸，不接受 aspect_ratio"""
    fields = {}
    if config is None or not config.image_size:
        return fields
    fields['size'] = map_image_size(config.image_size, config.aspect_ratio) or config.image_size
    return fields


async def negotiate_size(
    send: Callable[[Dict[str, str]], Awaitable[T]],
    config: Optional[ImageConfig],
    render: Callable[[Optional[ImageConfig]], Dict[str, str]],
) -> T:
    """
    带 size 回退的请求

    尝试顺序：请求的 size → 规范像素尺寸 → 省略 size。
    渲染结果与前一次完全相同的尝试会被跳过；只有 size 相关的拒绝才会进入下一步。

    Args:
        send: 接收渲染后字段并发出请求的协程函数
        config: 图像配置
        render: 当前接口风格的字段渲染函数
    """
    candidates = [config]
    if config is not None and config.image_size:
        mapped = map_image_size(config.image_size, config.aspect_ratio)
        if mapped and mapped != config.image_size:
            candidates.append(config.with_size(mapped))
        candidates.append(config.without_size())

    attempts = []
    for candidate in candidates:
        fields = render(candidate)
        if fields not in attempts:
            attempts.append(fields)

    for index, fields in enumerate(attempts):
        try:
            return await send(fields)
        except Exception as error:
            if index == len(attempts) - 1 or not is_invalid_size_error(error):
                raise
            engine_logger.warning(f"服务端拒绝 size={fields.get('size')}，改用 {attempts[index + 1].get('size') or '默认尺寸'} 重试")
    raise RuntimeError('size 协商没有可用的尝试')
