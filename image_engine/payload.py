"""
响应图片提取器

响应结构事先无法确定：可能是流式解码后的结果、多模态 content 数组、
Images API 的 data 数组、Gemini candidates，或者一段夹带图片的文本。
这里按固定优先级依次尝试各个提取函数，第一个命中的结果胜出。

提取结果是 ImageRef：要么是自包含的 data URI / 原始 base64，
要么是需要编排层下载后再编码的外部 URL。
"""

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

from .errors import NoImageFoundError
from .logging_config import log_image_operation, log_provider_message

# 流式解码器放置检测结果的字段
DETECTED_IMAGE_KEY = '_image_data'

RAW_BASE64_MIN_LENGTH = 1000

_DATA_URI = re.compile(r'data:image/[a-zA-Z0-9.+-]+;base64,[A-Za-z0-9+/=]+')
_MARKDOWN_DATA_URI = re.compile(r'!\[[^\]]*?\]\((data:image/[a-zA-Z0-9.+-]+;base64,[A-Za-z0-9+/=]+)\)')
_MARKDOWN_URL = re.compile(r'!\[[^\]]*?\]\((https?://[^\s)]+)\)')
_BARE_IMAGE_URL = re.compile(r'https?://[^\s)]+\.(?:png|jpe?g|gif|webp)(?:\?[^\s)]*)?', re.IGNORECASE)
_RAW_BASE64 = re.compile(r'^[A-Za-z0-9+/=]{%d,}$' % RAW_BASE64_MIN_LENGTH)


@dataclass(frozen=True)
class ImageRef:
    """提取到的图片来源：data URI、原始 base64，或外部 URL（is_url=True）"""
    source: str
    is_url: bool = False

    def to_data_uri(self) -> str:
        """
        归一化为 data URI

        Raises:
            ValueError: 外部 URL 需要先下载，不能直接归一化
        """
        if self.is_url:
            raise ValueError('外部 URL 需要先下载后再编码')
        if self.source.startswith('data:'):
            return self.source
        mime_type = sniff_image_mime(safe_base64_decode(self.source) or b'') or 'image/png'
        return f"data:{mime_type};base64,{self.source}"


# ============================================================================
# 辅助函数
# ============================================================================

def safe_base64_decode(data_str: str) -> Optional[bytes]:
    """安全的base64解码，补齐 padding；失败返回 None"""
    try:
        data_str = data_str.strip()
        missing_padding = len(data_str) % 4
        if missing_padding:
            data_str += '=' * (4 - missing_padding)
        return base64.b64decode(data_str, validate=True)
    except (binascii.Error, ValueError):
        return None


def sniff_image_mime(data: bytes) -> Optional[str]:
    """通过文件头魔数识别常见图片格式，无法识别返回 None"""
    if not data or len(data) < 8:
        return None
    if data[:4] == b'\x89PNG':
        return 'image/png'
    if data[:3] == b'\xff\xd8\xff':
        return 'image/jpeg'
    if data[:4] == b'RIFF' and data[8:12] == b'WEBP':
        return 'image/webp'
    if data[:6] in (b'GIF87a', b'GIF89a'):
        return 'image/gif'
    return None


def is_complete_image(data: bytes) -> bool:
    """检查常见格式的文件尾，识别被截断的图片；无法识别的格式视为完整"""
    mime_type = sniff_image_mime(data)
    if mime_type == 'image/png':
        return data.rstrip(b'\x00').endswith(b'IEND\xaeB`\x82')
    if mime_type == 'image/jpeg':
        return data.rstrip(b'\x00').endswith(b'\xff\xd9')
    if mime_type == 'image/gif':
        return data.endswith(b';')
    if mime_type == 'image/webp':
        return int.from_bytes(data[4:8], 'little') + 8 <= len(data)
    return True


def is_complete_data_uri(source: str) -> bool:
    """data URI 的 base64 能完整解码且图片未被截断"""
    if not source.startswith('data:') or ',' not in source:
        return True
    decoded = safe_base64_decode(source.split(',', 1)[1])
    return bool(decoded) and is_complete_image(decoded)


def _wrap_base64(b64: str, mime_type: Optional[str] = None) -> str:
    """未声明 MIME 时按文件头识别"""
    if not mime_type:
        mime_type = sniff_image_mime(safe_base64_decode(b64) or b'') or 'image/png'
    return f"data:{mime_type};base64,{b64}"


def _is_http_url(value: str) -> bool:
    return value.startswith('http://') or value.startswith('https://')


def _ref_from_url_field(url: str) -> Optional[ImageRef]:
    if not url:
        return None
    if url.startswith('data:'):
        return ImageRef(url)
    if _is_http_url(url):
        return ImageRef(url, is_url=True)
    return None


def extract_image_from_text(text: str) -> Optional[ImageRef]:
    """
    从任意文本中找出图片

    优先级：
    1. 文本中的 data URI
    2. Markdown 图片链接包裹的 data URI
    3. Markdown 图片链接包裹的外部 URL
    4. 以图片扩展名结尾的裸 URL
    5. 足够长的无前缀 base64（解码后需通过文件头校验，避免把普通长串当成图片）
    """
    if not text:
        return None

    match = _DATA_URI.search(text)
    if match:
        return ImageRef(match.group(0))

    match = _MARKDOWN_DATA_URI.search(text)
    if match:
        return ImageRef(match.group(1))

    match = _MARKDOWN_URL.search(text)
    if match:
        return ImageRef(match.group(1), is_url=True)

    match = _BARE_IMAGE_URL.search(text)
    if match:
        return ImageRef(match.group(0), is_url=True)

    candidate = text.strip()
    if _RAW_BASE64.match(candidate):
        decoded = safe_base64_decode(candidate)
        mime_type = sniff_image_mime(decoded or b'')
        if mime_type:
            return ImageRef(_wrap_base64(candidate, mime_type))
        log_provider_message('payload', f"疑似 Raw Base64 (len={len(candidate)}) 文件头验证失败，跳过", "WARNING")

    return None


def extract_image_from_parts(parts: list) -> Optional[ImageRef]:
    """扫描多模态 content 数组中的图片条目"""
    for part in parts:
        if not isinstance(part, dict):
            continue

        image_url = part.get('image_url')
        if isinstance(image_url, dict):
            ref = _ref_from_url_field(image_url.get('url') or '')
            if ref:
                return ref
            if image_url.get('b64_json'):
                return ImageRef(_wrap_base64(image_url['b64_json']))
        elif isinstance(image_url, str):
            ref = _ref_from_url_field(image_url)
            if ref:
                return ref

        if part.get('type') == 'image' and isinstance(part.get('data'), str) and part['data']:
            return ImageRef(_wrap_base64(part['data'], part.get('mime_type')))

        inline = part.get('inline_data') or part.get('inlineData')
        if isinstance(inline, dict) and inline.get('data'):
            mime_type = inline.get('mime_type') or inline.get('mimeType')
            return ImageRef(_wrap_base64(inline['data'], mime_type))

        if part.get('type') == 'text' and isinstance(part.get('text'), str):
            ref = extract_image_from_text(part['text'])
            if ref:
                return ref
    return None


def _first_message(response: dict) -> dict:
    choices = response.get('choices')
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get('message')
        if isinstance(message, dict):
            return message
    return {}


# ============================================================================
# 提取策略（按优先级排列）
# ============================================================================

def _from_detected(response: dict) -> Optional[ImageRef]:
    detected = response.get(DETECTED_IMAGE_KEY)
    if not isinstance(detected, str) or not detected:
        return None
    if _is_http_url(detected):
        return ImageRef(detected, is_url=True)
    return ImageRef(detected)


def _from_content_parts(response: dict) -> Optional[ImageRef]:
    content = _first_message(response).get('content')
    if isinstance(content, list):
        return extract_image_from_parts(content)
    return None


def _from_images_data(response: dict) -> Optional[ImageRef]:
    data = response.get('data')
    if not isinstance(data, list) or not data or not isinstance(data[0], dict):
        return None
    first = data[0]
    if first.get('b64_json'):
        return ImageRef(_wrap_base64(first['b64_json']))
    if first.get('url'):
        return _ref_from_url_field(first['url'])
    return None


def _from_gemini_candidates(response: dict) -> Optional[ImageRef]:
    candidates = response.get('candidates')
    if not isinstance(candidates, list) or not candidates:
        return None
    content = candidates[0].get('content') if isinstance(candidates[0], dict) else None
    parts = content.get('parts') if isinstance(content, dict) else None
    if isinstance(parts, list):
        return extract_image_from_parts(parts)
    return None


def _from_message_images(response: dict) -> Optional[ImageRef]:
    images = _first_message(response).get('images')
    if not isinstance(images, list):
        return None
    for item in images:
        if isinstance(item, str):
            ref = _ref_from_url_field(item) or extract_image_from_text(item)
        elif isinstance(item, dict):
            ref = extract_image_from_parts([item])
        else:
            ref = None
        if ref:
            return ref
    return None


def _from_message_text(response: dict) -> Optional[ImageRef]:
    content = _first_message(response).get('content')
    if isinstance(content, str):
        return extract_image_from_text(content)
    return None


EXTRACTORS: List[Tuple[str, Callable[[dict], Optional[ImageRef]]]] = [
    ('stream-detected', _from_detected),
    ('content-parts', _from_content_parts),
    ('images-api', _from_images_data),
    ('gemini-candidates', _from_gemini_candidates),
    ('message-images', _from_message_images),
    ('message-text', _from_message_text),
]


def _is_complete(ref: ImageRef) -> bool:
    return ref.is_url or is_complete_data_uri(ref.to_data_uri())


def _scan(response: Any) -> Tuple[Optional[ImageRef], bool]:
    """返回 (第一个完整的图片, 是否遇到过被截断的图片)"""
    if not isinstance(response, dict):
        return None, False
    truncated = False
    for name, extractor in EXTRACTORS:
        ref = extractor(response)
        if not ref:
            continue
        if not _is_complete(ref):
            log_provider_message('payload', f"策略={name} 命中的图片数据不完整（{len(ref.source)}字符），跳过", "WARNING")
            truncated = True
            continue
        log_image_operation("提取成功", f"策略={name}, {'外部URL' if ref.is_url else f'{len(ref.source)}字符'}")
        return ref, truncated
    return None, truncated


def find_image(response: Any) -> Optional[ImageRef]:
    """按优先级尝试所有提取策略，返回第一个命中且数据完整的 ImageRef；都未命中返回 None"""
    return _scan(response)[0]


def extract_image(response: Any) -> ImageRef:
    """
    从完整响应中提取图片

    被截断的 data URI / base64 不会被当作结果返回。

    Raises:
        NoImageFoundError: 响应中没有可识别的完整图片（终态错误，不重试）
    """
    ref, truncated = _scan(response)
    if ref:
        return ref
    if truncated:
        raise NoImageFoundError('No complete image found in response: image data is truncated')

    content = _first_message(response).get('content') if isinstance(response, dict) else None
    if isinstance(content, str) and content.strip():
        raise NoImageFoundError(f"No image found in response; provider returned text: {content.strip()[:120]}")
    raise NoImageFoundError('No image found in response')
