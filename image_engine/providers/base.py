from abc import ABC, abstractmethod
from typing import Optional

from ..cancellation import CancelToken
from ..http_client import ProviderClient
from ..models import GenerationRequest
from ..payload import ImageRef


class ImageProvider(ABC):
    name = 'base'

    def __init__(self, client: ProviderClient):
        self.client = client

    @abstractmethod
    async def fetch_response(self, request: GenerationRequest,
                             token: Optional[CancelToken] = None) -> dict:
        """
        发起一次生成请求，返回完整的响应 dict（一次尝试）

        此方法不做重试，重试由编排层的 tenacity 策略负责；
        内部的端点/参数回退（size、response_format、端点不支持）属于同一次尝试。

        Args:
            request: 生成请求
            token: 共享取消令牌

        Returns:
            dict: 交给 payload.extract_image 处理的响应

        Raises:
            RuntimeError: 传输或服务端失败（是否重试由分类器决定）
            ValueError: 参数错误或内容审核拒绝（不重试）
        """


def reference_data_uris(request: GenerationRequest) -> list:
    """参考图统一为 data URI（原始 base64 通过文件头识别 MIME）"""
    return [ImageRef(image).to_data_uri() for image in request.reference_images]


def split_data_uri(data_uri: str):
    """拆分 data URI 为 (mime_type, base64)"""
    if data_uri.startswith('data:') and ';base64,' in data_uri:
        header, data = data_uri.split(';base64,', 1)
        return header[5:] or 'image/png', data
    return 'image/png', data_uri
