"""
HTTP 客户端

每个 ProviderConfig 对应一个 httpx.AsyncClient：
- post_json: 发送 JSON 请求并把响应（JSON 或事件流）统一转换为 dict
- fetch_image_as_data_uri: 下载外部图片 URL 并编码为 data URI
- guarded: 让任意协程受"超时 + 取消令牌"组合信号约束

整个 HTTP 交换（响应头 + 完整响应体）共享同一个截止时间。
"""

import base64
import json
from io import BytesIO
from typing import Awaitable, Optional, Tuple, TypeVar

import httpx
from PIL import Image, UnidentifiedImageError

from .cancellation import CancelToken, TimeoutSignal, race_with_signal
from .config import AppConfig
from .errors import (
    GenerationCancelled,
    ImageDownloadError,
    OperationAborted,
    ProviderHTTPError,
    RequestTimeoutError,
    TransportError,
)
from .logging_config import api_logger, log_api_call, log_error, log_image_operation, truncate_for_log
from .models import ProviderConfig
from .stream_decoder import StreamDecoder, decode_stream

T = TypeVar('T')

ERROR_BODY_LIMIT = 500


class ProviderClient:
    """
    单个服务端配置的异步 HTTP 客户端

    Example:
        async with ProviderClient(config) as client:
            response = await client.post_json('/v1/chat/completions', body, token)
    """

    def __init__(self, provider: ProviderConfig, *,
                 timeout: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.provider = provider
        self.timeout = AppConfig.REQUEST_TIMEOUT_SECONDS if timeout is None else timeout
        # 超时由 TimeoutSignal 统一控制，httpx 自身不再设置超时
        self._http = httpx.AsyncClient(timeout=None, transport=transport, follow_redirects=True)

    async def __aenter__(self) -> 'ProviderClient':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # 信号约束
    # ------------------------------------------------------------------

    async def guarded(self, aw: Awaitable[T], token: Optional[CancelToken] = None,
                      timeout: Optional[float] = None) -> T:
        """
        在"超时 + 取消令牌"约束下等待 aw

        Raises:
            RequestTimeoutError: 计时器先于令牌触发
            GenerationCancelled: 令牌被取消
        """
        with TimeoutSignal(token, self.timeout if timeout is None else timeout) as ts:
            try:
                return await race_with_signal(aw, ts.signal)
            except OperationAborted:
                if ts.did_timeout():
                    raise RequestTimeoutError()
                raise GenerationCancelled()

    # ------------------------------------------------------------------
    # JSON / 事件流请求
    # ------------------------------------------------------------------

    async def post_json(self, path: str, body: dict,
                        token: Optional[CancelToken] = None) -> dict:
        """
        POST JSON 请求

        Returns:
            dict: 解析后的响应；事件流响应会被解码为 OpenAI 风格的完整响应

        Raises:
            ProviderHTTPError: 非 2xx 状态码
            TransportError: 网络层失败
            ProviderStreamError: 事件流中出现错误对象
            RequestTimeoutError / GenerationCancelled: 超时或被取消
        """
        url = self.provider.url_for(path)
        log_api_call('openai', 'POST', f"{url}, stream={bool(body.get('stream'))}")
        return await self.guarded(self._exchange(url, body), token)

    async def request_json(self, method: str, path: str, body: Optional[dict] = None,
                           params: Optional[dict] = None) -> dict:
        """
        不受信号约束的单次交换

        用于由多次请求组成的流程（如创建任务后轮询），调用方用 guarded 包住整个流程，
        让超时覆盖全部请求与等待。
        """
        url = self.provider.url_for(path)
        log_api_call(self.provider.scope or 'http', method, url)
        return await self._exchange(url, body, method=method, params=params)

    async def _exchange(self, url: str, body: Optional[dict], method: str = 'POST',
                        params: Optional[dict] = None) -> dict:
        headers = {
            'Authorization': f"Bearer {self.provider.api_key}",
            'Content-Type': 'application/json',
        }
        try:
            async with self._http.stream(method, url, json=body, params=params, headers=headers) as response:
                if not response.is_success:
                    raw = await response.aread()
                    text = raw.decode('utf-8', errors='replace')[:ERROR_BODY_LIMIT]
                    log_error('HTTP错误', f"状态码 {response.status_code}", f"URL: {url}, 响应: {text[:200]}")
                    raise ProviderHTTPError(response.status_code, text)

                content_type = response.headers.get('content-type', '').lower()
                if 'json' in content_type:
                    raw = await response.aread()
                    return _parse_json_body(raw)

                result = await decode_stream(response.aiter_bytes())
                return result.to_response()
        except httpx.TransportError as exc:
            log_error('网络请求失败', str(exc), f"URL: {url}")
            raise TransportError(f"网络请求失败: {exc}") from exc

    # ------------------------------------------------------------------
    # 外部图片下载
    # ------------------------------------------------------------------

    async def fetch_image_as_data_uri(self, url: str,
                                      token: Optional[CancelToken] = None) -> str:
        """
        下载外部图片并编码为 data URI

        MIME 类型优先取响应头，响应头不是 image/* 时用 Pillow 识别。

        Raises:
            ImageDownloadError: 下载失败或内容不是图片（可重试）
        """
        log_image_operation('开始下载图片', url[:80])
        data, content_type = await self.guarded(
            self._download(url), token, timeout=AppConfig.DOWNLOAD_TIMEOUT_SECONDS
        )
        mime_type = content_type.split(';')[0].strip().lower()
        if not mime_type.startswith('image/'):
            mime_type = detect_image_mime(data)
        log_image_operation('URL下载成功', f"{len(data)}字节, {mime_type}")
        return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"

    async def _download(self, url: str) -> Tuple[bytes, str]:
        try:
            response = await self._http.get(url)
        except httpx.TransportError as exc:
            raise ImageDownloadError(f"图片下载失败: {exc}") from exc
        if not response.is_success:
            raise ImageDownloadError(f"图片下载失败: HTTP {response.status_code}")
        if not response.content:
            raise ImageDownloadError('图片下载失败: 响应为空')
        return response.content, response.headers.get('content-type', '')


def _parse_json_body(raw: bytes) -> dict:
    """声明为 JSON 的响应体解析失败时，按事件流再解析一次（部分中转的 content-type 不可靠）"""
    try:
        parsed = json.loads(raw)
    except ValueError:
        api_logger.warning(f"JSON 解析失败，按事件流处理: {truncate_for_log(raw[:200])}")
        decoder = StreamDecoder()
        decoder.feed(raw)
        return decoder.finish().to_response()
    if not isinstance(parsed, dict):
        raise TransportError(f"响应格式异常: {truncate_for_log(parsed)}")
    return parsed


def detect_image_mime(data: bytes) -> str:
    """
    使用 Pillow 识别图片格式

    Raises:
        ImageDownloadError: 内容无法识别为图片
    """
    try:
        with Image.open(BytesIO(data)) as image:
            image_format = image.format
    except (UnidentifiedImageError, OSError) as exc:
        raise ImageDownloadError(f"下载的内容不是有效图片: {exc}") from exc
    return Image.MIME.get(image_format, 'image/png')
