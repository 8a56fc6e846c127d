"""
流式响应解码器

消费分块的 event-stream 响应体：
- 网络读取边界与事件边界无关，字节先进入持久缓冲区，只取出以空行结尾的完整事件
- CRLF 统一转换为 LF 后再查找分隔符
- 任何事件一旦包含图片即记下（先到先得），但继续读到流结束以释放连接
- 流结束后处理缓冲区残留：可能是没有以空行结尾的最后一个事件，也可能根本不是 SSE
- 流中途出现的 error 对象最终以 ProviderStreamError 抛出，不会被已累积的文本掩盖
"""

import codecs
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

from .cancellation import CancelToken, race_with_signal
from .errors import OperationAborted, ProviderStreamError
from .logging_config import stream_logger
from .payload import (
    DETECTED_IMAGE_KEY,
    ImageRef,
    extract_image_from_parts,
    extract_image_from_text,
    find_image,
    is_complete_data_uri,
)

_EVENT_SEPARATOR = '\n\n'
_DONE_MARKER = '[DONE]'
_EOF = object()


@dataclass(frozen=True)
class StreamResult:
    text: str
    image: Optional[ImageRef]

    def to_response(self) -> dict:
        """转换为 OpenAI 风格的完整响应，供图片提取器继续处理"""
        image_source = self.image.source if self.image else None
        response = {
            'choices': [{
                'message': {'role': 'assistant', 'content': image_source or self.text},
                'finish_reason': 'stop',
            }],
        }
        if image_source:
            response[DETECTED_IMAGE_KEY] = image_source
        return response


def _data_lines(raw_event: str):
    return [line[5:].lstrip() for line in raw_event.split('\n') if line.startswith('data:')]


class StreamDecoder:
    """
    增量解码器：feed() 喂入任意切分的字节块，finish() 得到最终结果

    同一段逻辑事件流无论如何切分（包括逐字节喂入），
    最终的累积文本与检测到的图片都完全一致。
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        self._buffer = ''
        self._text_parts = []
        self._image: Optional[ImageRef] = None
        self._error: Optional[str] = None
        self._finished = False
        self.event_count = 0

    @property
    def image(self) -> Optional[ImageRef]:
        return self._image

    @property
    def text(self) -> str:
        return ''.join(self._text_parts)

    def feed(self, chunk: bytes) -> None:
        if self._finished:
            raise RuntimeError('StreamDecoder 已结束，不能继续写入')
        self._buffer += self._decoder.decode(chunk)
        self._buffer = self._buffer.replace('\r\n', '\n')

        while True:
            sep_index = self._buffer.find(_EVENT_SEPARATOR)
            if sep_index == -1:
                break
            raw_event = self._buffer[:sep_index]
            self._buffer = self._buffer[sep_index + len(_EVENT_SEPARATOR):]

            lines = _data_lines(raw_event)
            if not lines:
                continue
            self._process_event_data('\n'.join(lines).strip())

    def finish(self) -> StreamResult:
        """
        冲刷解码器并处理缓冲区残留

        Raises:
            ProviderStreamError: 流中出现过服务端错误对象
        """
        if not self._finished:
            self._finished = True
            self._buffer += self._decoder.decode(b'', final=True)
            self._buffer = self._buffer.replace('\r\n', '\n')
            self._process_tail(self._buffer.strip())
            self._buffer = ''

        if self._error is not None:
            raise ProviderStreamError(self._error)

        text = self.text
        if self._image is None and text:
            # 图片可能被拆成多个 delta，只有拼接后才能识别
            self._remember_image(extract_image_from_text(text))

        stream_logger.info(
            f"流式响应完成: 事件数={self.event_count}, 文本长度={len(text)}, "
            f"图片={'有' if self._image else '无'}"
        )
        return StreamResult(text=text, image=self._image)

    # ------------------------------------------------------------------

    def _process_tail(self, remaining: str) -> None:
        if not remaining:
            return
        lines = _data_lines(remaining)
        if lines:
            # 残留里可能有多条 data 行，逐行处理避免拼成无效 JSON
            for line in lines:
                self._process_event_data(line.strip())
            return

        ref = extract_image_from_text(remaining)
        if ref:
            self._remember_image(ref)
        else:
            self._process_event_data(remaining)

    def _remember_image(self, ref: Optional[ImageRef]) -> bool:
        if ref is None:
            return False
        if not ref.is_url and not is_complete_data_uri(ref.to_data_uri()):
            # 不完整的图片不占用"先到先得"的位置
            stream_logger.debug(f"跳过不完整的图片数据: {len(ref.source)}字符")
            return False
        if self._image is None:
            self._image = ref
            stream_logger.info(f"流中检测到图片: {'外部URL' if ref.is_url else f'{len(ref.source)}字符'}")
        return True

    def _append_text(self, text: str) -> None:
        # 被拆到多个 delta 的 data URI 在这里不完整，留给 finish() 在拼接后的文本中识别
        if not self._remember_image(extract_image_from_text(text)):
            self._text_parts.append(text)

    def _process_event_data(self, data: str) -> None:
        if not data or data == _DONE_MARKER:
            return
        self.event_count += 1

        try:
            parsed = json.loads(data)
        except ValueError:
            # 非 JSON 的 data 负载：有些中转直接推送图片链接或 base64
            if not self._remember_image(extract_image_from_text(data)):
                stream_logger.debug(f"跳过非 JSON 事件: {data[:80]}")
            return

        if not isinstance(parsed, dict):
            return

        error = parsed.get('error')
        if error:
            message = error.get('message') if isinstance(error, dict) else str(error)
            if self._error is None:
                self._error = message or json.dumps(error, ensure_ascii=False)
                stream_logger.warning(f"流中出现错误对象: {self._error[:200]}")
            return

        choices = parsed.get('choices')
        if not isinstance(choices, list) or not choices:
            # 整个事件本身就是一个完整响应（Images API / Gemini 格式）
            self._remember_image(find_image(parsed))
            return

        choice = choices[0] if isinstance(choices[0], dict) else {}
        self._process_delta(choice.get('delta') or {})

        message = choice.get('message')
        if isinstance(message, dict):
            content = message.get('content')
            if isinstance(content, str) and content:
                self._append_text(content)
            elif isinstance(content, list):
                self._remember_image(extract_image_from_parts(content))
            if message.get('images'):
                self._remember_image(find_image({'choices': [{'message': {'images': message['images']}}]}))

    def _process_delta(self, delta: Any) -> None:
        if not isinstance(delta, dict):
            return

        content = delta.get('content')
        if isinstance(content, str) and content:
            self._append_text(content)
        elif isinstance(content, list):
            self._remember_image(extract_image_from_parts(content))

        image_url = delta.get('image_url')
        if isinstance(image_url, dict) and image_url.get('url'):
            self._remember_image(extract_image_from_parts([{'image_url': image_url}]))

        image = delta.get('image')
        if isinstance(image, str) and image:
            self._remember_image(
                extract_image_from_parts([{'image_url': {'url': image}}])
                or extract_image_from_text(image)
                or ImageRef(image)
            )

        images = delta.get('images')
        if isinstance(images, list):
            self._remember_image(find_image({'choices': [{'message': {'images': images}}]}))

        multi_mod_content = delta.get('multi_mod_content')
        if isinstance(multi_mod_content, list):
            self._remember_image(extract_image_from_parts(multi_mod_content))


async def decode_stream(chunks: AsyncIterator[bytes],
                        signal: Optional[CancelToken] = None) -> StreamResult:
    """
    从异步字节迭代器读取整个事件流

    Raises:
        OperationAborted: 读取过程中信号触发
        ProviderStreamError: 流中出现过服务端错误对象
    """
    decoder = StreamDecoder()
    iterator = chunks.__aiter__()
    while True:
        if signal is not None and signal.cancelled:
            raise OperationAborted()
        chunk = await race_with_signal(_next_chunk(iterator), signal)
        if chunk is _EOF:
            break
        decoder.feed(chunk)
    return decoder.finish()


async def _next_chunk(iterator: AsyncIterator[bytes]):
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _EOF
