"""
生成引擎异常类型

沿用原有约定：ValueError 表示内容/参数问题（永不重试），
RuntimeError 系列表示传输或服务端问题（由重试分类器决定是否重试）。
"""

# 面向用户的固定文案，UI 依赖它们区分"超时"和"用户主动停止"
TIMEOUT_MESSAGE = '请求超时'
CANCELLED_MESSAGE = '已停止'
UNKNOWN_ERROR_MESSAGE = 'Unknown error'


class GenerationError(RuntimeError):
    """引擎内部异常基类"""


class ProviderHTTPError(GenerationError):
    """服务端返回非 2xx 状态码"""

    def __init__(self, status_code: int, body: str = ''):
        self.status_code = status_code
        self.body = body
        super().__init__(f"API error {status_code}: {body}")


class TransportError(GenerationError):
    """网络层失败（连接中断、DNS 失败等）"""


class ImageDownloadError(GenerationError):
    """外部图片 URL 下载失败"""


class OperationAborted(GenerationError):
    """组合信号已触发，当前操作被放弃"""

    def __init__(self, message: str = 'Aborted'):
        super().__init__(message)


class RequestTimeoutError(GenerationError):
    def __init__(self, message: str = TIMEOUT_MESSAGE):
        super().__init__(message)


class GenerationCancelled(GenerationError):
    def __init__(self, message: str = CANCELLED_MESSAGE):
        super().__init__(message)


class ProviderStreamError(ValueError):
    """流式响应中途返回的错误对象（保留服务端原始信息）"""

    def __init__(self, provider_message: str):
        self.provider_message = provider_message
        super().__init__(f"API stream error: {provider_message}")


class NoImageFoundError(ValueError):
    """响应格式正常，但其中没有可识别的图片"""
