"""
统一日志配置模块
提供标准化的日志格式和配置
支持控制台和文件双输出模式（文件输出可通过 LOG_TO_FILE=0 关闭）
"""

import logging
import sys
import os
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler

from .config import AppConfig


class EngineFormatter(logging.Formatter):
    """自定义格式化器，生成类似 Flask 开发服务器的日志格式"""

    def format(self, record):
        timestamp = datetime.now().strftime("%d/%b/%Y %H:%M:%S")

        level_prefix = {
            'INFO': '',
            'WARNING': '[WARNING] ',
            'ERROR': '[ERROR] ',
            'DEBUG': '[DEBUG] '
        }.get(record.levelname, '')

        if getattr(record, 'http_format', False):
            # 127.0.0.1 - - [22/Nov/2025 13:38:08] "POST /api/generate HTTP/1.1" 200 -
            return f"{record.remote_addr} - - [{timestamp}] \"{record.method} {record.path} HTTP/1.1\" {record.status_code} -"
        return f"{timestamp} - {level_prefix}{record.getMessage()}"


def setup_logger(name: str, level: int = logging.INFO,
                 log_to_file: bool = AppConfig.LOG_TO_FILE,
                 log_dir: str = AppConfig.LOG_DIR) -> logging.Logger:
    """设置并返回一个配置好的日志记录器"""
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # 避免重复添加处理器
    if not logger.handlers:
        formatter = EngineFormatter()

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

        if log_to_file:
            try:
                os.makedirs(log_dir, exist_ok=True)
                file_handler = TimedRotatingFileHandler(
                    filename=os.path.join(log_dir, 'engine.log'),
                    when='midnight',
                    interval=1,
                    backupCount=0,
                    encoding='utf-8',
                    delay=True        # 延迟文件创建直到第一次写入
                )
                file_handler.setLevel(level)
                file_handler.setFormatter(formatter)
                file_handler.suffix = "%Y-%m-%d"
                logger.addHandler(file_handler)
            except OSError as e:
                logger.warning(f"无法创建文件日志处理器: {e}，仅使用控制台输出")

    return logger


# 不同类型的日志记录器
flask_logger = setup_logger('flask_app')
api_logger = setup_logger('api_calls')
engine_logger = setup_logger('generation_engine')
stream_logger = setup_logger('stream_decoder')
retry_logger = setup_logger('retry_strategy')
image_logger = setup_logger('image_processing')
error_logger = setup_logger('error_handler', logging.ERROR)

_PROVIDER_LOGGERS = {
    'openai': setup_logger('openai_provider'),
    'gemini': setup_logger('gemini_provider'),
}


def log_http_request(remote_addr: str, method: str, path: str, status_code: int):
    """记录HTTP请求日志"""
    record = logging.LogRecord(
        name='flask_app',
        level=logging.INFO,
        pathname='',
        lineno=0,
        msg='',
        args=(),
        exc_info=None
    )
    record.remote_addr = remote_addr
    record.method = method
    record.path = path
    record.status_code = status_code
    record.http_format = True

    flask_logger.handle(record)


def log_api_call(provider: str, operation: str, details: str = ""):
    """记录API调用日志"""
    message = f"{provider} API调用 - {operation}"
    if details:
        message += f": {details}"
    api_logger.info(message)


def log_image_operation(operation: str, details: str = ""):
    """记录图片操作日志"""
    message = f"图片{operation}"
    if details:
        message += f": {details}"
    image_logger.info(message)


def log_provider_message(provider: str, message: str, level: str = "INFO"):
    """记录Provider特定的消息，未知 provider 落到 engine_logger"""
    logger = _PROVIDER_LOGGERS.get(provider.lower(), engine_logger)
    log_method = getattr(logger, level.lower(), logger.info)
    log_method(message)


def log_error(error_type: str, message: str, details: str = ""):
    """记录错误日志"""
    error_message = f"{error_type}: {message}"
    if details:
        error_message += f" - {details}"
    error_logger.error(error_message)


def truncate_for_log(data, limit: int = 500):
    """
    递归截断字典/列表中的长字符串，避免 base64 图片刷屏

    Args:
        data: 任意类型的数据（字典/列表/字符串等）
        limit: 字符串最大保留长度

    Returns:
        处理后的数据（超过 limit 的字符串被替换为占位描述）
    """
    if isinstance(data, dict):
        return {key: truncate_for_log(value, limit) for key, value in data.items()}
    if isinstance(data, list):
        return [truncate_for_log(item, limit) for item in data]
    if isinstance(data, str) and len(data) > limit:
        return f"<Long string (len={len(data)})...truncated>"
    return data
