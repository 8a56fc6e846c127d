"""
有界并发执行器

在单个事件循环里并发执行一组互相独立的异步任务，同时在途的任务数不超过上限。
结果带上任务的原始下标，调用方据此恢复请求顺序。
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from .cancellation import CancelToken
from .logging_config import engine_logger, log_error

T = TypeVar('T')


async def run_with_concurrency(
    units: Sequence[Callable[[], Awaitable[T]]],
    max_concurrency: int,
    token: Optional[CancelToken] = None
) -> List[Tuple[int, T]]:
    """
    并发执行 units，最多同时运行 max_concurrency 个

    Args:
        units: 无参异步函数列表，每个函数自行处理成功/失败并返回终态结果
        max_concurrency: 并发上限（小于 1 时按 1 处理）
        token: 共享取消令牌；触发后不再启动新任务，已在途的任务自然结束

    Returns:
        List[Tuple[int, T]]: (原始下标, 结果)，按完成顺序排列；未启动的任务不出现在结果中

    Raises:
        Exception: 某个任务抛出异常时，待所有在途任务结束后重新抛出第一个异常
    """
    limit = max(1, int(max_concurrency))
    in_flight: Dict[asyncio.Future, int] = {}
    results: List[Tuple[int, T]] = []
    first_error: Optional[BaseException] = None
    next_index = 0

    def collect(done):
        nonlocal first_error
        for task in done:
            index = in_flight.pop(task)
            if task.exception() is not None:
                log_error('并发任务异常', f"第{index + 1}个任务未自行处理异常", str(task.exception()))
                if first_error is None:
                    first_error = task.exception()
                continue
            results.append((index, task.result()))

    while next_index < len(units) and not (token and token.cancelled):
        while len(in_flight) < limit and next_index < len(units):
            if token and token.cancelled:
                break
            in_flight[asyncio.ensure_future(units[next_index]())] = next_index
            next_index += 1

        if in_flight:
            done, _ = await asyncio.wait(set(in_flight), return_when=asyncio.FIRST_COMPLETED)
            collect(done)

    if next_index < len(units):
        engine_logger.info(f"已取消，剩余 {len(units) - next_index} 个任务未启动")

    if in_flight:
        done, _ = await asyncio.wait(set(in_flight))
        collect(done)

    if first_error is not None:
        raise first_error
    return results
