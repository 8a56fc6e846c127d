"""
协作式取消与超时信号

- CancelToken: 单向的取消令牌，所有并发中的生成单元共享同一个实例
- TimeoutSignal: 将外部令牌与截止时间组合成一个有效信号，并能区分"超时"与"用户取消"
- race_with_signal: 让任意 awaitable 与信号赛跑，信号先触发则取消该操作
"""

import asyncio
from typing import Awaitable, Callable, List, Optional, TypeVar

from .errors import OperationAborted

T = TypeVar('T')


class CancelToken:
    """一次性取消令牌：只能从"未取消"变为"已取消"，不可撤回"""

    def __init__(self):
        self._event = asyncio.Event()
        self._listeners: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        for listener in list(self._listeners):
            listener()
        self._listeners.clear()

    def add_listener(self, listener: Callable[[], None]) -> None:
        """注册取消回调；令牌已取消时立即回调"""
        if self.cancelled:
            listener()
            return
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationAborted()

    async def sleep(self, seconds: float) -> None:
        """可被取消的等待，令牌触发时抛出 OperationAborted"""
        self.raise_if_cancelled()
        await race_with_signal(asyncio.sleep(seconds), self)


class TimeoutSignal:
    """
    外部令牌 + 超时计时器 = 一个组合信号

    用法::

        with TimeoutSignal(token, 60) as ts:
            await race_with_signal(do_request(), ts.signal)

    未配置超时时，ts.signal 就是外部令牌本身（零开销）。
    cleanup() 必须在每条退出路径上调用（上下文管理器会自动调用），
    用于释放计时器与外部令牌上的监听器；重复调用无副作用。
    """

    def __init__(self, token: Optional[CancelToken] = None, timeout: Optional[float] = None):
        self._parent = token
        self._timed_out = False
        self._timer: Optional[asyncio.TimerHandle] = None
        self._cleaned = False

        if not timeout or timeout <= 0:
            self.signal = token
            return

        self.signal = CancelToken()
        if token is not None:
            # 外部令牌已取消时 add_listener 会立即回调，组合信号随即进入取消状态
            token.add_listener(self._on_parent_cancel)
        if not self.signal.cancelled:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(timeout, self._on_timeout)

    def _on_parent_cancel(self) -> None:
        self.signal.cancel()

    def _on_timeout(self) -> None:
        # 只有计时器先于外部令牌触发时才算超时
        if self.signal.cancelled:
            return
        self._timed_out = True
        self.signal.cancel()

    def did_timeout(self) -> bool:
        return self._timed_out

    def cleanup(self) -> None:
        if self._cleaned:
            return
        self._cleaned = True
        if self._timer is not None:
            self._timer.cancel()
        if self._parent is not None and self.signal is not self._parent:
            self._parent.remove_listener(self._on_parent_cancel)

    def __enter__(self) -> 'TimeoutSignal':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()


async def race_with_signal(aw: Awaitable[T], signal: Optional[CancelToken]) -> T:
    """
    等待 aw 完成；如果 signal 先触发，取消 aw 并抛出 OperationAborted

    已完成的结果优先：两者同时就绪时返回结果而不是放弃。
    """
    if signal is None:
        return await aw

    if signal.cancelled:
        if asyncio.iscoroutine(aw):
            aw.close()
        raise OperationAborted()
    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(signal.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task.done():
        return task.result()

    task.cancel()
    # 等待被取消的任务真正退出，让 httpx 等资源有机会关闭连接
    await asyncio.gather(task, return_exceptions=True)
    raise OperationAborted()
