# vqa_gateway/core/lazy.py
import asyncio
import logging
from typing import Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LazyResource(Generic[T]):
    """
    进程级的惰性单例。

    第一次调用 get() 时执行 loader，之后所有调用方共享同一个实例。
    并发的首次调用只会触发一次加载，其余调用方等待同一次加载的结果。
    加载失败不会被缓存，下一次调用会重新尝试。
    """

    def __init__(self, loader: Callable[[], T], *, name: str, in_thread: bool = True):
        self._loader = loader
        self._name = name
        self._in_thread = in_thread
        self._lock = asyncio.Lock()
        self._value: Optional[T] = None
        self._loaded = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def get(self) -> T:
        if self._loaded:
            return self._value  # type: ignore[return-value]

        async with self._lock:
            # 等锁期间可能已经有其他调用方完成了加载
            if not self._loaded:
                logger.info(f"正在初始化 '{self._name}' ...")
                if self._in_thread:
                    value = await asyncio.to_thread(self._loader)
                else:
                    value = self._loader()
                self._value = value
                self._loaded = True
                logger.info(f"'{self._name}' 初始化完成。")
        return self._value  # type: ignore[return-value]

    def peek(self) -> Optional[T]:
        """返回已加载的实例，未加载时返回 None，不触发加载。"""
        return self._value if self._loaded else None

    def clear(self) -> None:
        self._value = None
        self._loaded = False
