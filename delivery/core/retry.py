# 渐进式发布控制器 - 重试
"""异步重试器：指数退避，可选总时限"""

import asyncio
from typing import Any, Callable, Coroutine, Optional, Tuple, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


class AsyncRetrier:
    """异步重试器"""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        retryable_exceptions: Tuple[type, ...] = (Exception,),
        deadline: Optional[float] = None
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.retryable_exceptions = retryable_exceptions
        # 总时限（秒），包含所有尝试与等待
        self.deadline = deadline

    def delay_for(self, attempt: int) -> float:
        """第attempt次重试前的等待时间"""
        return min(
            self.base_delay * (self.exponential_base ** attempt),
            self.max_delay
        )

    async def execute(
        self,
        fn: Callable[[], Coroutine[Any, Any, T]],
        on_retry: Optional[Callable[[int, BaseException], None]] = None
    ) -> T:
        """执行并重试"""
        loop = asyncio.get_running_loop()
        started = loop.time()
        last_exception: Optional[BaseException] = None

        for attempt in range(self.max_retries + 1):
            remaining = self._remaining(loop.time() - started)
            if remaining is not None and remaining <= 0:
                break

            try:
                if remaining is None:
                    return await fn()
                return await asyncio.wait_for(fn(), timeout=remaining)
            except asyncio.TimeoutError as e:
                last_exception = e
            except self.retryable_exceptions as e:
                last_exception = e

            if attempt >= self.max_retries:
                break

            delay = self.delay_for(attempt)
            remaining = self._remaining(loop.time() - started)
            if remaining is not None and delay >= remaining:
                logger.warning(
                    "重试超出总时限，放弃",
                    attempt=attempt + 1,
                    deadline=self.deadline,
                    error=str(last_exception),
                )
                break

            if on_retry:
                on_retry(attempt + 1, last_exception)

            logger.warning(
                "调用失败，准备重试",
                attempt=attempt + 1,
                max_retries=self.max_retries,
                delay=round(delay, 2),
                error=str(last_exception),
            )
            await asyncio.sleep(delay)

        if last_exception is None:
            last_exception = asyncio.TimeoutError("重试总时限已耗尽")
        raise last_exception

    def _remaining(self, elapsed: float) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - elapsed
