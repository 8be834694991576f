"""
重试模块
负责网络相关操作的指数退避重试和重连
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from telethon.errors import FloodWaitError

from archiver.client import AuthenticationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_MARKERS = ("NETWORK", "CONNECTION")


class RetryExhaustedError(Exception):
    """
    重试次数用尽

    Attributes:
        operation: 操作描述
        attempts: 实际尝试次数
        last_error: 最后一次的异常
    """

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        super().__init__(
            f"{operation} 在 {attempts} 次尝试后仍然失败: {last_error}"
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


def is_transient(error: BaseException) -> bool:
    """
    判断异常是否为可重试的网络类错误

    Args:
        error: 捕获到的异常

    Returns:
        是否可重试
    """
    if isinstance(error, RetryExhaustedError):
        return False
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    if isinstance(error, FloodWaitError):
        return True

    message = str(error).upper()
    if message == "TIMEOUT":
        return True
    return any(marker in message for marker in TRANSIENT_MARKERS)


@dataclass(frozen=True)
class RetryPolicy:
    """
    重试策略

    Attributes:
        max_retries: 首次尝试之后的最大重试次数
        base_delay: 指数退避基数（秒）
        max_delay: 单次等待上限（秒）
        fixed_delay: 设置后使用固定间隔而不是指数退避
    """

    max_retries: int = 5
    base_delay: float = 3.0
    max_delay: float = 30.0
    fixed_delay: Optional[float] = None

    def delay_for(self, attempt: int) -> float:
        """
        计算第attempt次重试前的等待时间

        Args:
            attempt: 从0开始的重试序号

        Returns:
            等待秒数
        """
        if self.fixed_delay is not None:
            return min(self.fixed_delay, self.max_delay)
        return min(self.base_delay * (2**attempt), self.max_delay)


class RetryController:
    """
    重试控制器

    对可重试错误按策略退避重试，其他错误立即抛出

    Attributes:
        policy: 重试策略
        retryable: 判断异常是否可重试的函数
    """

    def __init__(
        self,
        policy: RetryPolicy,
        retryable: Callable[[BaseException], bool] = is_transient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        初始化重试控制器

        Args:
            policy: 重试策略
            retryable: 可重试判断函数
            sleep: 异步等待函数（测试时可替换）
        """
        self.policy = policy
        self.retryable = retryable
        self._sleep = sleep

    def _wait_time(self, attempt: int, error: BaseException) -> float:
        delay = self.policy.delay_for(attempt)
        if isinstance(error, FloodWaitError):
            # 服务器要求的等待时间不能缩短
            delay = max(delay, float(error.seconds))
        return delay

    async def _reconnect(
        self, reconnect: Callable[[], Awaitable[None]], description: str
    ) -> None:
        try:
            await reconnect()
        except AuthenticationError:
            raise
        except Exception as e:
            logger.error("%s: 重连失败，仍将继续重试: %s", description, e)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str,
        reconnect: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> T:
        """
        执行操作并在可重试错误时退避重试

        Args:
            operation: 无参数的异步操作工厂，每次尝试调用一次
            description: 用于日志的操作描述（应包含频道ID）
            reconnect: 每次重试前调用的重连钩子

        Returns:
            操作的返回值

        Raises:
            RetryExhaustedError: 重试次数用尽
        """
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as e:
                if not self.retryable(e):
                    raise

                if attempt >= self.policy.max_retries:
                    logger.error(
                        "%s: 已达到最大重试次数 (%d)，放弃: %s",
                        description,
                        self.policy.max_retries,
                        e,
                    )
                    raise RetryExhaustedError(description, attempt + 1, e) from e

                delay = self._wait_time(attempt, e)
                logger.warning(
                    "%s: 出现可重试错误，%.1f 秒后重试 (第 %d/%d 次): %s",
                    description,
                    delay,
                    attempt + 1,
                    self.policy.max_retries,
                    e,
                )
                await self._sleep(delay)

                if reconnect is not None:
                    await self._reconnect(reconnect, description)

                attempt += 1
