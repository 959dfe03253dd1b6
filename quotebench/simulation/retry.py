"""
RetryExecutor - 带指数退避的重试执行器

基于 tenacity 实现：
- 按策略重试失败的操作
- 分类器判定为不可重试的错误立即上抛，不等待
- 重试前调用可选的观测回调（可为协程），然后等待 delay，
  之后 delay = min(delay × multiplier, max_delay)

被包装的操作必须可安全重复执行，执行器本身不做去重或缓存。
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from web3.exceptions import BlockNotFound, ContractLogicError, TimeExhausted

from ..errors import (
    ContractNotFound,
    InsufficientBalanceSetup,
    OperationTimeout,
    TransactionReverted,
)
from .models import RetryPolicy


logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[int, BaseException], Optional[Awaitable[Any]]]

# 瞬时错误特征
RETRYABLE_PATTERNS = (
    "timeout",
    "timed out",
    "econnrefused",
    "econnreset",
    "connection refused",
    "connection reset",
    "cannot connect",
    "rate limit",
    "too many requests",
    "network",
    "fetch failed",
    "temporarily unavailable",
    "service unavailable",
    "bad gateway",
    "block requested not found",
    "block not found",
)

# 永久错误特征
PERMANENT_PATTERNS = (
    "insufficient funds",
    "invalid signature",
    "unauthorized",
    "forbidden",
    "malformed",
)


def is_retryable_error(error: BaseException) -> bool:
    """
    默认错误分类器

    超时、连接重置、限流、"block not found" 可重试；
    显式 revert 和永久错误不可重试。
    """
    if isinstance(
        error,
        (TransactionReverted, ContractLogicError, ContractNotFound, InsufficientBalanceSetup),
    ):
        return False

    if isinstance(
        error,
        (
            OperationTimeout,
            asyncio.TimeoutError,
            TimeExhausted,
            BlockNotFound,
            httpx.TimeoutException,
            httpx.TransportError,
            ConnectionError,
        ),
    ):
        return True

    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in (429, 502, 503, 504)

    message = str(error).lower()

    if "revert" in message and "timeout" not in message:
        return False

    if any(pattern in message for pattern in PERMANENT_PATTERNS):
        return False

    return any(pattern in message for pattern in RETRYABLE_PATTERNS)


def is_timeout_error(error: BaseException) -> bool:
    """仅把超时视为可重试"""
    if isinstance(error, (OperationTimeout, asyncio.TimeoutError, TimeExhausted, httpx.TimeoutException)):
        return True
    message = str(error).lower()
    return "timeout" in message or "timed out" in message


class RetryExecutor:
    """
    重试执行器

    Example:
        executor = RetryExecutor(RetryPolicy(max_attempts=5), name="fork reset")
        await executor.run(lambda: node.reset(url, block), timeout=300)
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        on_retry: Optional[RetryCallback] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        name: str = "operation",
    ):
        """
        Args:
            policy: 重试策略
            on_retry: 每次重试前调用，参数为 (已失败的尝试序号, 错误)
            sleep: 退避等待函数（测试中可替换）
            name: 日志中显示的操作名称
        """
        self.policy = policy or RetryPolicy()
        self.on_retry = on_retry
        self.name = name
        self._sleep = sleep

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        timeout: Optional[float] = None,
    ) -> T:
        """
        执行操作

        Args:
            operation: 无参协程函数，每次尝试调用一次
            timeout: 单次尝试的超时时间（秒），超时抛出 OperationTimeout

        Returns:
            操作的返回值

        Raises:
            最后一次尝试的原始异常
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=wait_exponential(
                multiplier=self.policy.initial_delay,
                exp_base=self.policy.backoff_multiplier,
                max=self.policy.max_delay,
            ),
            retry=retry_if_exception(self.policy.classifier),
            before_sleep=self._before_sleep,
            sleep=self._sleep,
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                result = await self._attempt(operation, timeout)
        return result

    async def _attempt(
        self,
        operation: Callable[[], Awaitable[T]],
        timeout: Optional[float],
    ) -> T:
        if timeout is None:
            return await operation()
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except asyncio.TimeoutError:
            raise OperationTimeout(f"{self.name} timed out after {timeout:g}s")

    async def _before_sleep(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        attempt = retry_state.attempt_number
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0

        logger.warning(
            f"{self.name} 第 {attempt}/{self.policy.max_attempts} 次尝试失败，"
            f"{delay:.1f}s 后重试: {error}"
        )

        if self.on_retry is not None:
            outcome = self.on_retry(attempt, error)
            if inspect.isawaitable(outcome):
                await outcome


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    on_retry: Optional[RetryCallback] = None,
    timeout: Optional[float] = None,
    name: str = "operation",
) -> T:
    """RetryExecutor 的函数式快捷方式"""
    return await RetryExecutor(policy, on_retry=on_retry, name=name).run(operation, timeout=timeout)
