"""
ForkController - 分叉节点状态控制

把分叉节点重置到指定区块，并等待节点就绪。
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ..errors import NodeUnavailable
from .models import RetryPolicy
from .node import ForkNode
from .retry import RetryExecutor


logger = logging.getLogger(__name__)


NON_RETRYABLE_RESET_PATTERNS = ("invalid block", "not found")


def is_reset_retryable(error: BaseException) -> bool:
    """重置失败时，只有无效区块 / 区块不存在不重试"""
    message = str(error).lower()
    return not any(pattern in message for pattern in NON_RETRYABLE_RESET_PATTERNS)


DEFAULT_RESET_POLICY = RetryPolicy(
    max_attempts=5,
    initial_delay=2.0,
    max_delay=60.0,
    backoff_multiplier=2.0,
    classifier=is_reset_retryable,
)


class ForkController:
    """
    分叉控制器

    Example:
        controller = ForkController(node, fork_url=settings.upstream_rpc_url)
        await controller.reset_to_block(12345)
    """

    def __init__(
        self,
        node: ForkNode,
        fork_url: str,
        settle_delay: float = 1.0,
        reset_timeout: float = 300,
        reset_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            node: 分叉节点
            fork_url: 上游 RPC URL
            settle_delay: 重置后的等待时间（秒）
            reset_timeout: 单次重置尝试的超时（秒）
            reset_policy: 重置的重试策略
            sleep: 等待函数（测试中可替换）
        """
        self.node = node
        self.fork_url = fork_url
        self.settle_delay = settle_delay
        self.reset_timeout = reset_timeout
        self._sleep = sleep
        self._executor = RetryExecutor(
            reset_policy or DEFAULT_RESET_POLICY,
            sleep=sleep,
            name="fork reset",
        )

    async def reset_to_block(self, block_number: int) -> int:
        """
        把分叉头部重置到指定区块

        Returns:
            重置后节点报告的区块号
        """
        logger.info(f"重置分叉到区块 {block_number}")

        async def _reset() -> None:
            await self.node.reset(self.fork_url, block_number)

        await self._executor.run(_reset, timeout=self.reset_timeout)
        await self._sleep(self.settle_delay)

        current = await self.node.get_block_number()
        if current != block_number:
            logger.warning(f"重置后区块号不一致: 期望 {block_number}，实际 {current}")
        else:
            logger.debug(f"分叉已重置到区块 {current}")
        return current

    async def wait_until_ready(self, max_wait: float = 30, interval: float = 1) -> None:
        """
        轮询节点健康检查直到就绪

        Raises:
            NodeUnavailable: 超过 max_wait 仍未就绪
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max_wait

        while True:
            if await self.node.is_healthy():
                logger.info("分叉节点就绪")
                return
            if loop.time() >= deadline:
                break
            await self._sleep(interval)

        raise NodeUnavailable(f"分叉节点在 {max_wait:g}s 内未就绪")
