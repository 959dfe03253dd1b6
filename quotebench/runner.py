"""
BenchmarkRunner - 按样本编排报价与模拟

每个样本：并发获取所有报价 → 按报价方顺序逐个模拟 → 每个报价恰好产生一行记录。
单个报价的失败只体现在对应记录中，不会中断整个运行。
"""

import asyncio
import logging
import signal
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

import httpx
from pydantic import ValidationError

from .quotes import BlockSource, FETCH_FAILED, QuoteProvider, fetch_quotes
from .simulation.fork_controller import ForkController
from .simulation.models import (
    ProviderQuote,
    QuoteRequest,
    SampleRecord,
    SimulationRequest,
    SimulationResult,
)
from .simulation.swap_executor import SwapExecutor


logger = logging.getLogger(__name__)


NO_TRANSACTION_DATA = "No transaction data"
SIMULATION_DISABLED = "Simulation disabled"
SIMULATION_NOT_SUPPORTED = "Simulation not supported"
SIMULATION_SKIPPED = "Simulation skipped"
SHUTDOWN_REQUESTED = "Shutdown requested"

# 收到中断信号后的进程退出码
SHUTDOWN_EXIT_CODE = 130


class BenchmarkRunner:
    """
    基准测试运行器

    Example:
        runner = BenchmarkRunner(executor, controller)
        runner.install_signal_handlers()
        records = await runner.run(client, providers, requests, block_source)
    """

    def __init__(
        self,
        swap_executor: Optional[SwapExecutor],
        fork_controller: Optional[ForkController],
        simulation_enabled: bool = True,
        settle_delay: float = 1.0,
        shutdown_event: Optional[asyncio.Event] = None,
    ):
        self.swap_executor = swap_executor
        self.fork_controller = fork_controller
        self.simulation_enabled = simulation_enabled and swap_executor is not None
        self.settle_delay = settle_delay
        self.shutdown_event = shutdown_event or asyncio.Event()

    @property
    def shutdown_requested(self) -> bool:
        return self.shutdown_event.is_set()

    @property
    def exit_code(self) -> int:
        return SHUTDOWN_EXIT_CODE if self.shutdown_requested else 0

    def request_shutdown(self) -> None:
        if not self.shutdown_event.is_set():
            logger.warning("收到关闭请求，当前模拟结束后停止")
        self.shutdown_event.set()

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """SIGINT / SIGTERM 触发优雅关闭"""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except NotImplementedError:
                # Windows 事件循环不支持
                signal.signal(sig, lambda *_: self.request_shutdown())

    async def run(
        self,
        client: httpx.AsyncClient,
        providers: Sequence[QuoteProvider],
        requests: Sequence[QuoteRequest],
        block_source: BlockSource,
        native_prices: Optional[Dict[str, Decimal]] = None,
    ) -> List[SampleRecord]:
        """
        依次运行所有样本

        Args:
            native_prices: 输出代币地址（小写）→ 1 个原生代币可兑换的数量
        """
        native_prices = native_prices or {}
        records: List[SampleRecord] = []

        for index, request in enumerate(requests, start=1):
            if self.shutdown_requested:
                logger.warning(f"已请求关闭，剩余 {len(requests) - index + 1} 个样本未运行")
                break

            logger.info(f"样本 {index}/{len(requests)}: {request.token_in} -> {request.token_out}")
            quotes = await fetch_quotes(client, providers, request, block_source)
            records.extend(
                await self.run_sample(
                    quotes,
                    request,
                    native_prices.get(request.token_out.lower()),
                )
            )

        return records

    async def run_sample(
        self,
        quotes: Sequence[ProviderQuote],
        request: QuoteRequest,
        native_price_in_token_out: Optional[Decimal] = None,
    ) -> List[SampleRecord]:
        """按报价方顺序模拟，每个报价产生一条记录"""
        records = []
        for quote in quotes:
            result = await self._simulate_quote(quote, request, native_price_in_token_out)
            records.append(self._record(quote, request, result))
        return records

    async def _simulate_quote(
        self,
        quote: ProviderQuote,
        request: QuoteRequest,
        native_price_in_token_out: Optional[Decimal],
    ) -> SimulationResult:
        if quote.error == FETCH_FAILED or quote.status_code == 0:
            return SimulationResult.failed(FETCH_FAILED)
        if not self.simulation_enabled:
            return SimulationResult.skipped(SIMULATION_DISABLED)
        if self.shutdown_requested:
            return SimulationResult.skipped(SHUTDOWN_REQUESTED)

        logger.info(f"模拟 {quote.provider}...")

        if quote.block_number is not None and self.fork_controller is not None:
            try:
                await self.fork_controller.reset_to_block(quote.block_number)
            except Exception as e:
                logger.error(f"重置分叉到区块 {quote.block_number} 失败: {e}")
                return SimulationResult.failed(f"Fork reset failed: {e}")

        await asyncio.sleep(self.settle_delay)

        if quote.swap_transaction is None:
            return SimulationResult.failed(NO_TRANSACTION_DATA)
        if not quote.supports_simulation:
            return SimulationResult.skipped(SIMULATION_NOT_SUPPORTED)
        if quote.status_code != 200:
            return SimulationResult.skipped(SIMULATION_SKIPPED)

        target_block = quote.block_number
        if target_block is None:
            try:
                target_block = await self.swap_executor.node.get_block_number()
            except Exception as e:
                logger.error(f"读取分叉区块号失败: {e}")
                return SimulationResult.failed(f"Failed to read fork block number: {e}")

        try:
            simulation_request = SimulationRequest(
                token_in=request.token_in,
                token_out=request.token_out,
                amount_in=request.amount_in,
                swap_transaction=quote.swap_transaction,
                target_block=target_block,
                token_out_decimals=request.token_out_decimals,
                native_price_in_token_out=native_price_in_token_out,
            )
        except ValidationError as e:
            logger.error(f"{quote.provider} 报价无法构造模拟请求: {e}")
            return SimulationResult.failed(f"Malformed quote: {e.errors()[0]['msg']}")

        return await self.swap_executor.simulate(simulation_request)

    @staticmethod
    def _record(quote: ProviderQuote, request: QuoteRequest, result: SimulationResult) -> SampleRecord:
        return SampleRecord(
            provider=quote.provider,
            token_in=request.token_in,
            token_out=request.token_out,
            amount_in=request.amount_in,
            quote_output=quote.output_amount,
            quote_status=quote.status_code,
            quote_duration_ms=quote.duration_ms,
            route_count=quote.route_count,
            block_number=quote.block_number,
            simulation=result,
        )
