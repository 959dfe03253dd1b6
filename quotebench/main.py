"""
QuoteBench - FastAPI Main Entry

链上 swap 模拟服务：在分叉节点上执行报价方返回的交易，
返回实际输出和扣除 gas 后的净输出。
"""

import argparse
import asyncio
import importlib
import json
import logging
import sys
from contextlib import asynccontextmanager
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence, TextIO, Tuple

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import httpx
from pydantic import BaseModel, Field, ValidationError
import uvicorn

from .config import Settings, get_settings, load_settings
from .errors import ConfigurationError, NodeUnavailable, QuoteBenchError
from .quotes import QuoteProvider, rpc_block_source
from .runner import SIMULATION_DISABLED, BenchmarkRunner
from .simulation.anvil import AnvilProcess
from .simulation.balance_injector import BalanceInjector, BalanceSlotCache
from .simulation.fork_controller import ForkController, is_reset_retryable
from .simulation.gas import GasAccountant
from .simulation.models import QuoteRequest, RetryPolicy, SimulationRequest, SimulationResult
from .simulation.node import AnvilNode, ForkNode
from .simulation.retry import is_timeout_error
from .simulation.swap_executor import SwapExecutor


VERSION = "0.1.0"

logger = logging.getLogger(__name__)


# =============================================================================
# Logging Configuration
# =============================================================================

def setup_logging(level: str = "INFO", stream: TextIO = sys.stdout):
    """配置日志"""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=stream,
    )


# =============================================================================
# Simulation Service
# =============================================================================


class SimulationService:
    """
    按配置装配模拟组件

    分叉节点是共享的可变状态，所有模拟通过 lock 串行执行。
    """

    def __init__(self, settings: Settings, node: Optional[ForkNode] = None, sleep=asyncio.sleep):
        self.settings = settings
        self.node = node or AnvilNode(
            settings.anvil_rpc_url,
            request_timeout=settings.read_timeout_seconds,
        )
        self.cache = BalanceSlotCache()
        self.fork_controller = ForkController(
            self.node,
            fork_url=settings.upstream_rpc_url,
            settle_delay=settings.settle_delay_seconds,
            reset_timeout=settings.reset_timeout_seconds,
            reset_policy=RetryPolicy(
                max_attempts=settings.reset_max_attempts,
                initial_delay=2.0,
                max_delay=60.0,
                classifier=is_reset_retryable,
            ),
            sleep=sleep,
        )
        self.injector = BalanceInjector(
            self.node,
            self.cache,
            settle_delay=settings.settle_delay_seconds,
            probe_settle_delay=settings.probe_settle_delay_seconds,
            sleep=sleep,
        )
        self.executor = SwapExecutor(
            self.node,
            self.injector,
            self.fork_controller,
            gas_accountant=GasAccountant(settings.assumed_gas_price_wei),
            test_account=settings.test_account,
            settle_delay=settings.settle_delay_seconds,
            transaction_timeout=settings.transaction_timeout_seconds,
            swap_gas_limit=settings.swap_gas_limit,
            erc20_buffer_multiplier=settings.erc20_buffer_multiplier,
            simulation_policy=RetryPolicy(
                max_attempts=settings.simulation_max_attempts,
                initial_delay=5.0,
                max_delay=30.0,
                classifier=is_timeout_error,
            ),
            sleep=sleep,
        )
        self.lock = asyncio.Lock()

    async def simulate(self, request: SimulationRequest) -> SimulationResult:
        """重置分叉到报价区块后执行模拟"""
        if not self.settings.simulation_enabled:
            return SimulationResult.skipped(SIMULATION_DISABLED)
        async with self.lock:
            try:
                await self.fork_controller.reset_to_block(request.target_block)
            except Exception as e:
                logger.error(f"重置分叉失败: {e}")
                return SimulationResult.failed(f"Fork reset failed: {e}")
            return await self.executor.simulate(request)

    async def reset_fork(self, block_number: int) -> int:
        async with self.lock:
            return await self.fork_controller.reset_to_block(block_number)


async def spawn_anvil(settings: Settings) -> Tuple[AnvilProcess, AnvilNode]:
    """在工作线程中启动 Anvil（启动过程会阻塞等待端口就绪）"""
    anvil = AnvilProcess(
        settings.upstream_rpc_url,
        chain_id=settings.chain_id,
        anvil_path=settings.anvil_binary_path,
        base_port=settings.anvil_base_port,
    )
    info = await asyncio.to_thread(anvil.start)
    return anvil, AnvilNode(info.rpc_url, request_timeout=settings.read_timeout_seconds)


class ForkResetRequest(BaseModel):
    """分叉重置请求"""
    block_number: int = Field(..., ge=0)


# =============================================================================
# FastAPI Application
# =============================================================================


def create_app(service: Optional[SimulationService] = None) -> FastAPI:
    """
    创建应用

    Args:
        service: 预先装配的服务（测试中注入）；为 None 时在启动阶段按配置创建
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期管理"""
        anvil: Optional[AnvilProcess] = None

        if app.state.service is None:
            settings = get_settings()
            setup_logging(settings.log_level)

            logger.info("=" * 60)
            logger.info("QuoteBench 启动中...")
            logger.info(f"环境: {'生产' if settings.is_production else '开发'}")
            logger.info(f"Chain ID: {settings.chain_id}")
            logger.info("=" * 60)

            node = None
            if settings.anvil_spawn:
                anvil, node = await spawn_anvil(settings)

            app.state.service = SimulationService(settings, node)

            try:
                await app.state.service.fork_controller.wait_until_ready()
            except NodeUnavailable as e:
                logger.warning(f"{e}，模拟请求将在节点就绪前失败")

        yield

        # 清理资源
        logger.info("QuoteBench 关闭中...")
        if anvil is not None:
            await asyncio.to_thread(anvil.stop)

    app = FastAPI(
        title="QuoteBench",
        description="DEX 报价链上模拟服务",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.service = service

    # CORS 配置
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_service() -> SimulationService:
        if app.state.service is None:
            raise HTTPException(status_code=503, detail="服务尚未初始化")
        return app.state.service

    # =========================================================================
    # Health Check
    # =========================================================================

    @app.get("/health")
    async def health_check():
        """健康检查端点"""
        service = get_service()
        return {
            "status": "healthy",
            "service": "quotebench",
            "version": VERSION,
            "node_healthy": await service.node.is_healthy(),
        }

    @app.get("/")
    async def root():
        """根路径"""
        return {
            "name": "QuoteBench",
            "description": "DEX 报价链上模拟服务",
            "version": VERSION,
            "endpoints": {
                "health": "/health",
                "simulate": "/api/v1/simulate",
                "fork_reset": "/api/v1/fork/reset",
                "balance_slots": "/api/v1/balance-slots",
            },
        }

    # =========================================================================
    # Simulation Endpoints
    # =========================================================================

    @app.post("/api/v1/simulate")
    async def simulate(request: SimulationRequest) -> Dict[str, Any]:
        """
        在分叉节点上执行 swap 交易

        ## 请求示例
        ```json
        {
          "token_in": "0x...",
          "token_out": "0x...",
          "amount_in": 1000000,
          "swap_transaction": {"to": "0x...", "data": "0x...", "value": "0"},
          "target_block": 12345,
          "token_out_decimals": 6,
          "native_price_in_token_out": "2500"
        }
        ```
        """
        result = await get_service().simulate(request)
        return result.model_dump(mode="json")

    @app.post("/api/v1/fork/reset")
    async def reset_fork(request: ForkResetRequest):
        """把分叉重置到指定区块"""
        try:
            block_number = await get_service().reset_fork(request.block_number)
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"重置分叉失败: {e}", exc_info=True)
            raise HTTPException(status_code=502, detail=str(e))
        return {"block_number": block_number}

    @app.get("/api/v1/balance-slots")
    async def balance_slots():
        """已确认的余额 slot 缓存"""
        return {
            token: entry.model_dump()
            for token, entry in get_service().cache.items()
        }

    # =========================================================================
    # Error Handlers
    # =========================================================================

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        """请求体校验失败"""
        return JSONResponse(
            status_code=400,
            content={
                "error": {
                    "message": "请求参数无效",
                    "type": "invalid_request_error",
                    "details": [
                        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
                        for err in exc.errors()
                    ],
                }
            },
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        """处理值错误"""
        return JSONResponse(
            status_code=400,
            content={"error": {"message": str(exc), "type": "invalid_request_error"}},
        )

    return app


app = create_app()


# =============================================================================
# Benchmark Runner
# =============================================================================

def load_providers(target: str, settings: Settings) -> List[QuoteProvider]:
    """
    按 "module:attribute" 加载报价方

    attribute 可以是报价方列表，也可以是接收 Settings 并返回列表的工厂函数。

    Raises:
        ConfigurationError: 无法导入，或结果中包含非 QuoteProvider 对象
    """
    module_name, _, attribute = target.partition(":")
    if not module_name or not attribute:
        raise ConfigurationError(f"报价方格式应为 module:attribute，实际为 {target!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"无法导入报价方模块 {module_name}: {e}") from e

    factory = getattr(module, attribute, None)
    if factory is None:
        raise ConfigurationError(f"模块 {module_name} 中没有 {attribute}")

    providers = list(factory(settings) if callable(factory) else factory)
    if not providers:
        raise ConfigurationError("未配置任何报价方")
    for provider in providers:
        if not isinstance(provider, QuoteProvider):
            raise ConfigurationError(f"{provider!r} 不是 QuoteProvider")
    return providers


def load_samples(path: str) -> Tuple[List[QuoteRequest], Dict[str, Decimal]]:
    """
    读取样本文件

    格式：{"samples": [QuoteRequest, ...], "native_prices": {"0x输出代币": "2500"}}
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"无法读取样本文件 {path}: {e}") from e

    try:
        requests = [QuoteRequest(**item) for item in data.get("samples", [])]
        native_prices = {
            token.lower(): Decimal(str(price))
            for token, price in data.get("native_prices", {}).items()
        }
    except (ValidationError, InvalidOperation, TypeError, AttributeError) as e:
        raise ConfigurationError(f"样本文件 {path} 无效: {e}") from e

    if not requests:
        raise ConfigurationError(f"样本文件 {path} 中没有样本")
    return requests, native_prices


async def run_benchmark(
    settings: Settings,
    providers: Sequence[QuoteProvider],
    requests: Sequence[QuoteRequest],
    native_prices: Optional[Dict[str, Decimal]] = None,
    node: Optional[ForkNode] = None,
    output: TextIO = sys.stdout,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    shutdown_event: Optional[asyncio.Event] = None,
    install_signals: bool = True,
    sleep=asyncio.sleep,
) -> int:
    """
    运行全部样本，按 JSON Lines 输出记录

    Returns:
        进程退出码：正常结束为 0，收到关闭信号为 130
    """
    anvil: Optional[AnvilProcess] = None
    if node is None and settings.simulation_enabled and settings.anvil_spawn:
        anvil, node = await spawn_anvil(settings)

    try:
        service = SimulationService(settings, node, sleep=sleep)
        if settings.simulation_enabled:
            await service.fork_controller.wait_until_ready()

        runner = BenchmarkRunner(
            service.executor,
            service.fork_controller,
            simulation_enabled=settings.simulation_enabled,
            settle_delay=settings.settle_delay_seconds,
            shutdown_event=shutdown_event,
        )
        if install_signals:
            runner.install_signal_handlers()

        async with httpx.AsyncClient(
            timeout=settings.read_timeout_seconds,
            transport=transport,
        ) as client:
            records = await runner.run(
                client,
                providers,
                requests,
                rpc_block_source(client, settings.upstream_rpc_url),
                native_prices,
            )
    finally:
        if anvil is not None:
            await asyncio.to_thread(anvil.stop)

    for record in records:
        output.write(json.dumps(record.model_dump(mode="json"), ensure_ascii=False) + "\n")
    output.flush()

    logger.info(f"基准测试结束: {len(records)} 条记录，退出码 {runner.exit_code}")
    return runner.exit_code


def bench_main(argv: Optional[Sequence[str]] = None):
    """基准测试命令行入口"""
    parser = argparse.ArgumentParser(description="QuoteBench 报价基准测试")
    parser.add_argument("--samples", required=True, help="样本文件（JSON）")
    parser.add_argument(
        "--providers",
        required=True,
        help="报价方，格式 module:attribute",
    )
    parser.add_argument("--output", help="结果文件（JSON Lines），默认输出到标准输出")
    args = parser.parse_args(argv)

    try:
        settings = load_settings()
        setup_logging(settings.log_level, stream=sys.stderr)
        providers = load_providers(args.providers, settings)
        requests, native_prices = load_samples(args.samples)
    except ConfigurationError as e:
        setup_logging(stream=sys.stderr)
        logger.error(str(e))
        sys.exit(2)

    try:
        if args.output:
            with open(args.output, "w", encoding="utf-8") as f:
                code = asyncio.run(run_benchmark(settings, providers, requests, native_prices, output=f))
        else:
            code = asyncio.run(run_benchmark(settings, providers, requests, native_prices))
    except QuoteBenchError as e:
        logger.error(f"基准测试失败: {e}")
        sys.exit(1)

    sys.exit(code)


# =============================================================================
# Main
# =============================================================================

def main():
    """主入口"""
    try:
        settings = get_settings()
    except ConfigurationError as e:
        setup_logging()
        logger.error(str(e))
        sys.exit(2)

    uvicorn.run(
        "quotebench.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
