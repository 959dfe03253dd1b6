"""
报价方接口与并发报价获取

具体的报价方适配器不在本包内；每个适配器实现 QuoteProvider，
由 fetch_quotes 并发获取同一样本的所有报价。
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx
from pydantic import BaseModel, Field

from .simulation.models import ProviderQuote, QuoteRequest, SwapTransaction


logger = logging.getLogger(__name__)


BlockSource = Callable[[], Awaitable[Optional[int]]]

FETCH_FAILED = "Failed to fetch quote"


class QuoteOutput(BaseModel):
    """适配器解析后的报价"""
    output_amount: str = "0"
    swap_transaction: Optional[SwapTransaction] = None
    route_count: int = 0
    raw: Dict[str, Any] = Field(default_factory=dict)


class QuoteProvider(ABC):
    """报价方适配器接口"""

    def __init__(self, name: str, base_url: str):
        self.name = name
        self.base_url = base_url

    @abstractmethod
    def build_quote_url(self, request: QuoteRequest) -> str:
        """构建报价 URL"""

    @abstractmethod
    def add_request_data(self, request: QuoteRequest, options: Dict[str, Any]) -> None:
        """
        补充请求参数

        options 会被原样传给 httpx.AsyncClient.request，
        可设置 "method"、"headers"、"json"、"content" 等键。
        """

    @abstractmethod
    def parse_output(self, data: Any) -> QuoteOutput:
        """解析报价响应"""

    @abstractmethod
    def supports_simulation(self) -> bool:
        """报价是否附带可执行交易"""

    @abstractmethod
    def is_baseline_for_comparison(self) -> bool:
        """是否作为对比基准"""


def rpc_block_source(client: httpx.AsyncClient, rpc_url: str) -> BlockSource:
    """通过 eth_blockNumber 读取上游区块号"""

    async def _block_number() -> Optional[int]:
        response = await client.post(
            rpc_url,
            json={"jsonrpc": "2.0", "method": "eth_blockNumber", "params": [], "id": 1},
        )
        response.raise_for_status()
        result = response.json().get("result")
        return int(result, 16) if result else None

    return _block_number


async def fetch_quote(
    client: httpx.AsyncClient,
    provider: QuoteProvider,
    request: QuoteRequest,
    block_source: BlockSource,
) -> ProviderQuote:
    """
    获取单个报价

    任何失败都返回 output_amount="0"、status_code=0 的报价，不抛出异常。
    """
    url = ""
    start = time.perf_counter()

    try:
        url = provider.build_quote_url(request)
        options: Dict[str, Any] = {}
        provider.add_request_data(request, options)
        method = options.pop("method", "GET")

        response = await client.request(method, url, **options)
        duration_ms = round((time.perf_counter() - start) * 1000)

        block_number = await block_source()
        output = provider.parse_output(response.json())

        logger.info(
            f"{provider.name} 报价: {output.output_amount} "
            f"(status {response.status_code}, {duration_ms}ms)"
        )
        return ProviderQuote(
            provider=provider.name,
            output_amount=output.output_amount,
            swap_transaction=output.swap_transaction,
            route_count=output.route_count,
            block_number=block_number,
            status_code=response.status_code,
            duration_ms=duration_ms,
            url=url,
            supports_simulation=provider.supports_simulation(),
            raw=output.raw,
        )
    except Exception as e:
        duration_ms = round((time.perf_counter() - start) * 1000)
        logger.error(f"获取 {provider.name} 报价失败: {e}")
        return ProviderQuote(
            provider=provider.name,
            output_amount="0",
            status_code=0,
            duration_ms=duration_ms,
            url=url,
            supports_simulation=provider.supports_simulation(),
            error=FETCH_FAILED,
        )


async def fetch_quotes(
    client: httpx.AsyncClient,
    providers: Sequence[QuoteProvider],
    request: QuoteRequest,
    block_source: BlockSource,
) -> List[ProviderQuote]:
    """并发获取所有报价方的报价，返回顺序与 providers 一致"""
    return list(
        await asyncio.gather(
            *(fetch_quote(client, provider, request, block_source) for provider in providers)
        )
    )
