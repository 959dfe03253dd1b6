"""
Simulation Engine Data Models

定义模拟执行过程中使用的数据结构。
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)


NATIVE_TOKEN_ADDRESS = "0x" + "0" * 40


def validate_address_format(v: str) -> str:
    """验证以太坊地址格式"""
    if not isinstance(v, str) or not v.startswith("0x") or len(v) != 42:
        raise ValueError(f"无效的以太坊地址: {v}")
    try:
        int(v, 16)
    except ValueError:
        raise ValueError(f"无效的以太坊地址: {v}")
    return v


def is_native_token(address: str) -> bool:
    """零地址代表原生代币"""
    return address.lower() == NATIVE_TOKEN_ADDRESS


class SimulationStatus(str, Enum):
    """模拟结果状态"""
    SUCCESS = "success"
    REVERTED = "reverted"
    ERROR = "error"
    SKIPPED = "skipped"


class SwapTransaction(BaseModel):
    """报价方返回的 swap 交易"""
    to: str = Field(..., description="swap 目标合约地址")
    data: str = Field(default="0x", description="交易 calldata")
    value: str = Field(default="0", description="交易 value（wei，十进制或十六进制）")

    @field_validator("to")
    @classmethod
    def validate_to(cls, v: str) -> str:
        return validate_address_format(v)

    @field_validator("data")
    @classmethod
    def validate_data(cls, v: str) -> str:
        """calldata 必须是 0x 开头的偶数长度十六进制"""
        if not v.startswith("0x") or len(v) % 2 != 0:
            raise ValueError(f"无效的 calldata: {v[:20]}")
        if len(v) > 2:
            try:
                int(v, 16)
            except ValueError:
                raise ValueError(f"无效的 calldata: {v[:20]}")
        return v

    @field_validator("value", mode="before")
    @classmethod
    def validate_value(cls, v: Any) -> str:
        """验证 value 是有效的十六进制或十进制字符串"""
        if v is None:
            return "0"
        if isinstance(v, int):
            return str(v)
        try:
            int(v, 16) if v.startswith("0x") else int(v)
        except (ValueError, AttributeError):
            raise ValueError(f"无效的 value: {v}")
        return v

    @property
    def value_wei(self) -> int:
        return int(self.value, 16) if self.value.startswith("0x") else int(self.value)


class SimulationRequest(BaseModel):
    """单个样本的模拟请求，使用一次后丢弃"""
    token_in: str = Field(..., description="输入代币地址（零地址为原生代币）")
    token_out: str = Field(..., description="输出代币地址（零地址为原生代币）")
    amount_in: int = Field(..., ge=0, description="输入数量（最小单位）")
    swap_transaction: SwapTransaction = Field(..., description="待执行的 swap 交易")
    target_block: int = Field(..., ge=0, description="报价对应的区块号")

    # Gas 核算输入
    token_out_decimals: int = Field(default=18, ge=0, le=77, description="输出代币精度")
    native_price_in_token_out: Optional[Decimal] = Field(
        None, description="1 个原生代币可兑换的输出代币数量"
    )

    @field_validator("token_in", "token_out")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return validate_address_format(v)


class SimulationResult(BaseModel):
    """模拟执行结果，每个样本恰好产生一个"""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: SimulationStatus = Field(..., description="模拟状态")
    amount_out: int = Field(default=0, description="实际输出数量（最小单位）")
    gas_used: Optional[int] = Field(None, description="消耗的 gas")
    gas_cost_in_token_out: Optional[int] = Field(None, description="以输出代币计价的 gas 成本")
    net_amount: Optional[int] = Field(None, description="扣除 gas 成本后的净输出")
    error: Optional[str] = Field(None, description="失败原因")
    revert_reason: Optional[str] = Field(None, description="解码后的 revert 原因")
    block_number: Optional[int] = Field(None, description="交易所在区块")

    @field_serializer("amount_out", "gas_used", "gas_cost_in_token_out", "net_amount")
    def serialize_big_int(self, value: Optional[int]) -> Optional[str]:
        return None if value is None else str(value)

    @classmethod
    def failed(cls, error: str) -> "SimulationResult":
        return cls(status=SimulationStatus.ERROR, amount_out=0, error=error)

    @classmethod
    def skipped(cls, reason: str) -> "SimulationResult":
        return cls(status=SimulationStatus.SKIPPED, amount_out=0, error=reason)


class BalanceSlot(BaseModel):
    """已确认的余额 mapping 存储位置"""
    slot: int = Field(..., ge=0, description="mapping 所在的 slot")
    reversed_key: bool = Field(default=False, description="哈希原像是否为 slot ‖ key 顺序")
    strategy: str = Field(default="direct_slot_probe", description="发现该 slot 的策略")


class ProxyRecord(BaseModel):
    """代理合约到实现合约的映射，仅在单次注入内有效"""
    address: str
    implementation: str
    pointer_slot: str


class AnvilProcessInfo(BaseModel):
    """本地 Anvil 分叉进程信息"""
    pid: int
    port: int
    rpc_url: str
    fork_url: str
    fork_block: Optional[int] = None
    chain_id: int


def _default_classifier(error: BaseException) -> bool:
    from .retry import is_retryable_error

    return is_retryable_error(error)


class RetryPolicy(BaseModel):
    """重试策略"""
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, gt=1)
    classifier: Callable[[BaseException], bool] = Field(
        default=_default_classifier, exclude=True
    )

    @model_validator(mode="after")
    def check_delays(self) -> "RetryPolicy":
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay 不能小于 initial_delay")
        return self


class QuoteRequest(BaseModel):
    """发给报价方的请求"""
    chain_id: int = Field(default=10143)
    token_in: str
    token_out: str
    amount_in: int = Field(..., ge=0, description="输入数量（最小单位）")
    token_in_decimals: int = Field(default=18, ge=0, le=77)
    token_out_decimals: int = Field(default=18, ge=0, le=77)
    slippage: float = Field(default=0.5, ge=0, description="滑点（百分比）")
    include_pool_info: bool = True

    @field_validator("token_in", "token_out")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return validate_address_format(v)


class ProviderQuote(BaseModel):
    """报价适配器的输出"""
    provider: str = Field(..., description="报价方名称")
    output_amount: str = Field(default="0", description="报价输出数量（十进制字符串）")
    swap_transaction: Optional[SwapTransaction] = Field(None, description="可执行的 swap 交易")
    route_count: int = Field(default=0, ge=0)
    block_number: Optional[int] = Field(None, description="获取报价时的上游区块号")
    status_code: int = Field(default=0, description="HTTP 状态码，0 表示请求失败")
    duration_ms: int = Field(default=0, ge=0)
    url: str = Field(default="")
    supports_simulation: bool = Field(default=True)
    error: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict, exclude=True)


class SampleRecord(BaseModel):
    """交给报表层的一行记录：报价元数据 + 模拟结果"""
    provider: str
    token_in: str
    token_out: str
    amount_in: int
    quote_output: str
    quote_status: int
    quote_duration_ms: int
    route_count: int
    block_number: Optional[int] = None
    simulation: SimulationResult

    @field_serializer("amount_in")
    def serialize_amount_in(self, value: int) -> str:
        return str(value)
