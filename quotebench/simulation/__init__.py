"""
Simulation Engine - 分叉链 swap 模拟模块

提供余额注入、分叉控制、swap 执行和 gas 核算。
"""

from .models import (
    SimulationRequest,
    SimulationResult,
    SimulationStatus,
    SwapTransaction,
    BalanceSlot,
    ProxyRecord,
    RetryPolicy,
    ProviderQuote,
    SampleRecord,
    AnvilProcessInfo,
    NATIVE_TOKEN_ADDRESS,
    is_native_token,
)
from .retry import RetryExecutor, retry_with_backoff, is_retryable_error, is_timeout_error
from .node import ForkNode, AnvilNode
from .anvil import AnvilProcess, find_free_port
from .fork_controller import ForkController
from .balance_injector import BalanceInjector, BalanceSlotCache
from .gas import GasAccountant
from .swap_executor import SwapExecutor, DEFAULT_TEST_ACCOUNT

__all__ = [
    # Models
    "SimulationRequest",
    "SimulationResult",
    "SimulationStatus",
    "SwapTransaction",
    "BalanceSlot",
    "ProxyRecord",
    "RetryPolicy",
    "ProviderQuote",
    "SampleRecord",
    "AnvilProcessInfo",
    "NATIVE_TOKEN_ADDRESS",
    "is_native_token",
    # Retry
    "RetryExecutor",
    "retry_with_backoff",
    "is_retryable_error",
    "is_timeout_error",
    # Node
    "ForkNode",
    "AnvilNode",
    "AnvilProcess",
    "find_free_port",
    # Components
    "ForkController",
    "BalanceInjector",
    "BalanceSlotCache",
    "GasAccountant",
    "SwapExecutor",
    "DEFAULT_TEST_ACCOUNT",
]
