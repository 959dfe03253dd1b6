"""
QuoteBench 异常定义

模拟子系统使用的异常分类：
- 瞬时错误（超时、连接重置、限流）由 RetryExecutor 重试
- 永久错误（revert、签名无效）直接上抛
- 样本级错误只终止当前样本，不影响整个运行
"""

from typing import Optional


class QuoteBenchError(Exception):
    """所有 QuoteBench 异常的基类"""


class ConfigurationError(QuoteBenchError):
    """配置缺失或无效，在构造任何组件之前抛出"""


class NodeUnavailable(QuoteBenchError):
    """分叉节点在等待时间内未就绪"""


class NodeRPCError(QuoteBenchError):
    """节点返回 JSON-RPC error"""

    def __init__(self, method: str, message: str, code: Optional[int] = None):
        self.method = method
        self.code = code
        super().__init__(f"{method} 调用失败: {message}")


class OperationTimeout(QuoteBenchError):
    """单次操作超时"""


class SimulationError(QuoteBenchError):
    """单个样本模拟过程中的错误"""


class ContractNotFound(SimulationError):
    """目标合约地址上没有部署代码"""

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Target contract {address} does not exist")


class InsufficientBalanceSetup(SimulationError):
    """BalanceInjector 所有策略均失败，无法为测试账户注入余额"""

    def __init__(self, message: str = "Failed to set token balance for simulation"):
        super().__init__(message)


class TransactionTimeout(SimulationError, OperationTimeout):
    """交易提交或等待回执超时"""


class TransactionReverted(SimulationError):
    """交易被 revert，是合法的模拟结果而不是流水线错误"""

    def __init__(
        self,
        reason: Optional[str] = None,
        gas_used: Optional[int] = None,
        block_number: Optional[int] = None,
    ):
        self.reason = reason
        self.gas_used = gas_used
        self.block_number = block_number
        message = "Transaction reverted"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class UnknownExecutionError(SimulationError):
    """未分类的执行错误，记录后继续运行"""
