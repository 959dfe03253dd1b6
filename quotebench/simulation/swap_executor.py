"""
SwapExecutor - 在分叉链上执行 swap 交易

单次尝试的流程：
1. 为测试账户注入输入代币余额
2. 授权 swap 合约（ERC20 输入）
3. 记录输出代币的初始余额
4. 校验目标合约存在
5. 提交交易并等待回执
6. 成功时计算实际输出和 gas 成本；revert 时回放调用解码原因

整个流程由外层 RetryExecutor 包装，仅在超时时重试，重试前把分叉
重置回报价区块，因此最终结果只反映成功的那一次尝试。
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from web3.exceptions import ContractLogicError

from ..errors import (
    ContractNotFound,
    InsufficientBalanceSetup,
    SimulationError,
    TransactionReverted,
    UnknownExecutionError,
)
from .balance_injector import BalanceInjector
from .fork_controller import ForkController
from .gas import GasAccountant
from .models import (
    RetryPolicy,
    SimulationRequest,
    SimulationResult,
    SimulationStatus,
    SwapTransaction,
    is_native_token,
)
from .node import ForkNode, decode_revert_reason, encode_call
from .retry import RetryExecutor, is_retryable_error, is_timeout_error


logger = logging.getLogger(__name__)


# Anvil 默认账户 0
DEFAULT_TEST_ACCOUNT = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

NATIVE_FUNDING_MULTIPLIER = 1_000_000
MIN_NATIVE_FUNDING = 1000 * 10**18

DEFAULT_SIMULATION_POLICY = RetryPolicy(
    max_attempts=3,
    initial_delay=5.0,
    max_delay=30.0,
    classifier=is_timeout_error,
)


def is_resendable_error(error: BaseException) -> bool:
    """
    提交阶段只重试传输层错误

    超时的交易可能已被节点执行，必须交给外层重试在重置分叉后重新执行。
    """
    return is_retryable_error(error) and not is_timeout_error(error)


DEFAULT_SUBMIT_POLICY = RetryPolicy(
    max_attempts=3,
    initial_delay=1.0,
    max_delay=10.0,
    classifier=is_resendable_error,
)


def native_funding_amount(amount_in: int) -> int:
    """原生代币输入时为测试账户设置的余额，覆盖 value 和 gas"""
    return max(amount_in * NATIVE_FUNDING_MULTIPLIER, MIN_NATIVE_FUNDING)


def revert_reason_from_error(error: BaseException) -> Optional[str]:
    """从 eth_call 的 revert 异常中提取原因"""
    if isinstance(error, TransactionReverted):
        return error.reason
    data = getattr(error, "data", None)
    if isinstance(data, str) and data.startswith("0x") and len(data) > 2:
        try:
            reason = decode_revert_reason(bytes.fromhex(data[2:]))
        except ValueError:
            reason = None
        if reason:
            return reason
    message = getattr(error, "message", None) or str(error)
    return message or None


class SwapExecutor:
    """
    Swap 模拟执行器

    Example:
        executor = SwapExecutor(node, injector, controller)
        result = await executor.simulate(request)
    """

    def __init__(
        self,
        node: ForkNode,
        injector: BalanceInjector,
        fork_controller: ForkController,
        gas_accountant: Optional[GasAccountant] = None,
        test_account: str = DEFAULT_TEST_ACCOUNT,
        settle_delay: float = 1.0,
        transaction_timeout: float = 300,
        swap_gas_limit: int = 30_000_000,
        erc20_buffer_multiplier: int = 10,
        simulation_policy: Optional[RetryPolicy] = None,
        submit_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.node = node
        self.injector = injector
        self.fork_controller = fork_controller
        self.gas_accountant = gas_accountant or GasAccountant()
        self.test_account = test_account
        self.settle_delay = settle_delay
        self.transaction_timeout = transaction_timeout
        self.swap_gas_limit = swap_gas_limit
        self.erc20_buffer_multiplier = erc20_buffer_multiplier
        self.simulation_policy = simulation_policy or DEFAULT_SIMULATION_POLICY
        self.submit_policy = submit_policy or DEFAULT_SUBMIT_POLICY
        self._sleep = sleep

    async def simulate(self, request: SimulationRequest) -> SimulationResult:
        """
        执行一次模拟，样本级失败不会抛出，而是体现在结果的 status/error 中
        """

        async def _refresh_fork(attempt: int, error: BaseException) -> None:
            logger.info(f"模拟超时，重置分叉到区块 {request.target_block} 后重试")
            await self.fork_controller.reset_to_block(request.target_block)

        executor = RetryExecutor(
            self.simulation_policy,
            on_retry=_refresh_fork,
            sleep=self._sleep,
            name="swap simulation",
        )

        try:
            return await executor.run(lambda: self._attempt(request))
        except TransactionReverted as e:
            logger.info(f"交易被 revert (gas: {e.gas_used}): {e.reason}")
            return SimulationResult(
                status=SimulationStatus.REVERTED,
                amount_out=0,
                gas_used=e.gas_used,
                error="Transaction reverted",
                revert_reason=e.reason,
                block_number=e.block_number,
            )
        except SimulationError as e:
            logger.error(f"模拟失败: {e}")
            return SimulationResult.failed(str(e))
        except Exception as e:
            error = UnknownExecutionError(str(e) or "Unknown error")
            logger.error(f"模拟出错: {error}", exc_info=True)
            return SimulationResult.failed(str(error))

    async def _attempt(self, request: SimulationRequest) -> SimulationResult:
        account = self.test_account
        swap = request.swap_transaction

        await self._fund(request)

        await self.node.impersonate(account)
        try:
            if not is_native_token(request.token_in):
                buffered = request.amount_in * self.erc20_buffer_multiplier
                await self._approve(request.token_in, swap.to, buffered, request.amount_in)

            await self._sleep(self.settle_delay)
            initial_balance = await self.node.token_balance(request.token_out, account)
            await self._sleep(self.settle_delay)

            code = await self.node.get_code(swap.to)
            if not code:
                raise ContractNotFound(swap.to)

            receipt = await self._submit(swap)
            gas_used = receipt["gasUsed"]

            if receipt["status"] != 1:
                reason = await self._replay_revert_reason(swap, receipt["blockNumber"])
                raise TransactionReverted(reason, gas_used=gas_used, block_number=receipt["blockNumber"])

            await self._sleep(self.settle_delay)
            final_balance = await self.node.token_balance(request.token_out, account)
            amount_out = final_balance - initial_balance

            gas_cost, net_amount = self.gas_accountant.account(
                amount_out,
                gas_used,
                request.native_price_in_token_out,
                request.token_out_decimals,
            )
            logger.info(
                f"模拟成功 - 输出: {amount_out} (gas: {gas_used}) | 净输出: {net_amount}"
            )
            return SimulationResult(
                status=SimulationStatus.SUCCESS,
                amount_out=amount_out,
                gas_used=gas_used,
                gas_cost_in_token_out=gas_cost,
                net_amount=net_amount,
                block_number=receipt["blockNumber"],
            )
        finally:
            try:
                await self.node.stop_impersonating(account)
            except Exception as e:
                logger.warning(f"停止模拟账户 {account} 失败: {e}")

    async def _fund(self, request: SimulationRequest) -> None:
        account = self.test_account

        if is_native_token(request.token_in):
            balance = native_funding_amount(request.amount_in)
            await self.node.set_balance(account, balance)
            logger.debug(f"已设置原生代币余额: {balance}")
            return

        buffered = request.amount_in * self.erc20_buffer_multiplier
        if not await self.injector.inject(request.token_in, account, buffered):
            raise InsufficientBalanceSetup()

        actual = await self.node.erc20_balance_of(request.token_in, account)
        logger.debug(f"ERC20 余额校验: {actual}")
        if actual < request.amount_in:
            logger.error(f"余额设置失败: 期望 {request.amount_in}，实际 {actual}")
            raise InsufficientBalanceSetup()

    async def _approve(self, token: str, spender: str, amount: int, required: int) -> None:
        account = self.test_account
        data = encode_call("approve(address,uint256)", ["address", "uint256"], [spender, amount])
        tx_hash = await self.node.send_transaction({"from": account, "to": token, "data": data})
        await self.node.wait_for_receipt(tx_hash, timeout=self.transaction_timeout)

        allowance = await self.node.erc20_allowance(token, account, spender)
        if allowance < required:
            logger.warning(f"授权不足: 期望 {required}，实际 {allowance}")

    async def _submit(self, swap: SwapTransaction) -> Dict[str, Any]:
        tx = {
            "from": self.test_account,
            "to": swap.to,
            "data": swap.data,
            "value": swap.value_wei,
            "gas": self.swap_gas_limit,
        }
        # 超时一律交给外层重试（重置分叉后重新执行）
        classifier = self.submit_policy.classifier
        policy = self.submit_policy.model_copy(
            update={"classifier": lambda e: classifier(e) and not is_timeout_error(e)}
        )
        submitter = RetryExecutor(policy, sleep=self._sleep, name="swap submission")
        tx_hash = await submitter.run(lambda: self.node.send_transaction(tx))
        logger.debug(f"swap 交易已提交: {tx_hash}")
        return await self.node.wait_for_receipt(tx_hash, timeout=self.transaction_timeout)

    async def _replay_revert_reason(self, swap: SwapTransaction, block_number: int) -> Optional[str]:
        """在交易所在区块回放只读调用，恢复 revert 原因"""
        tx = {
            "from": self.test_account,
            "to": swap.to,
            "data": swap.data,
            "value": swap.value_wei,
        }
        try:
            output = await self.node.call(tx, block_number=block_number)
        except (ContractLogicError, TransactionReverted) as e:
            return revert_reason_from_error(e)
        except Exception as e:
            logger.debug(f"回放调用失败: {e}")
            return None
        logger.debug(f"回放调用未 revert: 0x{output.hex()}")
        return None
