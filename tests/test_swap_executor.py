"""
SwapExecutor Unit Tests
"""

import asyncio
from decimal import Decimal

import pytest

from quotebench.errors import (
    NodeRPCError,
    OperationTimeout,
    TransactionReverted,
    TransactionTimeout,
)
from quotebench.simulation.balance_injector import BalanceInjector
from quotebench.simulation.gas import GasAccountant
from quotebench.simulation.models import (
    RetryPolicy,
    SimulationRequest,
    SimulationStatus,
    SwapTransaction,
)
from quotebench.simulation.retry import is_timeout_error
from quotebench.simulation.swap_executor import (
    SwapExecutor,
    is_resendable_error,
    native_funding_amount,
    revert_reason_from_error,
)

from conftest import (
    NATIVE,
    ROUTER,
    TEST_ACCOUNT,
    TOKEN_A,
    TOKEN_B,
    UPSTREAM_URL,
    ExoticToken,
    StandardToken,
    make_swap_handler,
    no_sleep,
)


AMOUNT_IN = 10**18
AMOUNT_OUT = 99_500_000
SWAP_DATA = "0x5ae401dc" + "00" * 32


def make_executor(node, controller, **kwargs):
    injector = BalanceInjector(node, settle_delay=0, probe_settle_delay=0, sleep=no_sleep)
    kwargs.setdefault(
        "simulation_policy",
        RetryPolicy(max_attempts=3, initial_delay=0, classifier=is_timeout_error),
    )
    kwargs.setdefault("submit_policy", RetryPolicy(max_attempts=3, initial_delay=0))
    return SwapExecutor(
        node,
        injector,
        controller,
        gas_accountant=GasAccountant(assumed_gas_price=10**9),
        test_account=TEST_ACCOUNT,
        settle_delay=0,
        sleep=no_sleep,
        **kwargs,
    )


def make_request(token_in=TOKEN_A, token_out=TOKEN_B, value="0", price=Decimal("2500")):
    return SimulationRequest(
        token_in=token_in,
        token_out=token_out,
        amount_in=AMOUNT_IN,
        swap_transaction=SwapTransaction(to=ROUTER, data=SWAP_DATA, value=value),
        target_block=1000,
        token_out_decimals=6,
        native_price_in_token_out=price,
    )


@pytest.fixture
def market(node):
    """TOKEN_A（slot 3）→ TOKEN_B（slot 0），路由合约已部署"""
    node.add_token(TOKEN_A, StandardToken(slot=3))
    node.add_token(TOKEN_B, StandardToken(slot=0))
    node.add_contract(ROUTER)
    node.swap_handler = make_swap_handler(TOKEN_B, AMOUNT_OUT, gas_used=150_000)
    node.mark_fork_base()
    return node


class TestSuccessfulSwap:
    """测试成功的 swap 模拟"""

    def test_erc20_swap(self, market, controller):
        """实际输出、gas 成本和净输出"""
        executor = make_executor(market, controller)

        result = asyncio.run(executor.simulate(make_request()))

        assert result.status == SimulationStatus.SUCCESS
        assert result.amount_out == 99_500_000
        assert result.gas_used == 150_000
        assert result.gas_cost_in_token_out == 375_000
        assert result.net_amount == 99_125_000
        assert result.error is None
        assert result.block_number == market.block_number

    def test_approval_and_impersonation(self, market, controller):
        executor = make_executor(market, controller)

        asyncio.run(executor.simulate(make_request()))

        allowance = asyncio.run(market.erc20_allowance(TOKEN_A, TEST_ACCOUNT, ROUTER))
        assert allowance == AMOUNT_IN * 10
        assert market.impersonated == set()

        swap_tx = market.sent[-1]
        assert swap_tx["to"] == ROUTER
        assert swap_tx["data"] == SWAP_DATA
        assert swap_tx["gas"] == 30_000_000

    def test_funding_uses_buffer(self, market, controller):
        executor = make_executor(market, controller)

        asyncio.run(executor.simulate(make_request()))

        balance = asyncio.run(market.erc20_balance_of(TOKEN_A, TEST_ACCOUNT))
        assert balance == AMOUNT_IN * 10

    def test_missing_native_price(self, market, controller):
        """缺少原生代币价格时 gas 成本为 0"""
        executor = make_executor(market, controller)

        result = asyncio.run(executor.simulate(make_request(price=None)))

        assert result.gas_cost_in_token_out == 0
        assert result.net_amount == AMOUNT_OUT

    def test_native_input(self, market, controller):
        """原生代币输入：设置余额，不发送授权"""
        executor = make_executor(market, controller)

        result = asyncio.run(
            executor.simulate(make_request(token_in=NATIVE, value=str(AMOUNT_IN)))
        )

        assert result.status == SimulationStatus.SUCCESS
        assert market.native[TEST_ACCOUNT.lower()] == native_funding_amount(AMOUNT_IN)
        assert len(market.sent) == 1
        assert market.sent[0]["value"] == AMOUNT_IN

    def test_native_output(self, market, controller):
        market.swap_handler = make_swap_handler(NATIVE, 5 * 10**17, gas_used=120_000)
        executor = make_executor(market, controller)

        result = asyncio.run(executor.simulate(make_request(token_out=NATIVE, price=Decimal(1))))

        assert result.amount_out == 5 * 10**17
        assert result.net_amount == 5 * 10**17 - result.gas_cost_in_token_out

    def test_native_funding_amount(self):
        assert native_funding_amount(1) == 1000 * 10**18
        assert native_funding_amount(10**18) == 10**24


class TestFailedSwap:
    """测试失败路径"""

    def test_revert_with_reason(self, market, controller):
        market.swap_handler = make_swap_handler(TOKEN_B, AMOUNT_OUT, gas_used=80_000, status=0)
        market.revert_reason = "Too little received"
        executor = make_executor(market, controller)

        result = asyncio.run(executor.simulate(make_request()))

        assert result.status == SimulationStatus.REVERTED
        assert result.amount_out == 0
        assert result.gas_used == 80_000
        assert result.error == "Transaction reverted"
        assert result.revert_reason == "Too little received"
        assert market.impersonated == set()
        # revert 不重试
        assert len(market.resets) == 0

    def test_revert_without_replay_reason(self, market, controller):
        market.swap_handler = make_swap_handler(TOKEN_B, AMOUNT_OUT, status=0)
        executor = make_executor(market, controller)

        result = asyncio.run(executor.simulate(make_request()))

        assert result.status == SimulationStatus.REVERTED
        assert result.revert_reason is None

    def test_contract_not_found(self, market, controller):
        market.code.pop(ROUTER.lower())
        executor = make_executor(market, controller)

        result = asyncio.run(executor.simulate(make_request()))

        assert result.status == SimulationStatus.ERROR
        assert result.error == f"Target contract {ROUTER} does not exist"
        assert market.impersonated == set()

    def test_balance_injection_failure(self, market, controller):
        """余额注入失败时不发送任何交易"""
        market.add_token(TOKEN_A, ExoticToken())
        executor = make_executor(market, controller)

        result = asyncio.run(executor.simulate(make_request()))

        assert result.status == SimulationStatus.ERROR
        assert result.error == "Failed to set token balance for simulation"
        assert result.amount_out == 0
        assert market.sent == []

    def test_unexpected_error_is_reported(self, market, controller):
        def handler(node, tx):
            raise RuntimeError("node crashed")

        market.swap_handler = handler
        executor = make_executor(market, controller)

        result = asyncio.run(executor.simulate(make_request()))

        assert result.status == SimulationStatus.ERROR
        assert result.error == "node crashed"
        assert market.impersonated == set()

    def test_submit_failure_is_retried(self, market, controller):
        market.send_failures = [NodeRPCError("eth_sendTransaction", "connection reset")]
        executor = make_executor(market, controller)

        result = asyncio.run(executor.simulate(make_request()))

        assert result.status == SimulationStatus.SUCCESS
        assert result.amount_out == AMOUNT_OUT


class TestTimeoutRetry:
    """测试超时重试"""

    def test_timeout_then_success(self, market, controller):
        """超时后重置分叉并重新执行，结果只反映成功的那次尝试"""
        gas_values = iter([210_000, 150_000])

        def handler(node, tx):
            node.credit(TOKEN_B, tx["from"], AMOUNT_OUT)
            return {"status": 1, "gasUsed": next(gas_values)}

        market.swap_handler = handler
        market.receipt_failures = [TransactionTimeout("receipt wait timed out")]
        executor = make_executor(market, controller)

        result = asyncio.run(executor.simulate(make_request()))

        assert result.status == SimulationStatus.SUCCESS
        assert result.gas_used == 150_000
        assert result.amount_out == AMOUNT_OUT
        assert market.resets[0][1] == 1000

    def test_submission_timeout_after_execution(self, market, controller):
        """节点已执行 swap 但提交超时：重置分叉后重新执行，输出只计一次"""
        market.post_send_failures = [OperationTimeout("eth_sendTransaction timed out")]
        executor = make_executor(market, controller)

        result = asyncio.run(executor.simulate(make_request()))

        assert result.status == SimulationStatus.SUCCESS
        assert result.amount_out == AMOUNT_OUT
        assert market.resets == [(UPSTREAM_URL, 1000)]

    def test_submission_timeout_before_execution(self, market, controller):
        market.send_failures = [OperationTimeout("eth_sendTransaction timed out")]
        executor = make_executor(market, controller)

        result = asyncio.run(executor.simulate(make_request()))

        assert result.status == SimulationStatus.SUCCESS
        assert result.amount_out == AMOUNT_OUT
        assert market.resets == [(UPSTREAM_URL, 1000)]

    def test_default_submit_classifier(self):
        assert is_resendable_error(NodeRPCError("eth_sendTransaction", "connection reset")) is True
        assert is_resendable_error(OperationTimeout("timed out")) is False
        assert is_resendable_error(TransactionReverted("STF")) is False

    def test_timeout_exhausted(self, market, controller):
        market.receipt_failures = [TransactionTimeout("receipt wait timed out")] * 3
        executor = make_executor(market, controller)

        result = asyncio.run(executor.simulate(make_request()))

        assert result.status == SimulationStatus.ERROR
        assert "timed out" in result.error
        assert len(market.resets) == 2


class TestRevertReason:
    """测试 revert 原因提取"""

    def test_from_error_data(self):
        class FakeError(Exception):
            data = "0x4e487b71" + "00" * 31 + "11"

        assert revert_reason_from_error(FakeError("execution reverted")) == "Panic(0x11)"

    def test_from_message(self):
        assert revert_reason_from_error(Exception("execution reverted: LOK")) == "execution reverted: LOK"
