"""
共享测试夹具：内存中的分叉节点

FakeForkNode 实现 ForkNode 接口，按代币类型模拟不同的余额存储布局，
并支持快照、分叉重置、交易回执和故障注入。
"""

import copy
from itertools import count
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector
from web3.exceptions import ContractLogicError

from quotebench.errors import NodeRPCError
from quotebench.simulation.fork_controller import ForkController
from quotebench.simulation.node import ForkNode
from quotebench.simulation.storage import (
    OZ_ERC20_NAMESPACE_ID,
    PROXY_IMPLEMENTATION_SLOTS,
    erc7201_root,
    mapping_slot,
)


UPSTREAM_URL = "http://upstream.test"

TEST_ACCOUNT = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
TOKEN_A = "0x1111111111111111111111111111111111111111"
TOKEN_B = "0x2222222222222222222222222222222222222222"
ROUTER = "0x3333333333333333333333333333333333333333"
IMPLEMENTATION = "0x4444444444444444444444444444444444444444"
NATIVE = "0x0000000000000000000000000000000000000000"

APPROVE_SELECTOR = "0x" + function_signature_to_4byte_selector("approve(address,uint256)").hex()


async def no_sleep(delay: float) -> None:
    return None


class SleepRecorder:
    """记录等待时间但不真正等待"""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


# ----------------------------------------------------------------------
# 代币模型
# ----------------------------------------------------------------------


class StandardToken:
    """balances mapping 位于固定 slot"""

    def __init__(self, slot: int, reversed_key: bool = False, multiplier: int = 1):
        self.slot = slot
        self.reversed_key = reversed_key
        self.multiplier = multiplier

    def key(self, holder: str) -> int:
        return mapping_slot(holder, self.slot, self.reversed_key)

    def balance_of(self, node: "FakeForkNode", token: str, holder: str) -> int:
        return node.read(token, self.key(holder)) * self.multiplier

    def credit(self, node: "FakeForkNode", token: str, holder: str, amount: int) -> None:
        key = self.key(holder)
        node.storage.setdefault(token, {})[key] = node.read(token, key) + amount


class NamespacedToken(StandardToken):
    """OpenZeppelin v5 ERC-7201 命名空间布局"""

    def __init__(self):
        super().__init__(erc7201_root(OZ_ERC20_NAMESPACE_ID))


class SupplyCheckedToken(StandardToken):
    """余额超过 totalSupply 时 balanceOf 返回 0"""

    def __init__(self, slot: int, supply_slot: int):
        super().__init__(slot)
        self.supply_slot = supply_slot

    def balance_of(self, node: "FakeForkNode", token: str, holder: str) -> int:
        balance = super().balance_of(node, token, holder)
        return balance if node.read(token, self.supply_slot) >= balance else 0


class NativeMirrorToken:
    """balanceOf 跟随持有者的原生余额（以 1e18 为单位）"""

    def balance_of(self, node: "FakeForkNode", token: str, holder: str) -> int:
        return node.native.get(holder, 0) // 10**18


class MintOnlyToken:
    """余额不在可探测的存储中，只能通过节点铸币能力设置"""

    mintable = True

    def balance_of(self, node: "FakeForkNode", token: str, holder: str) -> int:
        return node.minted.get((token, holder), 0)


class ExoticToken:
    """任何手段都无法改变余额"""

    def balance_of(self, node: "FakeForkNode", token: str, holder: str) -> int:
        return 0


# ----------------------------------------------------------------------
# 节点
# ----------------------------------------------------------------------


SwapHandler = Callable[["FakeForkNode", Dict[str, Any]], Dict[str, Any]]


class FakeForkNode(ForkNode):
    """内存中的分叉节点"""

    def __init__(self, block_number: int = 1000):
        self.block_number = block_number
        self.storage: Dict[str, Dict[int, int]] = {}
        self.native: Dict[str, int] = {}
        self.minted: Dict[Tuple[str, str], int] = {}
        self.allowances: Dict[Tuple[str, str, str], int] = {}
        self.tokens: Dict[str, Any] = {}
        self.code: Dict[str, bytes] = {}

        self.writes: List[Tuple[str, int, int]] = []
        self.sent: List[Dict[str, Any]] = []
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.swap_hashes: set = set()
        self.resets: List[Tuple[str, int]] = []
        self.impersonated: set = set()
        self.impersonation_log: List[Tuple[str, str]] = []

        self.swap_handler: Optional[SwapHandler] = None
        self.revert_reason: Optional[str] = None
        self.healthy = True
        self.health_sequence: List[bool] = []

        # 故障注入
        self.reset_failures: List[Exception] = []
        self.send_failures: List[Exception] = []
        # swap 已执行后才抛出（例如节点已出块但响应超时）
        self.post_send_failures: List[Exception] = []
        self.receipt_failures: List[Exception] = []
        self.storage_write_failures = 0

        self._snapshots: Dict[str, Tuple] = {}
        self._snapshot_ids = count(1)
        self._tx_ids = count(1)
        self._fork_base: Optional[Tuple] = None

    # -- 测试辅助 --------------------------------------------------------

    def add_token(self, address: str, model: Any) -> None:
        self.tokens[address.lower()] = model
        self.code[address.lower()] = b"\x60\x80"

    def add_contract(self, address: str) -> None:
        self.code[address.lower()] = b"\x60\x80"

    def read(self, address: str, slot: int) -> int:
        return self.storage.get(address.lower(), {}).get(slot, 0)

    def storage_view(self) -> Dict[str, Dict[int, int]]:
        """去掉零值后的存储，写回原值 0 与从未写入视为相同"""
        return {
            address: {slot: value for slot, value in slots.items() if value}
            for address, slots in self.storage.items()
            if any(slots.values())
        }

    def credit(self, token: str, holder: str, amount: int) -> None:
        token, holder = token.lower(), holder.lower()
        if token == NATIVE:
            self.native[holder] = self.native.get(holder, 0) + amount
        else:
            self.tokens[token].credit(self, token, holder, amount)

    def _state(self) -> Tuple:
        return (
            copy.deepcopy(self.storage),
            dict(self.native),
            dict(self.minted),
            dict(self.allowances),
        )

    def _restore_state(self, state: Tuple) -> None:
        storage, native, minted, allowances = copy.deepcopy(state)
        self.storage, self.native, self.minted, self.allowances = storage, native, minted, allowances

    def mark_fork_base(self) -> None:
        """记录上游状态，reset 时恢复到这里"""
        self._fork_base = self._state()

    # -- ForkNode --------------------------------------------------------

    async def get_storage_at(self, address: str, slot: int) -> int:
        return self.read(address, slot)

    async def set_storage_at(self, address: str, slot: int, value: int) -> None:
        if self.storage_write_failures > 0:
            self.storage_write_failures -= 1
            raise NodeRPCError("anvil_setStorageAt", "connection reset")
        self.writes.append((address.lower(), slot, value))
        self.storage.setdefault(address.lower(), {})[slot] = value

    async def get_balance(self, address: str) -> int:
        return self.native.get(address.lower(), 0)

    async def set_balance(self, address: str, amount: int) -> None:
        self.native[address.lower()] = amount

    async def set_balance_alt(self, address: str, amount: int) -> None:
        self.native[address.lower()] = amount

    async def impersonate(self, address: str) -> None:
        self.impersonated.add(address.lower())
        self.impersonation_log.append(("start", address.lower()))

    async def stop_impersonating(self, address: str) -> None:
        self.impersonated.discard(address.lower())
        self.impersonation_log.append(("stop", address.lower()))

    async def send_transaction(self, tx: Dict[str, Any]) -> str:
        to = tx["to"].lower()
        data = tx.get("data", "0x")

        if to in self.tokens and data.startswith(APPROVE_SELECTOR):
            spender, amount = decode(["address", "uint256"], bytes.fromhex(data[10:]))
            self.allowances[(to, tx["from"].lower(), spender.lower())] = amount
            self.sent.append(dict(tx))
            receipt = {"status": 1, "gasUsed": 46_000}
            is_swap = False
        else:
            if self.send_failures:
                raise self.send_failures.pop(0)
            self.sent.append(dict(tx))
            if self.swap_handler is not None:
                receipt = self.swap_handler(self, tx)
            else:
                receipt = {"status": 1, "gasUsed": 100_000}
            is_swap = True

        self.block_number += 1
        tx_hash = "0x" + format(next(self._tx_ids), "064x")
        self.receipts[tx_hash] = dict(receipt, blockNumber=self.block_number, transactionHash=tx_hash)
        if is_swap:
            self.swap_hashes.add(tx_hash)
            if self.post_send_failures:
                raise self.post_send_failures.pop(0)
        return tx_hash

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Dict[str, Any]:
        if tx_hash in self.swap_hashes and self.receipt_failures:
            raise self.receipt_failures.pop(0)
        return self.receipts[tx_hash]

    async def get_block_number(self) -> int:
        return self.block_number

    async def call(self, tx: Dict[str, Any], block_number: Optional[int] = None) -> bytes:
        if self.revert_reason is not None:
            data = "0x08c379a0" + encode(["string"], [self.revert_reason]).hex()
            raise ContractLogicError(f"execution reverted: {self.revert_reason}", data=data)
        return b""

    async def get_code(self, address: str) -> bytes:
        return self.code.get(address.lower(), b"")

    async def mint_erc20(self, token: str, holder: str, amount: int) -> None:
        model = self.tokens.get(token.lower())
        if not getattr(model, "mintable", False):
            raise NodeRPCError("anvil_dealERC20", "unsupported token")
        self.minted[(token.lower(), holder.lower())] = amount

    async def reset(self, fork_url: str, block_number: int) -> None:
        self.resets.append((fork_url, block_number))
        if self.reset_failures:
            raise self.reset_failures.pop(0)
        if self._fork_base is not None:
            self._restore_state(self._fork_base)
        self.block_number = block_number

    async def snapshot(self) -> str:
        snapshot_id = hex(next(self._snapshot_ids))
        self._snapshots[snapshot_id] = self._state()
        return snapshot_id

    async def revert(self, snapshot_id: str) -> bool:
        state = self._snapshots.pop(snapshot_id, None)
        if state is None:
            return False
        self._restore_state(state)
        return True

    async def is_healthy(self) -> bool:
        if self.health_sequence:
            return self.health_sequence.pop(0)
        return self.healthy

    async def erc20_balance_of(self, token: str, holder: str) -> int:
        model = self.tokens.get(token.lower())
        if model is None:
            raise NodeRPCError("eth_call", "execution reverted")
        return model.balance_of(self, token.lower(), holder.lower())

    async def erc20_allowance(self, token: str, owner: str, spender: str) -> int:
        return self.allowances.get((token.lower(), owner.lower(), spender.lower()), 0)


def make_swap_handler(
    token_out: str,
    amount_out: int,
    gas_used: int = 150_000,
    status: int = 1,
) -> SwapHandler:
    """成功时向发送者转入 amount_out 个 token_out"""

    def _handler(node: FakeForkNode, tx: Dict[str, Any]) -> Dict[str, Any]:
        if status == 1:
            node.credit(token_out, tx["from"], amount_out)
        return {"status": status, "gasUsed": gas_used}

    return _handler


def install_proxy(node: FakeForkNode, token: str, implementation: str = IMPLEMENTATION) -> None:
    """在 EIP-1967 实现 slot 写入实现地址"""
    node.storage.setdefault(token.lower(), {})[PROXY_IMPLEMENTATION_SLOTS["eip1967"]] = int(
        implementation, 16
    )


@pytest.fixture
def node() -> FakeForkNode:
    return FakeForkNode()


@pytest.fixture
def controller(node) -> ForkController:
    return ForkController(node, UPSTREAM_URL, settle_delay=0, sleep=no_sleep)
