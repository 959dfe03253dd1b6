"""
ForkNode - 分叉节点能力接口

模拟子系统只依赖以下能力：存储读写、原生余额读写、账户模拟、
交易发送与回执、区块号、只读调用、合约代码、特权铸币、分叉重置、快照。
任何满足该接口的节点都可以互换使用；AnvilNode 基于 AsyncWeb3 实现。
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiohttp
import httpx
from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector
from web3 import AsyncWeb3, Web3
from web3.exceptions import TimeExhausted

from ..errors import NodeRPCError, TransactionTimeout
from .models import is_native_token
from .storage import to_word_hex


logger = logging.getLogger(__name__)


# Foundry cheatcode 合约地址，提供 deal(address,address,uint256)
CHEATCODE_ADDRESS = "0x7109709ECfa91a80626fF3989D68f67F5b1DD12D"

ERROR_STRING_SELECTOR = function_signature_to_4byte_selector("Error(string)")
PANIC_SELECTOR = function_signature_to_4byte_selector("Panic(uint256)")


def encode_call(signature: str, types: List[str], args: List[Any]) -> str:
    """编码合约调用 calldata"""
    selector = function_signature_to_4byte_selector(signature)
    return "0x" + (selector + encode(types, args)).hex()


def decode_revert_reason(data: bytes) -> Optional[str]:
    """解码 Error(string) / Panic(uint256) revert 数据"""
    if not data:
        return None
    if data[:4] == ERROR_STRING_SELECTOR:
        try:
            (reason,) = decode(["string"], data[4:])
            return reason
        except Exception:
            return None
    if data[:4] == PANIC_SELECTOR:
        try:
            (code,) = decode(["uint256"], data[4:])
            return f"Panic(0x{code:02x})"
        except Exception:
            return None
    return "0x" + data.hex()


class ForkNode(ABC):
    """分叉节点接口"""

    @abstractmethod
    async def get_storage_at(self, address: str, slot: int) -> int:
        """读取存储字"""

    @abstractmethod
    async def set_storage_at(self, address: str, slot: int, value: int) -> None:
        """写入存储字"""

    @abstractmethod
    async def get_balance(self, address: str) -> int:
        """原生代币余额"""

    @abstractmethod
    async def set_balance(self, address: str, amount: int) -> None:
        """设置原生代币余额"""

    @abstractmethod
    async def set_balance_alt(self, address: str, amount: int) -> None:
        """备用的节点级余额设置原语（hardhat 兼容方法）"""

    @abstractmethod
    async def impersonate(self, address: str) -> None:
        """开始模拟任意账户"""

    @abstractmethod
    async def stop_impersonating(self, address: str) -> None:
        """停止模拟账户"""

    @abstractmethod
    async def send_transaction(self, tx: Dict[str, Any]) -> str:
        """发送交易，返回交易哈希"""

    @abstractmethod
    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Dict[str, Any]:
        """等待回执，返回 {status, gasUsed, blockNumber}；超时抛出 TransactionTimeout"""

    @abstractmethod
    async def get_block_number(self) -> int:
        """当前区块号"""

    @abstractmethod
    async def call(self, tx: Dict[str, Any], block_number: Optional[int] = None) -> bytes:
        """只读调用，revert 时抛出异常"""

    @abstractmethod
    async def get_code(self, address: str) -> bytes:
        """合约字节码"""

    @abstractmethod
    async def mint_erc20(self, token: str, holder: str, amount: int) -> None:
        """节点特权铸币能力"""

    @abstractmethod
    async def reset(self, fork_url: str, block_number: int) -> None:
        """把分叉重置到指定区块"""

    @abstractmethod
    async def snapshot(self) -> str:
        """创建状态快照"""

    @abstractmethod
    async def revert(self, snapshot_id: str) -> bool:
        """恢复到快照"""

    @abstractmethod
    async def is_healthy(self) -> bool:
        """健康检查"""

    async def erc20_balance_of(self, token: str, holder: str) -> int:
        """ERC20 balanceOf"""
        data = encode_call("balanceOf(address)", ["address"], [holder])
        output = await self.call({"to": token, "data": data})
        (balance,) = decode(["uint256"], output)
        return balance

    async def erc20_allowance(self, token: str, owner: str, spender: str) -> int:
        """ERC20 allowance"""
        data = encode_call("allowance(address,address)", ["address", "address"], [owner, spender])
        output = await self.call({"to": token, "data": data})
        (allowance,) = decode(["uint256"], output)
        return allowance

    async def token_balance(self, token: str, holder: str) -> int:
        """原生代币或 ERC20 余额"""
        if is_native_token(token):
            return await self.get_balance(holder)
        return await self.erc20_balance_of(token, holder)


class AnvilNode(ForkNode):
    """
    Anvil 分叉节点

    标准方法通过 AsyncWeb3 调用，anvil_* / evm_* / hardhat_* 方法通过
    provider.make_request 直接发送。
    """

    def __init__(self, rpc_url: str, request_timeout: float = 120):
        """
        Args:
            rpc_url: Anvil RPC URL
            request_timeout: 单次 HTTP 请求超时（秒）
        """
        self.rpc_url = rpc_url
        self.request_timeout = request_timeout
        self.w3 = AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(
                rpc_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=request_timeout)},
            )
        )

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        """发送原始 JSON-RPC 请求"""
        response = await self.w3.provider.make_request(method, params)
        if "error" in response and response["error"]:
            error = response["error"]
            if isinstance(error, dict):
                raise NodeRPCError(method, error.get("message", str(error)), error.get("code"))
            raise NodeRPCError(method, str(error))
        return response.get("result")

    @staticmethod
    def _checksum(address: str) -> str:
        return Web3.to_checksum_address(address)

    async def get_storage_at(self, address: str, slot: int) -> int:
        value = await self.w3.eth.get_storage_at(self._checksum(address), slot)
        return int.from_bytes(value, "big")

    async def set_storage_at(self, address: str, slot: int, value: int) -> None:
        await self._rpc(
            "anvil_setStorageAt",
            [self._checksum(address), to_word_hex(slot), to_word_hex(value)],
        )

    async def get_balance(self, address: str) -> int:
        return await self.w3.eth.get_balance(self._checksum(address))

    async def set_balance(self, address: str, amount: int) -> None:
        await self._rpc("anvil_setBalance", [self._checksum(address), hex(amount)])

    async def set_balance_alt(self, address: str, amount: int) -> None:
        await self._rpc("hardhat_setBalance", [self._checksum(address), hex(amount)])

    async def impersonate(self, address: str) -> None:
        await self._rpc("anvil_impersonateAccount", [self._checksum(address)])

    async def stop_impersonating(self, address: str) -> None:
        await self._rpc("anvil_stopImpersonatingAccount", [self._checksum(address)])

    async def send_transaction(self, tx: Dict[str, Any]) -> str:
        params = dict(tx)
        params["from"] = self._checksum(params["from"])
        params["to"] = self._checksum(params["to"])
        tx_hash = await self.w3.eth.send_transaction(params)
        return Web3.to_hex(tx_hash)

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Dict[str, Any]:
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout, poll_latency=0.5
            )
        except TimeExhausted as e:
            raise TransactionTimeout(f"Receipt wait timed out after {timeout:g}s: {e}")
        return {
            "transactionHash": tx_hash,
            "status": receipt["status"],
            "gasUsed": receipt["gasUsed"],
            "blockNumber": receipt["blockNumber"],
        }

    async def get_block_number(self) -> int:
        return await self.w3.eth.block_number

    async def call(self, tx: Dict[str, Any], block_number: Optional[int] = None) -> bytes:
        params = dict(tx)
        params["to"] = self._checksum(params["to"])
        if "from" in params:
            params["from"] = self._checksum(params["from"])
        block_identifier = block_number if block_number is not None else "latest"
        return bytes(await self.w3.eth.call(params, block_identifier=block_identifier))

    async def get_code(self, address: str) -> bytes:
        return bytes(await self.w3.eth.get_code(self._checksum(address)))

    async def mint_erc20(self, token: str, holder: str, amount: int) -> None:
        """
        优先使用 anvil_dealERC20，节点不支持时回退到 cheatcode deal 调用
        """
        try:
            await self._rpc(
                "anvil_dealERC20",
                [self._checksum(holder), self._checksum(token), hex(amount)],
            )
            return
        except NodeRPCError as e:
            logger.debug(f"anvil_dealERC20 不可用，回退到 cheatcode: {e}")

        data = encode_call(
            "deal(address,address,uint256)",
            ["address", "address", "uint256"],
            [self._checksum(token), self._checksum(holder), amount],
        )
        tx_hash = await self.send_transaction({"from": holder, "to": CHEATCODE_ADDRESS, "data": data})
        receipt = await self.wait_for_receipt(tx_hash, timeout=self.request_timeout)
        if receipt["status"] != 1:
            raise NodeRPCError("deal", "cheatcode 调用被 revert")

    async def reset(self, fork_url: str, block_number: int) -> None:
        await self._rpc(
            "anvil_reset",
            [{"forking": {"jsonRpcUrl": fork_url, "blockNumber": block_number}}],
        )

    async def snapshot(self) -> str:
        return await self._rpc("evm_snapshot", [])

    async def revert(self, snapshot_id: str) -> bool:
        return bool(await self._rpc("evm_revert", [snapshot_id]))

    async def is_healthy(self) -> bool:
        """通过 web3_clientVersion 检查节点是否响应"""
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                response = await client.post(
                    self.rpc_url,
                    json={
                        "jsonrpc": "2.0",
                        "method": "web3_clientVersion",
                        "params": [],
                        "id": 1,
                    },
                )
            if response.status_code != 200:
                return False
            return bool(response.json().get("result"))
        except (httpx.HTTPError, ValueError):
            return False
