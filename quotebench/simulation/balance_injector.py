"""
BalanceInjector - 为测试账户注入任意 ERC20 余额

在没有合约源码的情况下，通过直接改写合约存储来设置余额。
依次尝试一组策略，第一个成功的策略生效；任何失败的尝试都会把
存储恢复为尝试前的原值（存储写入恢复原值，节点级操作回滚快照）。

策略顺序：
1. 常见 slot 直接探测
2. 节点备用余额设置方法（hardhat_setBalance）
3. 模拟账户 + 节点铸币能力
4. ERC-7201 命名空间存储
5. 哨兵值全量扫描
6. totalSupply 联合调整
7. 代理合约反转 key 顺序（仅检测到代理时）
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, ItemsView, List, Optional, Tuple

from .models import BalanceSlot, ProxyRecord, is_native_token
from .node import ForkNode
from .storage import (
    CO_ADJUST_BALANCE_SLOTS,
    DIRECT_PROBE_SLOTS,
    OZ_ERC20_NAMESPACE_ID,
    PROXY_IMPLEMENTATION_SLOTS,
    PROXY_REVERSED_SLOTS,
    SENTINEL_AMOUNT,
    SENTINEL_SCAN_SLOTS,
    TOTAL_SUPPLY_MULTIPLIER,
    TOTAL_SUPPLY_SLOTS,
    erc7201_root,
    mapping_slot,
    word_to_address,
)


logger = logging.getLogger(__name__)


Strategy = Callable[[str, str, int, Optional[ProxyRecord]], Awaitable[bool]]


class BalanceSlotCache:
    """
    代币地址（小写）→ 已确认的余额 slot

    每个代币只写入一次，运行期间不失效。
    """

    def __init__(self):
        self._slots: Dict[str, BalanceSlot] = {}

    def get(self, token: str) -> Optional[BalanceSlot]:
        return self._slots.get(token.lower())

    def set(self, token: str, entry: BalanceSlot) -> bool:
        """仅在尚无记录时写入，返回是否写入"""
        key = token.lower()
        if key in self._slots:
            return False
        self._slots[key] = entry
        return True

    def items(self) -> ItemsView[str, BalanceSlot]:
        return self._slots.items()

    def __contains__(self, token: str) -> bool:
        return token.lower() in self._slots

    def __len__(self) -> int:
        return len(self._slots)


class BalanceInjector:
    """
    余额注入器

    Example:
        cache = BalanceSlotCache()
        injector = BalanceInjector(node, cache)
        ok = await injector.inject(token, holder, 10**18)
    """

    def __init__(
        self,
        node: ForkNode,
        cache: Optional[BalanceSlotCache] = None,
        settle_delay: float = 1.0,
        probe_settle_delay: float = 0.1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            node: 分叉节点
            cache: 余额 slot 缓存（与注入器同生命周期）
            settle_delay: 存储写入后的等待时间（秒）
            probe_settle_delay: 扫描探测时的等待时间（秒）
            sleep: 等待函数（测试中可替换）
        """
        self.node = node
        self.cache = cache if cache is not None else BalanceSlotCache()
        self.settle_delay = settle_delay
        self.probe_settle_delay = probe_settle_delay
        self._sleep = sleep

        self.strategies: List[Tuple[str, Strategy]] = [
            ("direct_slot_probe", self._direct_slot_probe),
            ("alternate_balance_call", self._alternate_balance_call),
            ("impersonate_mint", self._impersonate_mint),
            ("namespaced_storage", self._namespaced_storage),
            ("sentinel_rescan", self._sentinel_rescan),
            ("total_supply_adjust", self._total_supply_adjust),
            ("proxy_reversed_key", self._proxy_reversed_key),
        ]

    async def inject(self, token: str, holder: str, amount: int) -> bool:
        """
        把 holder 在 token 上的余额设置为至少 amount

        Returns:
            成功返回 True；所有策略失败返回 False（存储保持原样）
        """
        if is_native_token(token):
            await self.node.set_balance(holder, amount)
            logger.info(f"已设置原生代币余额: {holder} = {amount}")
            return True

        cached = self.cache.get(token)
        if cached is not None:
            key = mapping_slot(holder, cached.slot, cached.reversed_key)
            if await self._write_and_verify(token, holder, amount, key, self.settle_delay):
                logger.info(f"使用缓存 slot {cached.slot} 设置 {token} 余额")
                return True
            logger.warning(f"缓存 slot {cached.slot} 写入后校验失败，重新搜索: {token}")

        # 余额已满足时任何 slot 都能通过校验，不写入也不缓存
        try:
            existing = await self.node.erc20_balance_of(token, holder)
        except Exception as e:
            logger.debug(f"读取 {token} 现有余额失败: {e}")
        else:
            if existing >= amount:
                logger.info(f"{holder} 的 {token} 余额已满足: {existing} >= {amount}")
                return True

        proxy = await self.detect_proxy(token)
        if proxy is not None:
            logger.info(f"{token} 是代理合约，实现地址 {proxy.implementation}")

        for name, strategy in self.strategies:
            logger.debug(f"尝试策略 {name}: {token}")
            try:
                if await strategy(token, holder, amount, proxy):
                    logger.info(f"策略 {name} 成功设置 {token} 余额")
                    return True
            except Exception as e:
                logger.debug(f"策略 {name} 出错: {e}")

        logger.error(f"所有策略均无法设置 {token} 的余额")
        return False

    async def detect_proxy(self, token: str) -> Optional[ProxyRecord]:
        """探测已知的代理实现指针 slot"""
        for label, slot in PROXY_IMPLEMENTATION_SLOTS.items():
            try:
                word = await self.node.get_storage_at(token, slot)
            except Exception as e:
                logger.debug(f"读取代理 slot {label} 失败: {e}")
                continue
            if word:
                return ProxyRecord(
                    address=token,
                    implementation=word_to_address(word),
                    pointer_slot=label,
                )
        return None

    # ------------------------------------------------------------------
    # 存储写入原语
    # ------------------------------------------------------------------

    async def _restore(self, token: str, key: int, original: int) -> None:
        try:
            await self.node.set_storage_at(token, key, original)
        except Exception as e:
            logger.warning(f"恢复存储 {hex(key)} 失败: {e}")

    async def _write_and_verify(
        self,
        token: str,
        holder: str,
        amount: int,
        key: int,
        settle_delay: float,
    ) -> bool:
        """写入 amount 并校验 balanceOf ≥ amount，失败时恢复原值"""
        try:
            original = await self.node.get_storage_at(token, key)
        except Exception as e:
            logger.debug(f"读取存储 {hex(key)} 失败: {e}")
            return False

        try:
            await self.node.set_storage_at(token, key, amount)
            await self._sleep(settle_delay)
            balance = await self.node.erc20_balance_of(token, holder)
            if balance >= amount:
                return True
        except Exception as e:
            logger.debug(f"写入存储 {hex(key)} 失败: {e}")

        await self._restore(token, key, original)
        return False

    async def _sentinel_matches(self, token: str, holder: str, key: int) -> bool:
        """写入哨兵值并要求 balanceOf 精确相等，无论结果都恢复原值"""
        try:
            original = await self.node.get_storage_at(token, key)
        except Exception as e:
            logger.debug(f"读取存储 {hex(key)} 失败: {e}")
            return False

        matched = False
        try:
            await self.node.set_storage_at(token, key, SENTINEL_AMOUNT)
            await self._sleep(self.probe_settle_delay)
            matched = await self.node.erc20_balance_of(token, holder) == SENTINEL_AMOUNT
        except Exception as e:
            logger.debug(f"哨兵探测 {hex(key)} 失败: {e}")

        await self._restore(token, key, original)
        return matched

    async def _revert_snapshot(self, snapshot_id: str) -> None:
        try:
            await self.node.revert(snapshot_id)
        except Exception as e:
            logger.warning(f"回滚快照 {snapshot_id} 失败: {e}")

    # ------------------------------------------------------------------
    # 策略
    # ------------------------------------------------------------------

    async def _direct_slot_probe(
        self, token: str, holder: str, amount: int, proxy: Optional[ProxyRecord]
    ) -> bool:
        for slot in DIRECT_PROBE_SLOTS:
            key = mapping_slot(holder, slot)
            if await self._write_and_verify(token, holder, amount, key, self.settle_delay):
                self.cache.set(token, BalanceSlot(slot=slot, strategy="direct_slot_probe"))
                logger.info(f"找到余额 slot {slot}: {token}")
                return True
        return False

    async def _alternate_balance_call(
        self, token: str, holder: str, amount: int, proxy: Optional[ProxyRecord]
    ) -> bool:
        snapshot_id = await self.node.snapshot()
        try:
            await self.node.set_balance_alt(holder, amount * 10**18)
            balance = await self.node.erc20_balance_of(token, holder)
            if balance >= amount:
                return True
        except Exception as e:
            logger.debug(f"hardhat_setBalance 失败: {e}")

        await self._revert_snapshot(snapshot_id)
        return False

    async def _impersonate_mint(
        self, token: str, holder: str, amount: int, proxy: Optional[ProxyRecord]
    ) -> bool:
        snapshot_id = await self.node.snapshot()
        success = False
        try:
            await self.node.impersonate(holder)
            try:
                await self.node.mint_erc20(token, holder, amount)
                success = await self.node.erc20_balance_of(token, holder) >= amount
            finally:
                await self.node.stop_impersonating(holder)
        except Exception as e:
            logger.debug(f"模拟账户铸币失败: {e}")

        if not success:
            await self._revert_snapshot(snapshot_id)
        return success

    async def _namespaced_storage(
        self, token: str, holder: str, amount: int, proxy: Optional[ProxyRecord]
    ) -> bool:
        root = erc7201_root(OZ_ERC20_NAMESPACE_ID)
        key = mapping_slot(holder, root)
        if await self._write_and_verify(token, holder, amount, key, self.settle_delay):
            self.cache.set(token, BalanceSlot(slot=root, strategy="namespaced_storage"))
            return True
        return False

    async def _sentinel_rescan(
        self, token: str, holder: str, amount: int, proxy: Optional[ProxyRecord]
    ) -> bool:
        for slot in SENTINEL_SCAN_SLOTS:
            key = mapping_slot(holder, slot)
            if not await self._sentinel_matches(token, holder, key):
                continue
            logger.info(f"哨兵扫描命中 slot {slot}: {token}")
            if await self._write_and_verify(token, holder, amount, key, self.settle_delay):
                self.cache.set(token, BalanceSlot(slot=slot, strategy="sentinel_rescan"))
                return True
            return False
        return False

    async def _total_supply_adjust(
        self, token: str, holder: str, amount: int, proxy: Optional[ProxyRecord]
    ) -> bool:
        supply = amount * TOTAL_SUPPLY_MULTIPLIER
        for supply_slot in TOTAL_SUPPLY_SLOTS:
            try:
                original_supply = await self.node.get_storage_at(token, supply_slot)
                await self.node.set_storage_at(token, supply_slot, supply)
            except Exception as e:
                logger.debug(f"写入 totalSupply slot {supply_slot} 失败: {e}")
                continue

            for balance_slot in CO_ADJUST_BALANCE_SLOTS:
                key = mapping_slot(holder, balance_slot)
                if await self._write_and_verify(token, holder, amount, key, self.probe_settle_delay):
                    self.cache.set(
                        token, BalanceSlot(slot=balance_slot, strategy="total_supply_adjust")
                    )
                    return True

            await self._restore(token, supply_slot, original_supply)
        return False

    async def _proxy_reversed_key(
        self, token: str, holder: str, amount: int, proxy: Optional[ProxyRecord]
    ) -> bool:
        if proxy is None:
            return False
        for slot in PROXY_REVERSED_SLOTS:
            key = mapping_slot(holder, slot, reversed_key=True)
            if await self._write_and_verify(token, holder, amount, key, self.probe_settle_delay):
                self.cache.set(
                    token,
                    BalanceSlot(slot=slot, reversed_key=True, strategy="proxy_reversed_key"),
                )
                return True
        return False
