"""
GasAccountant - 把 gas 消耗换算为输出代币计价的成本
"""

from decimal import ROUND_FLOOR, Decimal, localcontext
from typing import Optional, Tuple, Union


WEI_PER_NATIVE = Decimal(10) ** 18
DEFAULT_GAS_PRICE_WEI = 10**9


class GasAccountant:
    """
    gas_cost = floor(gas_used × gas_price / 1e18 × native_price × 10^decimals)
    net_amount = max(0, amount_out − gas_cost)
    """

    def __init__(self, assumed_gas_price: int = DEFAULT_GAS_PRICE_WEI):
        if assumed_gas_price < 0:
            raise ValueError("assumed_gas_price 不能为负数")
        self.assumed_gas_price = assumed_gas_price

    def gas_cost_in_output_token(
        self,
        gas_used: int,
        native_price_in_token_out: Union[Decimal, int, str],
        output_decimals: int,
    ) -> int:
        with localcontext() as ctx:
            ctx.prec = 100
            cost = (
                Decimal(gas_used)
                * Decimal(self.assumed_gas_price)
                / WEI_PER_NATIVE
                * Decimal(native_price_in_token_out)
                * (Decimal(10) ** output_decimals)
            )
            return int(cost.to_integral_value(rounding=ROUND_FLOOR))

    @staticmethod
    def net_amount(amount_out: int, gas_cost: int) -> int:
        return max(0, amount_out - gas_cost)

    def account(
        self,
        amount_out: int,
        gas_used: int,
        native_price_in_token_out: Optional[Decimal],
        output_decimals: int,
    ) -> Tuple[int, int]:
        """
        Returns:
            (gas_cost_in_token_out, net_amount)；缺少原生代币价格时成本记为 0
        """
        if native_price_in_token_out is None:
            return 0, amount_out
        cost = self.gas_cost_in_output_token(gas_used, native_price_in_token_out, output_decimals)
        return cost, self.net_amount(amount_out, cost)
