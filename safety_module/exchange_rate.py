"""
Exchange rate between pooled collateral and share tokens.
"""
from safety_module.fixed_point import WAD, mul_div


class ExchangeRate:
    """
    Underlying units per share, scaled by WAD (WAD == 1:1).

    Conversions round down so that rounding always favours the pool.
    """

    def __init__(self, data: dict = None):
        if data is None:
            data = {'rate': WAD}
        self.rate = int(data['rate'])

    def preview_stake(self, amount: int) -> int:
        """Shares minted for `amount` underlying."""
        return mul_div(amount, WAD, self.rate)

    def preview_redeem(self, shares: int) -> int:
        """Underlying paid out for `shares`."""
        return mul_div(shares, self.rate, WAD)

    def update(self, total_underlying: int, total_shares: int) -> int:
        """Recompute the rate from pool totals and return it."""
        if total_shares == 0:
            self.rate = WAD
        else:
            self.rate = mul_div(total_underlying, WAD, total_shares)
        return self.rate

    def to_dict(self) -> dict:
        return {'rate': self.rate}

    def __repr__(self) -> str:
        return f"ExchangeRate(rate={self.rate / WAD:.6f})"
