"""Integer bonding-curve math over virtual-liquidity-padded share pools.

With ``y = yes_shares + V`` and ``n = no_shares + V`` the marginal prices are
``y / (y + n)`` and ``n / (y + n)``. A purchase of ``k`` shares is charged at the
post-trade marginal price (the highest price along the path) rounded up; a sale
is paid at the post-trade marginal price rounded down. Every rounding step
favors the pool.
"""

from __future__ import annotations

from ..models import Side

PRICE_SCALE = 1_000_000
BPS_DENOMINATOR = 10_000


def ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


def padded_pools(
    side: Side,
    *,
    yes_shares: int,
    no_shares: int,
    virtual_liquidity: int,
) -> tuple[int, int]:
    """Return ``(own, other)`` pool sizes for the side being traded."""
    if virtual_liquidity <= 0:
        raise ValueError("virtual_liquidity must be > 0.")
    yes_pool = yes_shares + virtual_liquidity
    no_pool = no_shares + virtual_liquidity
    if side == "yes":
        return yes_pool, no_pool
    if side == "no":
        return no_pool, yes_pool
    raise ValueError(f"Unknown side {side!r}.")


def marginal_price(
    side: Side,
    *,
    yes_shares: int,
    no_shares: int,
    virtual_liquidity: int,
) -> int:
    """Marginal price of one side in ``PRICE_SCALE`` units, rounded down."""
    own, other = padded_pools(
        side,
        yes_shares=yes_shares,
        no_shares=no_shares,
        virtual_liquidity=virtual_liquidity,
    )
    return (own * PRICE_SCALE) // (own + other)


def buy_cost(
    side: Side,
    shares: int,
    *,
    yes_shares: int,
    no_shares: int,
    virtual_liquidity: int,
) -> int:
    """Collateral required (before fees) to buy ``shares`` of ``side``."""
    if shares <= 0:
        raise ValueError("shares must be > 0.")
    own, other = padded_pools(
        side,
        yes_shares=yes_shares,
        no_shares=no_shares,
        virtual_liquidity=virtual_liquidity,
    )
    new_own = own + shares
    return ceil_div(shares * new_own, new_own + other)


def sell_proceeds(
    side: Side,
    shares: int,
    *,
    yes_shares: int,
    no_shares: int,
    virtual_liquidity: int,
) -> int:
    """Collateral paid out (before fees) for selling ``shares`` of ``side``."""
    if shares <= 0:
        raise ValueError("shares must be > 0.")
    outstanding = yes_shares if side == "yes" else no_shares
    if shares > outstanding:
        raise ValueError("Cannot sell more shares than are outstanding.")
    own, other = padded_pools(
        side,
        yes_shares=yes_shares,
        no_shares=no_shares,
        virtual_liquidity=virtual_liquidity,
    )
    new_own = own - shares
    return (shares * new_own) // (new_own + other)


def fee_for(amount: int, fee_rate_bps: int) -> int:
    """Protocol fee on ``amount``, rounded up."""
    if amount <= 0 or fee_rate_bps <= 0:
        return 0
    return ceil_div(amount * fee_rate_bps, BPS_DENOMINATOR)


def max_shares_for_budget(
    side: Side,
    budget: int,
    *,
    yes_shares: int,
    no_shares: int,
    virtual_liquidity: int,
    fee_rate_bps: int,
) -> int:
    """Largest share count whose cost plus fee fits within ``budget``."""
    if budget <= 0:
        return 0

    def total(shares: int) -> int:
        cost = buy_cost(
            side,
            shares,
            yes_shares=yes_shares,
            no_shares=no_shares,
            virtual_liquidity=virtual_liquidity,
        )
        return cost + fee_for(cost, fee_rate_bps)

    if total(1) > budget:
        return 0
    low, high = 1, 2
    while total(high) <= budget:
        low, high = high, high * 2
    # total(low) <= budget < total(high)
    while high - low > 1:
        mid = (low + high) // 2
        if total(mid) <= budget:
            low = mid
        else:
            high = mid
    return low
