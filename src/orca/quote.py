"""
Deposit quote for a Whirlpool position.

Точный расчёт по CLMM-формулам (src.math.liquidity). Если расчёт не удался,
возвращается грубая оценка с approximate=True: отправлять транзакцию по ней
можно только при явном разрешении (LiquidityConfig.allow_approximate_quote).
"""

import logging
from dataclasses import dataclass

from solders.pubkey import Pubkey

from ..math.liquidity import apply_slippage_max, liquidity_from_token_amount, token_amounts_for_liquidity
from ..math.ticks import tick_to_sqrt_price_x64
from .pool import WhirlpoolState

logger = logging.getLogger(__name__)

SOURCE_EXACT = "clmm"
SOURCE_FALLBACK = "fallback"


@dataclass
class LiquidityQuote:
    """Все суммы в минимальных единицах."""
    liquidity_amount: int
    token_max_a: int
    token_max_b: int
    token_est_a: int = 0
    token_est_b: int = 0
    approximate: bool = False
    source: str = SOURCE_EXACT


def fallback_quote(input_amount: int) -> LiquidityQuote:
    return LiquidityQuote(
        liquidity_amount=input_amount // 2,
        token_max_a=input_amount,
        token_max_b=input_amount // 2,
        token_est_a=input_amount,
        token_est_b=input_amount // 2,
        approximate=True,
        source=SOURCE_FALLBACK,
    )


def _exact_quote(
    pool: WhirlpoolState,
    input_mint: Pubkey,
    input_amount: int,
    tick_lower: int,
    tick_upper: int,
    slippage_bps: int,
) -> LiquidityQuote:
    if input_mint == pool.token_mint_a:
        input_is_a = True
    elif input_mint == pool.token_mint_b:
        input_is_a = False
    else:
        raise ValueError(f"Mint {input_mint} is not part of pool {pool.address}")

    sqrt_lower = tick_to_sqrt_price_x64(tick_lower)
    sqrt_upper = tick_to_sqrt_price_x64(tick_upper)

    liquidity = liquidity_from_token_amount(
        pool.sqrt_price, sqrt_lower, sqrt_upper, input_amount, input_is_a
    )
    amounts = token_amounts_for_liquidity(pool.sqrt_price, sqrt_lower, sqrt_upper, liquidity, round_up=True)

    return LiquidityQuote(
        liquidity_amount=liquidity,
        token_max_a=apply_slippage_max(amounts.amount_a, slippage_bps),
        token_max_b=apply_slippage_max(amounts.amount_b, slippage_bps),
        token_est_a=amounts.amount_a,
        token_est_b=amounts.amount_b,
    )


def build_liquidity_quote(
    pool: WhirlpoolState,
    input_mint: Pubkey,
    input_amount: int,
    tick_lower: int,
    tick_upper: int,
    slippage_bps: int,
) -> LiquidityQuote:
    """
    Quote для депозита input_amount токена input_mint в диапазон [tick_lower, tick_upper].

    Args:
        pool: Свежее состояние пула
        input_mint: Mint вносимого токена (A или B пула)
        input_amount: Сумма в минимальных единицах
        slippage_bps: Допуск для token_max_a / token_max_b

    Returns:
        LiquidityQuote. При ошибке точного расчёта fallback с approximate=True
    """
    if input_amount < 0:
        raise ValueError("input_amount must be non-negative")

    try:
        quote = _exact_quote(pool, input_mint, input_amount, tick_lower, tick_upper, slippage_bps)
    except Exception as e:
        logger.warning(f"Exact quote failed ({e}), using approximate fallback")
        return fallback_quote(input_amount)

    logger.debug(
        f"Quote: L={quote.liquidity_amount}, max_a={quote.token_max_a}, max_b={quote.token_max_b}"
    )
    return quote
