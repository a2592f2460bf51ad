"""
Concentrated Liquidity Mathematics (Q64.64)

Формулы Whirlpools (sqrt цены в формате X64):
- L = amount_a * (sqrt_upper * sqrt_lower) / (sqrt_upper - sqrt_lower)
- L = amount_b / (sqrt_upper - sqrt_lower)

Когда текущая цена в диапазоне:
- L(a) считается на [current, upper], L(b) на [lower, current]
"""

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, getcontext

from .ticks import Q64

getcontext().prec = 50


def to_base_units(amount: float, decimals: int) -> int:
    """
    Точное преобразование человекочитаемой суммы в минимальные единицы.

    Example:
        >>> to_base_units(1.5, 6)  # 1.5 USDC
        1500000
    """
    value = Decimal(str(amount)) * (Decimal(10) ** decimals)
    return int(value.to_integral_value(rounding=ROUND_DOWN))


def from_base_units(amount: int, decimals: int) -> float:
    """Минимальные единицы -> человекочитаемая сумма."""
    return float(Decimal(amount) / (Decimal(10) ** decimals))


@dataclass
class LiquidityAmounts:
    """Количества токенов для заданной liquidity (минимальные единицы)."""
    amount_a: int
    amount_b: int
    liquidity: int


def _check_bounds(sqrt_lower: int, sqrt_upper: int):
    if sqrt_lower <= 0:
        raise ValueError("sqrt_lower must be positive")
    if sqrt_upper <= sqrt_lower:
        raise ValueError("sqrt_upper must be > sqrt_lower")


def liquidity_from_amount_a(sqrt_lower: int, sqrt_upper: int, amount_a: int) -> int:
    """
    L по количеству token A (цена ниже диапазона или часть [current, upper]).

    L = amount_a * sqrt_lower * sqrt_upper / ((sqrt_upper - sqrt_lower) * 2^64)
    """
    _check_bounds(sqrt_lower, sqrt_upper)
    return (amount_a * sqrt_lower * sqrt_upper) // ((sqrt_upper - sqrt_lower) * Q64)


def liquidity_from_amount_b(sqrt_lower: int, sqrt_upper: int, amount_b: int) -> int:
    """
    L по количеству token B.

    L = amount_b * 2^64 / (sqrt_upper - sqrt_lower)
    """
    _check_bounds(sqrt_lower, sqrt_upper)
    return (amount_b * Q64) // (sqrt_upper - sqrt_lower)


def amount_a_for_liquidity(sqrt_lower: int, sqrt_upper: int, liquidity: int, round_up: bool = False) -> int:
    """amount_a = L * (sqrt_upper - sqrt_lower) * 2^64 / (sqrt_upper * sqrt_lower)"""
    _check_bounds(sqrt_lower, sqrt_upper)
    numerator = liquidity * (sqrt_upper - sqrt_lower) * Q64
    denominator = sqrt_upper * sqrt_lower
    if round_up:
        return -(-numerator // denominator)
    return numerator // denominator


def amount_b_for_liquidity(sqrt_lower: int, sqrt_upper: int, liquidity: int, round_up: bool = False) -> int:
    """amount_b = L * (sqrt_upper - sqrt_lower) / 2^64"""
    _check_bounds(sqrt_lower, sqrt_upper)
    numerator = liquidity * (sqrt_upper - sqrt_lower)
    if round_up:
        return -(-numerator // Q64)
    return numerator // Q64


def liquidity_from_token_amount(
    sqrt_current: int,
    sqrt_lower: int,
    sqrt_upper: int,
    amount: int,
    input_is_a: bool,
) -> int:
    """
    Liquidity для депозита одного токена.

    Три случая:
    1. current < lower: позиция полностью в token A
    2. current >= upper: позиция полностью в token B
    3. в диапазоне: liquidity считается по стороне входного токена

    Raises:
        ValueError: Входной токен не может обеспечить позицию
            (например token B при цене ниже диапазона)
    """
    if amount < 0:
        raise ValueError("amount must be non-negative")

    if sqrt_current < sqrt_lower:
        if not input_is_a:
            raise ValueError("Price below range: deposit requires token A")
        return liquidity_from_amount_a(sqrt_lower, sqrt_upper, amount)

    if sqrt_current >= sqrt_upper:
        if input_is_a:
            raise ValueError("Price above range: deposit requires token B")
        return liquidity_from_amount_b(sqrt_lower, sqrt_upper, amount)

    if input_is_a:
        return liquidity_from_amount_a(sqrt_current, sqrt_upper, amount)
    return liquidity_from_amount_b(sqrt_lower, sqrt_current, amount)


def token_amounts_for_liquidity(
    sqrt_current: int,
    sqrt_lower: int,
    sqrt_upper: int,
    liquidity: int,
    round_up: bool = True,
) -> LiquidityAmounts:
    """
    Количества обоих токенов для заданной liquidity.

    round_up=True для депозита (верхняя оценка, которую спишет программа).
    """
    amount_a = 0
    amount_b = 0

    if sqrt_current < sqrt_lower:
        amount_a = amount_a_for_liquidity(sqrt_lower, sqrt_upper, liquidity, round_up)
    elif sqrt_current >= sqrt_upper:
        amount_b = amount_b_for_liquidity(sqrt_lower, sqrt_upper, liquidity, round_up)
    else:
        amount_a = amount_a_for_liquidity(sqrt_current, sqrt_upper, liquidity, round_up)
        amount_b = amount_b_for_liquidity(sqrt_lower, sqrt_current, liquidity, round_up)

    return LiquidityAmounts(amount_a=amount_a, amount_b=amount_b, liquidity=liquidity)


def apply_slippage_max(amount: int, slippage_bps: int) -> int:
    """Верхняя граница суммы с учётом slippage (округление вверх)."""
    if slippage_bps < 0:
        raise ValueError("slippage_bps must be non-negative")
    return -(-amount * (10_000 + slippage_bps) // 10_000)
