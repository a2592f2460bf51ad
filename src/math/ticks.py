"""
Orca Whirlpools Tick Mathematics

Основные формулы:
- price(i) = 1.0001^i * 10^(decimals_a - decimals_b)   (цена token A в token B)
- sqrtPriceX64 = sqrt(1.0001^i) * 2^64

Tick array: аккаунт на 88 тиков (с шагом tick_spacing), начало массива
startTick = floor(tick / tick_spacing / 88) * tick_spacing * 88.

Tick spacing типичных пулов:
- 1   -> 0.01%
- 8   -> 0.05%
- 64  -> 0.30%
- 128 -> 1.00%
"""

import math
from dataclasses import dataclass
from decimal import Decimal, getcontext

from ..errors import INVALID_TICK_RANGE, LiquidityError

# Высокая точность для расчётов
getcontext().prec = 50

# Константы
Q64 = 2 ** 64
MIN_TICK = -443636
MAX_TICK = 443636
MIN_SQRT_PRICE_X64 = 4295048016
MAX_SQRT_PRICE_X64 = 79226673515401279992447579055
TICK_ARRAY_SIZE = 88
MIN_TICK_SPAN = 64


@dataclass(frozen=True)
class TickRange:
    """Диапазон позиции. Оба тика кратны tick_spacing."""
    tick_lower: int
    tick_upper: int

    @property
    def width(self) -> int:
        return self.tick_upper - self.tick_lower

    def as_dict(self) -> dict:
        return {"lower": self.tick_lower, "upper": self.tick_upper}


def price_to_tick(price: float, decimals_a: int = 0, decimals_b: int = 0, invert: bool = False) -> int:
    """
    Конвертация цены в тик.

    Args:
        price: Цена token A в token B (человекочитаемая, с учётом decimals)
        decimals_a: Decimals token A
        decimals_b: Decimals token B
        invert: Цена задана как B в A (например цена SOL в PENGU)

    Returns:
        Tick (floor), ограниченный [MIN_TICK, MAX_TICK]
    """
    if price <= 0:
        raise ValueError("Price must be positive")

    if invert:
        price = 1.0 / price

    raw_price = price * 10 ** (decimals_b - decimals_a)
    tick = math.floor(math.log(raw_price) / math.log(1.0001))
    return max(MIN_TICK, min(MAX_TICK, tick))


def tick_to_price(tick: int, decimals_a: int = 0, decimals_b: int = 0, invert: bool = False) -> float:
    """
    Конвертация тика в цену token A в token B.

    Example:
        tick_to_price(0) == 1.0
        tick_to_price(-20000, decimals_a=6, decimals_b=9)  # PENGU в SOL
    """
    price = 1.0001 ** tick * 10 ** (decimals_a - decimals_b)
    if invert:
        return 1.0 / price
    return price


def align_tick(tick: int, tick_spacing: int, round_down: bool = True) -> int:
    """
    Выравнивание тика к tick_spacing.

    Args:
        tick: Исходный тик
        tick_spacing: Шаг тиков пула (> 0)
        round_down: True = к -∞ (результат <= tick), False = к +∞

    Returns:
        Выровненный тик
    """
    if tick_spacing <= 0:
        raise ValueError("tick_spacing must be positive")

    if tick % tick_spacing == 0:
        return tick

    # Floor division работает корректно и для отрицательных тиков
    if round_down:
        return (tick // tick_spacing) * tick_spacing
    return ((tick // tick_spacing) + 1) * tick_spacing


def calculate_tick_range(current_tick: int, tick_spacing: int, range_percent: float) -> TickRange:
    """
    Симметричный диапазон вокруг текущего тика.

    range_ticks = floor(current_tick * range_percent / 100)

    Ширина считается от значения тика, а не от цены: это приближение,
    для тиков около нуля диапазон вырождается. Обе границы выравниваются
    вниз (floor). current_tick == 0 даёт {0, 0}, такой диапазон
    отклоняется validate_tick_range.

    Args:
        current_tick: Текущий тик пула
        tick_spacing: Шаг тиков (> 0)
        range_percent: Ширина в процентах (0..100)
    """
    if tick_spacing <= 0:
        raise ValueError("tick_spacing must be positive")
    if not 0 <= range_percent <= 100:
        raise ValueError(f"range_percent must be in 0..100, got {range_percent}")

    range_ticks = math.floor(current_tick * range_percent / 100)
    lower = align_tick(current_tick - range_ticks, tick_spacing)
    upper = align_tick(current_tick + range_ticks, tick_spacing)

    # Для отрицательного тика range_ticks < 0 и границы меняются местами
    if lower > upper:
        lower, upper = upper, lower

    return TickRange(tick_lower=lower, tick_upper=upper)


def validate_tick_range(tick_lower: int, tick_upper: int, tick_spacing: int) -> TickRange:
    """
    Проверка диапазона перед любой on-chain операцией.

    Raises:
        LiquidityError(INVALID_TICK_RANGE): тики не кратны tick_spacing,
            tick_lower >= tick_upper, ширина меньше MIN_TICK_SPAN
            или выход за [MIN_TICK, MAX_TICK]
    """
    details = {"tick_lower": tick_lower, "tick_upper": tick_upper, "tick_spacing": tick_spacing}

    if tick_spacing <= 0:
        raise LiquidityError(f"Invalid tickSpacing: {tick_spacing}", code=INVALID_TICK_RANGE, details=details)

    for name, tick in (("tickLower", tick_lower), ("tickUpper", tick_upper)):
        if tick % tick_spacing != 0:
            raise LiquidityError(
                f"{name} {tick} is not a multiple of tickSpacing {tick_spacing}",
                code=INVALID_TICK_RANGE, deterministic=True, details=details,
            )

    if tick_lower >= tick_upper:
        raise LiquidityError(
            f"Degenerate tick range: tickLower {tick_lower} >= tickUpper {tick_upper}",
            code=INVALID_TICK_RANGE, deterministic=True, details=details,
        )

    if tick_upper - tick_lower < MIN_TICK_SPAN:
        raise LiquidityError(
            f"Tick range too narrow: {tick_upper - tick_lower} < {MIN_TICK_SPAN}",
            code=INVALID_TICK_RANGE, deterministic=True, details=details,
        )

    if tick_lower < MIN_TICK or tick_upper > MAX_TICK:
        raise LiquidityError(
            f"Tick range out of bounds [{MIN_TICK}, {MAX_TICK}]",
            code=INVALID_TICK_RANGE, deterministic=True, details=details,
        )

    return TickRange(tick_lower=tick_lower, tick_upper=tick_upper)


def tick_array_start_index(tick: int, tick_spacing: int) -> int:
    """
    Начальный тик tick array, содержащего tick.

    floor(tick / tick_spacing / 88) * tick_spacing * 88
    """
    if tick_spacing <= 0:
        raise ValueError("tick_spacing must be positive")
    ticks_in_array = tick_spacing * TICK_ARRAY_SIZE
    return (tick // ticks_in_array) * ticks_in_array


def are_ticks_in_same_array(tick_a: int, tick_b: int, tick_spacing: int) -> bool:
    """Лежат ли оба тика в одном tick array."""
    return tick_array_start_index(tick_a, tick_spacing) == tick_array_start_index(tick_b, tick_spacing)


def tick_to_sqrt_price_x64(tick: int) -> int:
    """
    Конвертация тика в sqrtPriceX64 (Q64.64).

    Через Decimal, чтобы не терять точность на больших тиках.
    """
    if tick < MIN_TICK or tick > MAX_TICK:
        raise ValueError(f"Tick {tick} out of bounds")
    sqrt_price = Decimal("1.0001") ** (Decimal(tick) / 2)
    value = int(sqrt_price * Q64)
    return max(MIN_SQRT_PRICE_X64, min(MAX_SQRT_PRICE_X64, value))


def sqrt_price_x64_to_price(sqrt_price_x64: int, decimals_a: int = 0, decimals_b: int = 0) -> float:
    """
    sqrtPriceX64 -> цена token A в token B.

    price = (sqrtPriceX64 / 2^64)^2 * 10^(decimals_a - decimals_b)
    """
    if sqrt_price_x64 <= 0:
        raise ValueError("sqrt_price_x64 must be positive")
    ratio = Decimal(sqrt_price_x64) / Decimal(Q64)
    return float(ratio * ratio * Decimal(10) ** (decimals_a - decimals_b))


def get_price_range_for_tick_range(tick_range: TickRange, decimals_a: int = 0, decimals_b: int = 0) -> tuple[float, float]:
    """(price_lower, price_upper) для диапазона тиков."""
    return (
        tick_to_price(tick_range.tick_lower, decimals_a, decimals_b),
        tick_to_price(tick_range.tick_upper, decimals_a, decimals_b),
    )
