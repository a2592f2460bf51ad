from .ticks import (
    TickRange,
    align_tick,
    calculate_tick_range,
    validate_tick_range,
    tick_array_start_index,
    tick_to_sqrt_price_x64,
    sqrt_price_x64_to_price,
)
from .liquidity import (
    liquidity_from_token_amount,
    token_amounts_for_liquidity,
    apply_slippage_max,
    to_base_units,
    from_base_units,
)
