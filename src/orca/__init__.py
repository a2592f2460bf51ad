from .pool import WhirlpoolState, decode_whirlpool, fetch_whirlpool
from .pda import (
    TickArrayPair,
    get_associated_token_address,
    get_position_pda,
    get_tick_array_pda,
    resolve_tick_arrays,
)
from .tick_arrays import AccountLookup, TickArrayEnsurer, fetch_account
from .quote import LiquidityQuote, build_liquidity_quote
from .position import PositionBuilder, PositionData, PositionResult, PositionState, decode_position
from .discovery import OrcaApiClient, OrcaNoPoolError, OrcaPoolInfo
