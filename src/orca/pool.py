"""
Whirlpool account decoding

Состояние пула читается напрямую из аккаунта (Anchor layout) перед
каждым расчётом, кэша нет.
"""

import logging
import struct
from dataclasses import dataclass

from solders.pubkey import Pubkey

from ..errors import LiquidityError, RPC_UNAVAILABLE, VALIDATION
from .tick_arrays import AccountLookup, fetch_account

logger = logging.getLogger(__name__)

# Offsets в аккаунте Whirlpool (после 8 байт discriminator)
TICK_SPACING_OFFSET = 41
FEE_RATE_OFFSET = 45
LIQUIDITY_OFFSET = 49
SQRT_PRICE_OFFSET = 65
TICK_CURRENT_OFFSET = 81
TOKEN_MINT_A_OFFSET = 101
TOKEN_VAULT_A_OFFSET = 133
TOKEN_MINT_B_OFFSET = 181
TOKEN_VAULT_B_OFFSET = 213
WHIRLPOOL_MIN_SIZE = 245


@dataclass(frozen=True)
class WhirlpoolState:
    """Снимок состояния пула."""
    address: Pubkey
    tick_spacing: int
    fee_rate: int
    liquidity: int
    sqrt_price: int           # Q64.64
    tick_current_index: int
    token_mint_a: Pubkey
    token_vault_a: Pubkey
    token_mint_b: Pubkey
    token_vault_b: Pubkey

    def has_mint(self, mint: Pubkey) -> bool:
        return mint in (self.token_mint_a, self.token_mint_b)


def _pubkey_at(data: bytes, offset: int) -> Pubkey:
    return Pubkey.from_bytes(data[offset:offset + 32])


def decode_whirlpool(address: Pubkey, data: bytes) -> WhirlpoolState:
    """
    Декодировать сырые данные аккаунта Whirlpool.

    Raises:
        LiquidityError: Данные короче ожидаемого layout
    """
    if len(data) < WHIRLPOOL_MIN_SIZE:
        raise LiquidityError(
            f"Whirlpool account {address} too short: {len(data)} < {WHIRLPOOL_MIN_SIZE}",
            code=VALIDATION, deterministic=True,
        )

    (tick_spacing,) = struct.unpack_from("<H", data, TICK_SPACING_OFFSET)
    (fee_rate,) = struct.unpack_from("<H", data, FEE_RATE_OFFSET)
    (tick_current,) = struct.unpack_from("<i", data, TICK_CURRENT_OFFSET)

    return WhirlpoolState(
        address=address,
        tick_spacing=tick_spacing,
        fee_rate=fee_rate,
        liquidity=int.from_bytes(data[LIQUIDITY_OFFSET:LIQUIDITY_OFFSET + 16], "little"),
        sqrt_price=int.from_bytes(data[SQRT_PRICE_OFFSET:SQRT_PRICE_OFFSET + 16], "little"),
        tick_current_index=tick_current,
        token_mint_a=_pubkey_at(data, TOKEN_MINT_A_OFFSET),
        token_vault_a=_pubkey_at(data, TOKEN_VAULT_A_OFFSET),
        token_mint_b=_pubkey_at(data, TOKEN_MINT_B_OFFSET),
        token_vault_b=_pubkey_at(data, TOKEN_VAULT_B_OFFSET),
    )


def fetch_whirlpool(rpc, address: Pubkey) -> WhirlpoolState:
    """
    Прочитать пул из сети.

    Raises:
        LiquidityError: Пул не найден (не retryable) или RPC недоступен (retryable)
    """
    lookup = fetch_account(rpc, address)
    if lookup.status == AccountLookup.NOT_FOUND:
        raise LiquidityError(f"Whirlpool {address} not found", code=VALIDATION, deterministic=True)
    if lookup.status == AccountLookup.ERROR:
        raise LiquidityError(
            f"Cannot read whirlpool {address}: {lookup.error}",
            code=RPC_UNAVAILABLE, retryable=True,
        )

    pool = decode_whirlpool(address, lookup.data)
    logger.debug(
        f"Pool {str(address)[:10]}...: tick={pool.tick_current_index}, "
        f"spacing={pool.tick_spacing}, liquidity={pool.liquidity}"
    )
    return pool
