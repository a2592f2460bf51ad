"""
Two-phase position builder for Orca Whirlpools.

Открытие позиции разбито на две транзакции:
    TX1: создание mint позиции (NFT, 0 decimals) и его ATA
    TX2: init tick arrays (если нужно) + open_position + increase_liquidity

Состояния:
    UNFUNDED -> MINT_PENDING -> MINT_CONFIRMED -> LIQUIDITY_PENDING -> FUNDED
    любой шаг -> FAILED (с указанием failed_step)

Если TX1 подтверждена, а TX2 нет, результат содержит адреса mint и PDA
позиции и подпись TX1: пустую позицию нужно разобрать вручную.
"""

import logging
import struct
import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from config import COMPUTE_UNITS, PRIORITY_FEE_MICROLAMPORTS, WHIRLPOOL_PROGRAM_ID, LiquidityConfig
from ..errors import APPROXIMATE_QUOTE, BotError, LiquidityError, VALIDATION, map_liquidity_error
from ..math.ticks import TickRange, calculate_tick_range, validate_tick_range
from ..solana_tx import SolanaTxSender
from ..utils import retry_with_backoff
from .instructions import (
    MINT_ACCOUNT_SIZE,
    compute_budget_ixs,
    create_position_mint_ixs,
    increase_liquidity_ix,
    open_position_ix,
)
from .pda import get_associated_token_address, get_position_pda, resolve_tick_arrays
from .pool import fetch_whirlpool
from .quote import build_liquidity_quote
from .tick_arrays import AccountLookup, TickArrayEnsurer, fetch_account

logger = logging.getLogger(__name__)

ANCHOR_POSITION_MIN_SIZE = 216
SIMPLE_POSITION_MIN_SIZE = 16


class PositionState:
    UNFUNDED = "UNFUNDED"
    MINT_PENDING = "MINT_PENDING"
    MINT_CONFIRMED = "MINT_CONFIRMED"
    LIQUIDITY_PENDING = "LIQUIDITY_PENDING"
    FUNDED = "FUNDED"
    FAILED = "FAILED"


@dataclass
class PositionResult:
    success: bool
    state: str = PositionState.UNFUNDED
    position_mint: Optional[str] = None
    position_pda: Optional[str] = None
    tx1_signature: Optional[str] = None
    tx2_signature: Optional[str] = None
    tick_lower: Optional[int] = None
    tick_upper: Optional[int] = None
    liquidity: int = 0
    token_max_a: int = 0
    token_max_b: int = 0
    quote_approximate: bool = False
    simulated: bool = False
    failed_step: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False

    @property
    def needs_manual_cleanup(self) -> bool:
        """NFT позиции создан, но ликвидность не внесена."""
        return not self.success and self.tx1_signature is not None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PositionData:
    """Данные on-chain позиции."""
    liquidity: int
    tick_lower_index: int
    tick_upper_index: int
    fee_owed_a: int = 0
    fee_owed_b: int = 0


def decode_position(data: bytes) -> PositionData:
    """
    Декодировать аккаунт позиции.

    Поддерживаются два формата:
    - полный аккаунт Anchor (>= 216 байт): liquidity u128 @72,
      tick_lower i32 @88, tick_upper i32 @92, fee_owed_a u64 @112, fee_owed_b u64 @136
    - компактный: liquidity u64 @0, tick_lower i32 @8, tick_upper i32 @12,
      опционально fee_owed_a u64 @16, fee_owed_b u64 @24
    """
    if len(data) >= ANCHOR_POSITION_MIN_SIZE:
        liquidity = int.from_bytes(data[72:88], "little")
        tick_lower, tick_upper = struct.unpack_from("<ii", data, 88)
        (fee_a,) = struct.unpack_from("<Q", data, 112)
        (fee_b,) = struct.unpack_from("<Q", data, 136)
        return PositionData(liquidity, tick_lower, tick_upper, fee_a, fee_b)

    if len(data) < SIMPLE_POSITION_MIN_SIZE:
        raise LiquidityError(f"Position data too short: {len(data)} bytes", code=VALIDATION, deterministic=True)

    liquidity, tick_lower, tick_upper = struct.unpack_from("<Qii", data, 0)
    fee_a = struct.unpack_from("<Q", data, 16)[0] if len(data) >= 24 else 0
    fee_b = struct.unpack_from("<Q", data, 24)[0] if len(data) >= 32 else 0
    return PositionData(liquidity, tick_lower, tick_upper, fee_a, fee_b)


def fetch_position(rpc, position_pda: Pubkey) -> Optional[PositionData]:
    """None если позиции нет. Ошибка RPC пробрасывается как LiquidityError."""
    lookup = fetch_account(rpc, position_pda)
    if lookup.status == AccountLookup.NOT_FOUND:
        return None
    if lookup.status == AccountLookup.ERROR:
        raise LiquidityError(f"Cannot read position {position_pda}: {lookup.error}", retryable=True)
    return decode_position(lookup.data)


class PositionBuilder:
    """
    Открытие LP позиции в Whirlpool.

    Usage:
        builder = PositionBuilder(rpc, config.liquidity)
        result = builder.open_position(wallet, pool, PENGU_MINT, 1_000_000, 15.0, 50)
        if not result.success and result.needs_manual_cleanup:
            ...
    """

    def __init__(
        self,
        rpc,
        config: LiquidityConfig,
        program_id: Optional[Pubkey] = None,
        sender: Optional[SolanaTxSender] = None,
        ensurer: Optional[TickArrayEnsurer] = None,
        keypair_factory: Callable[[], Keypair] = Keypair,
        dry_run: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.rpc = rpc
        self.config = config
        self.program_id = program_id or Pubkey.from_string(WHIRLPOOL_PROGRAM_ID)
        self.sender = sender or SolanaTxSender(rpc)
        self.ensurer = ensurer or TickArrayEnsurer(rpc, self.program_id, sleep=sleep)
        self._keypair_factory = keypair_factory
        self.dry_run = dry_run
        self._sleep = sleep

    def _fail(self, result: PositionResult, step: str, error: Exception) -> PositionResult:
        err = error if isinstance(error, BotError) else map_liquidity_error(error)
        result.success = False
        result.state = PositionState.FAILED
        result.failed_step = step
        result.error = str(err)
        result.error_code = err.code
        result.retryable = err.retryable
        if result.tx1_signature:
            logger.error(
                f"Position failed at {step} after mint {result.position_mint} "
                f"(PDA {result.position_pda}) was created: {err}"
            )
        else:
            logger.error(f"Position failed at {step}: {err}")
        return result

    def _send_with_retries(self, instructions, payer: Keypair, signers) -> str:
        # send_instructions берёт свежий blockhash на каждой попытке
        return retry_with_backoff(
            lambda: self.sender.send_instructions(instructions, payer, signers),
            tries=self.config.tx_max_attempts,
            base_delay=1.0,
            sleep=self._sleep,
            label="position tx",
        )

    def resolve_range(
        self,
        tick_current: int,
        tick_spacing: int,
        range_percent: Optional[float],
        tick_lower: Optional[int] = None,
        tick_upper: Optional[int] = None,
    ) -> TickRange:
        """Явный диапазон или рассчитанный по проценту; всегда проверяется."""
        if tick_lower is None or tick_upper is None:
            pct = range_percent if range_percent is not None else self.config.range_percent
            computed = calculate_tick_range(tick_current, tick_spacing, pct)
            tick_lower, tick_upper = computed.tick_lower, computed.tick_upper
        return validate_tick_range(tick_lower, tick_upper, tick_spacing)

    def open_position(
        self,
        wallet,
        pool_address: Pubkey,
        input_mint: Pubkey,
        input_amount: int,
        range_percent: Optional[float] = None,
        slippage_bps: int = 50,
        tick_lower: Optional[int] = None,
        tick_upper: Optional[int] = None,
    ) -> PositionResult:
        """
        Открыть позицию и внести ликвидность.

        Args:
            wallet: Кошелёк (solana_keypair: funder и owner)
            pool_address: Адрес Whirlpool
            input_mint: Вносимый токен
            input_amount: Сумма в минимальных единицах
            range_percent: Ширина диапазона (по умолчанию из конфига)
            slippage_bps: Допуск для token max
            tick_lower, tick_upper: Явный диапазон вместо процента

        Returns:
            PositionResult; исключения не выбрасываются
        """
        result = PositionResult(success=False)
        owner = wallet.solana_keypair
        owner_pubkey = owner.pubkey()

        # ── UNFUNDED: пул, диапазон, quote ──
        try:
            pool = fetch_whirlpool(self.rpc, pool_address)
            tick_range = self.resolve_range(
                pool.tick_current_index, pool.tick_spacing, range_percent, tick_lower, tick_upper
            )
            result.tick_lower = tick_range.tick_lower
            result.tick_upper = tick_range.tick_upper

            quote = build_liquidity_quote(
                pool, input_mint, input_amount, tick_range.tick_lower, tick_range.tick_upper, slippage_bps
            )
        except Exception as e:
            return self._fail(result, PositionState.UNFUNDED, e)

        result.liquidity = quote.liquidity_amount
        result.token_max_a = quote.token_max_a
        result.token_max_b = quote.token_max_b
        result.quote_approximate = quote.approximate

        if quote.approximate and not self.config.allow_approximate_quote:
            return self._fail(result, PositionState.UNFUNDED, LiquidityError(
                "Refusing to submit a position built on an approximate quote",
                code=APPROXIMATE_QUOTE, deterministic=True,
            ))

        logger.info(
            f"Position range [{tick_range.tick_lower}, {tick_range.tick_upper}] "
            f"around tick {pool.tick_current_index}, liquidity={quote.liquidity_amount}"
        )

        if self.dry_run:
            logger.info("[DRY RUN] Position not submitted")
            result.success = True
            result.simulated = True
            return result

        try:
            mint_keypair = self._keypair_factory()
        except Exception as e:
            return self._fail(result, PositionState.UNFUNDED, LiquidityError(f"Key generation failed: {e}"))

        mint = mint_keypair.pubkey()
        position_pda, position_bump = get_position_pda(self.program_id, mint)
        position_ata = get_associated_token_address(owner_pubkey, mint)

        # ── MINT_PENDING: TX1 ──
        result.state = PositionState.MINT_PENDING
        try:
            rent = self.rpc.get_minimum_balance_for_rent_exemption(MINT_ACCOUNT_SIZE).value
            tx1_ixs = compute_budget_ixs(COMPUTE_UNITS, PRIORITY_FEE_MICROLAMPORTS) + create_position_mint_ixs(
                payer=owner_pubkey, owner=owner_pubkey, mint=mint, rent_lamports=rent,
            )
            result.tx1_signature = self._send_with_retries(tx1_ixs, owner, [owner, mint_keypair])
        except Exception as e:
            return self._fail(result, PositionState.MINT_PENDING, e)

        result.position_mint = str(mint)
        result.position_pda = str(position_pda)
        result.state = PositionState.MINT_CONFIRMED
        logger.info(f"Position mint {mint} created, PDA {position_pda}")

        # ── MINT_CONFIRMED: tick arrays ──
        try:
            pair = resolve_tick_arrays(
                self.program_id, pool.address, tick_range.tick_lower, tick_range.tick_upper, pool.tick_spacing
            )
            init_ixs = self.ensurer.ensure_pair(pool.address, pair, owner_pubkey)
        except Exception as e:
            return self._fail(result, PositionState.MINT_CONFIRMED, e)

        # ── LIQUIDITY_PENDING: TX2 ──
        result.state = PositionState.LIQUIDITY_PENDING
        try:
            tx2_ixs = compute_budget_ixs(COMPUTE_UNITS, PRIORITY_FEE_MICROLAMPORTS) + init_ixs
            tx2_ixs.append(open_position_ix(
                program_id=self.program_id,
                funder=owner_pubkey,
                owner=owner_pubkey,
                position=position_pda,
                position_bump=position_bump,
                position_mint=mint,
                position_token_account=position_ata,
                whirlpool=pool.address,
                tick_lower=tick_range.tick_lower,
                tick_upper=tick_range.tick_upper,
            ))
            tx2_ixs.append(increase_liquidity_ix(
                program_id=self.program_id,
                whirlpool=pool.address,
                position_authority=owner_pubkey,
                position=position_pda,
                position_token_account=position_ata,
                token_owner_account_a=get_associated_token_address(owner_pubkey, pool.token_mint_a),
                token_owner_account_b=get_associated_token_address(owner_pubkey, pool.token_mint_b),
                token_vault_a=pool.token_vault_a,
                token_vault_b=pool.token_vault_b,
                tick_array_lower=pair.lower_address,
                tick_array_upper=pair.upper_address,
                liquidity_amount=quote.liquidity_amount,
                token_max_a=quote.token_max_a,
                token_max_b=quote.token_max_b,
            ))
            result.tx2_signature = self._send_with_retries(tx2_ixs, owner, [owner, mint_keypair])
        except Exception as e:
            return self._fail(result, PositionState.LIQUIDITY_PENDING, e)

        result.state = PositionState.FUNDED
        result.success = True
        logger.info(f"Position funded: {position_pda} (tx {result.tx2_signature})")
        return result
