"""
Tests for src.orca: pool decoding, PDAs, tick arrays, quotes, instructions.
"""

import struct

import pytest
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID

from conftest import account_response, make_whirlpool_bytes
from src.errors import LiquidityError, RPC_UNAVAILABLE, VALIDATION
from src.math.ticks import tick_array_start_index, tick_to_sqrt_price_x64
from src.orca.instructions import (
    INCREASE_LIQUIDITY_DISCRIMINATOR,
    OPEN_POSITION_DISCRIMINATOR,
    MINT_ACCOUNT_SIZE,
    anchor_discriminator,
    create_position_mint_ixs,
    increase_liquidity_ix,
    initialize_tick_array_ix,
    open_position_ix,
)
from src.orca.pda import get_associated_token_address, get_position_pda, get_tick_array_pda, resolve_tick_arrays
from src.orca.pool import WHIRLPOOL_MIN_SIZE, decode_whirlpool, fetch_whirlpool
from src.orca.quote import SOURCE_EXACT, SOURCE_FALLBACK, build_liquidity_quote, fallback_quote
from src.orca.tick_arrays import AccountLookup, TickArrayEnsurer, fetch_account


# ===================================================================
# Whirlpool decoding
# ===================================================================
class TestDecodeWhirlpool:
    """Fixed-offset Anchor layout."""

    def test_fields(self, whirlpool, pool_address, mints):
        assert whirlpool.address == pool_address
        assert whirlpool.tick_spacing == 64
        assert whirlpool.tick_current_index == -20000
        assert whirlpool.fee_rate == 3000
        assert whirlpool.liquidity == 10 ** 12
        assert whirlpool.sqrt_price == tick_to_sqrt_price_x64(-20000)
        assert whirlpool.token_mint_a == mints[0]
        assert whirlpool.token_mint_b == mints[1]

    def test_has_mint(self, whirlpool, mints):
        assert whirlpool.has_mint(mints[0])
        assert not whirlpool.has_mint(Pubkey.new_unique())

    def test_vaults(self, pool_address):
        vault_a, vault_b = Pubkey.new_unique(), Pubkey.new_unique()
        pool = decode_whirlpool(pool_address, make_whirlpool_bytes(vault_a=vault_a, vault_b=vault_b))
        assert pool.token_vault_a == vault_a
        assert pool.token_vault_b == vault_b

    def test_short_data_rejected(self, pool_address):
        with pytest.raises(LiquidityError) as exc:
            decode_whirlpool(pool_address, b"\x00" * (WHIRLPOOL_MIN_SIZE - 1))
        assert exc.value.code == VALIDATION


class TestFetchWhirlpool:
    """Not found vs RPC error."""

    def test_found(self, mock_rpc, pool_address):
        mock_rpc.get_account_info.return_value = account_response(make_whirlpool_bytes(tick_spacing=8))
        assert fetch_whirlpool(mock_rpc, pool_address).tick_spacing == 8

    def test_not_found_is_deterministic(self, mock_rpc, pool_address):
        with pytest.raises(LiquidityError) as exc:
            fetch_whirlpool(mock_rpc, pool_address)
        assert exc.value.retryable is False

    def test_rpc_error_is_retryable(self, mock_rpc, pool_address):
        mock_rpc.get_account_info.side_effect = ConnectionError("connection reset")
        with pytest.raises(LiquidityError) as exc:
            fetch_whirlpool(mock_rpc, pool_address)
        assert exc.value.code == RPC_UNAVAILABLE
        assert exc.value.retryable is True


# ===================================================================
# PDAs
# ===================================================================
class TestPda:
    """Position and tick array addresses."""

    def test_position_pda_is_deterministic(self, program_id):
        mint = Pubkey.new_unique()
        assert get_position_pda(program_id, mint) == get_position_pda(program_id, mint)

    def test_position_pda_matches_seeds(self, program_id):
        mint = Pubkey.new_unique()
        expected = Pubkey.find_program_address([b"position", bytes(mint)], program_id)
        assert get_position_pda(program_id, mint) == expected

    def test_tick_array_seed_is_decimal_string(self, program_id, pool_address):
        expected, _ = Pubkey.find_program_address([b"tick_array", bytes(pool_address), b"-5632"], program_id)
        assert get_tick_array_pda(program_id, pool_address, -5632) == expected

    def test_negative_and_positive_differ(self, program_id, pool_address):
        assert get_tick_array_pda(program_id, pool_address, -5632) != get_tick_array_pda(program_id, pool_address, 5632)


class TestResolveTickArrays:
    """Lower and upper arrays of a range."""

    def test_distinct_arrays(self, program_id, pool_address):
        pair = resolve_tick_arrays(program_id, pool_address, -23040, -17024, 64)
        assert pair.lower_start == tick_array_start_index(-23040, 64) == -28160
        assert pair.upper_start == tick_array_start_index(-17024, 64) == -22528
        assert not pair.is_shared
        assert len(pair.unique()) == 2

    def test_shared_array_listed_once(self, program_id, pool_address):
        pair = resolve_tick_arrays(program_id, pool_address, 0, 128, 64)
        assert pair.is_shared
        assert pair.lower_address == pair.upper_address
        assert pair.unique() == [(0, pair.lower_address)]


# ===================================================================
# Tick array existence
# ===================================================================
class TestFetchAccount:
    """AccountLookup statuses."""

    def test_not_found(self, mock_rpc):
        assert fetch_account(mock_rpc, Pubkey.new_unique()).status == AccountLookup.NOT_FOUND

    def test_found(self, mock_rpc):
        mock_rpc.get_account_info.return_value = account_response(b"\x01\x02")
        lookup = fetch_account(mock_rpc, Pubkey.new_unique())
        assert lookup.exists
        assert lookup.data == b"\x01\x02"

    def test_transport_error_is_not_missing(self, mock_rpc):
        mock_rpc.get_account_info.side_effect = TimeoutError("timed out")
        lookup = fetch_account(mock_rpc, Pubkey.new_unique())
        assert lookup.status == AccountLookup.ERROR
        assert not lookup.exists


class TestTickArrayEnsurer:
    """Only confirmed-missing arrays get an initialize instruction."""

    def test_existing_array_needs_nothing(self, mock_rpc, program_id, pool_address, no_sleep):
        mock_rpc.get_account_info.return_value = account_response(b"\x00" * 16)
        ensurer = TickArrayEnsurer(mock_rpc, program_id, sleep=no_sleep)
        assert ensurer.ensure(pool_address, Pubkey.new_unique(), 0, Pubkey.new_unique()) is None

    def test_missing_array_gets_instruction(self, mock_rpc, program_id, pool_address, no_sleep):
        ensurer = TickArrayEnsurer(mock_rpc, program_id, sleep=no_sleep)
        ix = ensurer.ensure(pool_address, Pubkey.new_unique(), -5632, Pubkey.new_unique())
        assert ix is not None
        assert ix.program_id == program_id
        assert struct.unpack("<i", bytes(ix.data)[8:12])[0] == -5632

    def test_shared_pair_initialized_once(self, mock_rpc, program_id, pool_address, no_sleep):
        ensurer = TickArrayEnsurer(mock_rpc, program_id, sleep=no_sleep)
        pair = resolve_tick_arrays(program_id, pool_address, 0, 128, 64)
        assert len(ensurer.ensure_pair(pool_address, pair, Pubkey.new_unique())) == 1
        assert mock_rpc.get_account_info.call_count == 1

    def test_rpc_error_retried_then_raised(self, mock_rpc, program_id, pool_address, no_sleep):
        mock_rpc.get_account_info.side_effect = ConnectionError("connection refused")
        ensurer = TickArrayEnsurer(mock_rpc, program_id, max_attempts=3, sleep=no_sleep)
        with pytest.raises(LiquidityError) as exc:
            ensurer.ensure(pool_address, Pubkey.new_unique(), 0, Pubkey.new_unique())
        assert exc.value.code == RPC_UNAVAILABLE
        assert mock_rpc.get_account_info.call_count == 3
        assert len(no_sleep.calls) == 2

    def test_rpc_error_then_recovery(self, mock_rpc, program_id, pool_address, no_sleep):
        mock_rpc.get_account_info.side_effect = [ConnectionError("reset"), account_response(b"\x00")]
        ensurer = TickArrayEnsurer(mock_rpc, program_id, sleep=no_sleep)
        assert ensurer.ensure(pool_address, Pubkey.new_unique(), 0, Pubkey.new_unique()) is None


# ===================================================================
# Quote
# ===================================================================
class TestLiquidityQuote:
    """Exact CLMM quote with approximate fallback."""

    def test_exact_quote_token_a(self, whirlpool, mints):
        quote = build_liquidity_quote(whirlpool, mints[0], 1_000_000, -23040, -17024, 50)
        assert quote.approximate is False
        assert quote.source == SOURCE_EXACT
        assert quote.liquidity_amount > 0
        assert quote.token_max_a >= quote.token_est_a
        assert quote.token_max_b >= quote.token_est_b
        assert quote.token_est_b > 0

    def test_exact_quote_token_b(self, whirlpool, mints):
        quote = build_liquidity_quote(whirlpool, mints[1], 1_000_000, -23040, -17024, 50)
        assert quote.approximate is False
        assert quote.token_est_b <= 1_000_001

    def test_unknown_mint_falls_back(self, whirlpool):
        quote = build_liquidity_quote(whirlpool, Pubkey.new_unique(), 1_000, -23040, -17024, 50)
        assert quote.approximate is True
        assert quote.source == SOURCE_FALLBACK
        assert quote == fallback_quote(1_000)

    def test_fallback_values(self):
        quote = fallback_quote(1_001)
        assert quote.liquidity_amount == 500
        assert quote.token_max_a == 1_001
        assert quote.token_max_b == 500

    def test_negative_amount_raises(self, whirlpool, mints):
        with pytest.raises(ValueError):
            build_liquidity_quote(whirlpool, mints[0], -1, -23040, -17024, 50)


# ===================================================================
# Instructions
# ===================================================================
class TestInstructions:
    """Anchor instruction encoding."""

    def test_discriminator_is_eight_bytes(self):
        assert len(anchor_discriminator("open_position")) == 8
        assert OPEN_POSITION_DISCRIMINATOR != INCREASE_LIQUIDITY_DISCRIMINATOR

    def test_open_position_data(self, program_id, pool_address):
        keys = [Pubkey.new_unique() for _ in range(5)]
        ix = open_position_ix(program_id, keys[0], keys[1], keys[2], 254, keys[3], keys[4],
                              pool_address, -23040, -17024)
        data = bytes(ix.data)
        assert data[:8] == OPEN_POSITION_DISCRIMINATOR
        assert struct.unpack("<Bii", data[8:]) == (254, -23040, -17024)
        assert ix.accounts[3].pubkey == keys[3]
        assert ix.accounts[3].is_signer

    def test_increase_liquidity_uses_position_pda(self, program_id, pool_address):
        position_pda = Pubkey.new_unique()
        others = [Pubkey.new_unique() for _ in range(8)]
        ix = increase_liquidity_ix(program_id, pool_address, others[0], position_pda, *others[1:],
                                   liquidity_amount=2 ** 70, token_max_a=5, token_max_b=7)
        data = bytes(ix.data)
        assert data[:8] == INCREASE_LIQUIDITY_DISCRIMINATOR
        assert int.from_bytes(data[8:24], "little") == 2 ** 70
        assert struct.unpack("<QQ", data[24:]) == (5, 7)
        assert ix.accounts[3].pubkey == position_pda
        assert ix.accounts[3].is_writable

    def test_u64_overflow_raises(self, program_id, pool_address):
        keys = [Pubkey.new_unique() for _ in range(9)]
        with pytest.raises(ValueError):
            increase_liquidity_ix(program_id, pool_address, *keys, liquidity_amount=1,
                                  token_max_a=2 ** 64, token_max_b=0)

    def test_position_mint_instructions(self):
        payer, mint = Pubkey.new_unique(), Pubkey.new_unique()
        create, init_mint, ata = create_position_mint_ixs(payer, payer, mint, rent_lamports=1_461_600)

        assert create.program_id == SYSTEM_PROGRAM_ID
        assert init_mint.program_id == TOKEN_PROGRAM_ID
        assert ata.program_id == ASSOCIATED_TOKEN_PROGRAM_ID
        data = bytes(init_mint.data)
        # InitializeMint: тип 0, decimals 0, mint authority = владелец
        assert data[0] == 0
        assert data[1] == 0
        assert data[2:34] == bytes(payer)
        assert init_mint.accounts[0].pubkey == mint
        assert ata.accounts[1].pubkey == get_associated_token_address(payer, mint)
        assert MINT_ACCOUNT_SIZE == 82

    def test_initialize_tick_array(self, program_id, pool_address):
        tick_array, funder = Pubkey.new_unique(), Pubkey.new_unique()
        ix = initialize_tick_array_ix(program_id, pool_address, tick_array, funder, 5632)
        assert struct.unpack("<i", bytes(ix.data)[8:]) == (5632,)
        assert ix.accounts[1].pubkey == funder
        assert ix.accounts[1].is_signer
