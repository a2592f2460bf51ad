"""
Tests for src.orca.position (two-phase position opening).

Covers:
    - decode_position (compact and Anchor layouts)
    - PositionBuilder.open_position: happy path, partial success,
      tick range rejection, approximate quote refusal, dry run
"""

import struct

import pytest
from unittest.mock import Mock
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from conftest import account_response, make_whirlpool_bytes
from config import LiquidityConfig
from src.errors import APPROXIMATE_QUOTE, INVALID_TICK_RANGE, LiquidityError
from src.orca.position import (
    PositionBuilder,
    PositionState,
    decode_position,
    fetch_position,
)
from src.orca.pda import get_position_pda


# ===================================================================
# decode_position
# ===================================================================
class TestDecodePosition:
    """Both position layouts."""

    def test_compact_layout(self):
        data = struct.pack("<Qii", 12345, -128, 256)
        pos = decode_position(data)
        assert (pos.liquidity, pos.tick_lower_index, pos.tick_upper_index) == (12345, -128, 256)
        assert pos.fee_owed_a == 0
        assert pos.fee_owed_b == 0

    def test_compact_layout_with_fees(self):
        data = struct.pack("<QiiQQ", 1, -64, 64, 10, 20)
        pos = decode_position(data)
        assert (pos.fee_owed_a, pos.fee_owed_b) == (10, 20)

    def test_anchor_layout(self):
        data = bytearray(216)
        data[72:88] = (2 ** 80).to_bytes(16, "little")
        struct.pack_into("<ii", data, 88, -23040, -17024)
        struct.pack_into("<Q", data, 112, 7)
        struct.pack_into("<Q", data, 136, 9)
        pos = decode_position(bytes(data))
        assert pos.liquidity == 2 ** 80
        assert (pos.tick_lower_index, pos.tick_upper_index) == (-23040, -17024)
        assert (pos.fee_owed_a, pos.fee_owed_b) == (7, 9)

    def test_too_short(self):
        with pytest.raises(LiquidityError):
            decode_position(b"\x00" * 15)


class TestFetchPosition:
    """On-chain read by position PDA."""

    def test_found(self, mock_rpc):
        mock_rpc.get_account_info.return_value = account_response(struct.pack("<Qii", 5, -64, 64))
        assert fetch_position(mock_rpc, Pubkey.new_unique()).liquidity == 5

    def test_not_found(self, mock_rpc):
        assert fetch_position(mock_rpc, Pubkey.new_unique()) is None

    def test_rpc_error(self, mock_rpc):
        mock_rpc.get_account_info.side_effect = ConnectionError("reset")
        with pytest.raises(LiquidityError) as exc:
            fetch_position(mock_rpc, Pubkey.new_unique())
        assert exc.value.retryable


# ===================================================================
# PositionBuilder
# ===================================================================
@pytest.fixture
def mint_keypair():
    return Keypair()


@pytest.fixture
def sender():
    sender = Mock()
    sender.send_instructions = Mock(side_effect=["tx1_sig", "tx2_sig"])
    return sender


@pytest.fixture
def ensurer():
    return Mock(ensure_pair=Mock(return_value=[]))


def make_builder(rpc, program_id, sender, ensurer, mint_keypair, no_sleep, **config_kwargs):
    config = LiquidityConfig(tx_max_attempts=3, **config_kwargs)
    return PositionBuilder(
        rpc,
        config,
        program_id=program_id,
        sender=sender,
        ensurer=ensurer,
        keypair_factory=lambda: mint_keypair,
        sleep=no_sleep,
    )


class TestOpenPosition:
    """open_position never raises; state tracks the failed step."""

    @pytest.fixture(autouse=True)
    def pool_rpc(self, mock_rpc, mints):
        mock_rpc.get_account_info.return_value = account_response(
            make_whirlpool_bytes(mint_a=mints[0], mint_b=mints[1])
        )
        return mock_rpc

    def test_happy_path(self, mock_rpc, program_id, sender, ensurer, mint_keypair, no_sleep,
                        wallet, pool_address, mints):
        builder = make_builder(mock_rpc, program_id, sender, ensurer, mint_keypair, no_sleep)
        result = builder.open_position(wallet, pool_address, mints[0], 1_000_000, range_percent=15)

        assert result.success is True
        assert result.state == PositionState.FUNDED
        assert (result.tick_lower, result.tick_upper) == (-23040, -17024)
        assert result.tx1_signature == "tx1_sig"
        assert result.tx2_signature == "tx2_sig"
        assert result.position_mint == str(mint_keypair.pubkey())
        assert result.liquidity > 0
        assert sender.send_instructions.call_count == 2

    def test_tx2_ixs_target_position_pda(self, mock_rpc, program_id, sender, ensurer, mint_keypair,
                                         no_sleep, wallet, pool_address, mints):
        builder = make_builder(mock_rpc, program_id, sender, ensurer, mint_keypair, no_sleep)
        builder.open_position(wallet, pool_address, mints[0], 1_000_000, range_percent=15)

        pda, _ = get_position_pda(program_id, mint_keypair.pubkey())
        tx2_ixs = sender.send_instructions.call_args_list[1][0][0]
        increase = tx2_ixs[-1]
        assert increase.accounts[3].pubkey == pda

    def test_partial_success_reports_mint_and_pda(self, mock_rpc, program_id, sender, ensurer,
                                                  mint_keypair, no_sleep, wallet, pool_address, mints):
        sender.send_instructions.side_effect = ["tx1_sig", Exception("custom program error: 0x1771")]
        builder = make_builder(mock_rpc, program_id, sender, ensurer, mint_keypair, no_sleep)
        result = builder.open_position(wallet, pool_address, mints[0], 1_000_000, range_percent=15)

        pda, _ = get_position_pda(program_id, mint_keypair.pubkey())
        assert result.success is False
        assert result.state == PositionState.FAILED
        assert result.failed_step == PositionState.LIQUIDITY_PENDING
        assert result.position_mint == str(mint_keypair.pubkey())
        assert result.position_pda == str(pda)
        assert result.tx1_signature == "tx1_sig"
        assert result.tx2_signature is None
        assert result.needs_manual_cleanup is True

    def test_tx1_failure(self, mock_rpc, program_id, sender, ensurer, mint_keypair, no_sleep,
                         wallet, pool_address, mints):
        sender.send_instructions.side_effect = Exception("insufficient lamports")
        builder = make_builder(mock_rpc, program_id, sender, ensurer, mint_keypair, no_sleep)
        result = builder.open_position(wallet, pool_address, mints[0], 1_000_000, range_percent=15)

        assert result.success is False
        assert result.failed_step == PositionState.MINT_PENDING
        assert result.needs_manual_cleanup is False
        ensurer.ensure_pair.assert_not_called()

    def test_tx_retried_on_network_error(self, mock_rpc, program_id, sender, ensurer, mint_keypair,
                                         no_sleep, wallet, pool_address, mints):
        sender.send_instructions.side_effect = [ConnectionError("connection reset"), "tx1_sig", "tx2_sig"]
        builder = make_builder(mock_rpc, program_id, sender, ensurer, mint_keypair, no_sleep)
        result = builder.open_position(wallet, pool_address, mints[0], 1_000_000, range_percent=15)

        assert result.success is True
        assert sender.send_instructions.call_count == 3
        assert len(no_sleep.calls) == 1

    def test_misaligned_ticks_rejected_before_any_tx(self, mock_rpc, program_id, sender, ensurer,
                                                     mint_keypair, no_sleep, wallet, pool_address, mints):
        mock_rpc.get_account_info.return_value = account_response(
            make_whirlpool_bytes(tick_spacing=8, tick_current=0, mint_a=mints[0], mint_b=mints[1])
        )
        builder = make_builder(mock_rpc, program_id, sender, ensurer, mint_keypair, no_sleep)
        result = builder.open_position(wallet, pool_address, mints[0], 1_000_000,
                                       tick_lower=-100, tick_upper=100)

        assert result.success is False
        assert result.error_code == INVALID_TICK_RANGE
        assert "not a multiple of tickSpacing" in result.error
        assert result.failed_step == PositionState.UNFUNDED
        sender.send_instructions.assert_not_called()
        mock_rpc.get_minimum_balance_for_rent_exemption.assert_not_called()

    def test_zero_tick_collapsed_range_rejected(self, mock_rpc, program_id, sender, ensurer,
                                                mint_keypair, no_sleep, wallet, pool_address, mints):
        mock_rpc.get_account_info.return_value = account_response(
            make_whirlpool_bytes(tick_current=0, mint_a=mints[0], mint_b=mints[1])
        )
        builder = make_builder(mock_rpc, program_id, sender, ensurer, mint_keypair, no_sleep)
        result = builder.open_position(wallet, pool_address, mints[0], 1_000_000, range_percent=15)

        assert result.success is False
        assert result.error_code == INVALID_TICK_RANGE
        sender.send_instructions.assert_not_called()

    def test_approximate_quote_refused(self, mock_rpc, program_id, sender, ensurer, mint_keypair,
                                       no_sleep, wallet, pool_address):
        builder = make_builder(mock_rpc, program_id, sender, ensurer, mint_keypair, no_sleep)
        result = builder.open_position(wallet, pool_address, Pubkey.new_unique(), 1_000_000, range_percent=15)

        assert result.success is False
        assert result.error_code == APPROXIMATE_QUOTE
        assert result.quote_approximate is True
        sender.send_instructions.assert_not_called()

    def test_approximate_quote_allowed(self, mock_rpc, program_id, sender, ensurer, mint_keypair,
                                       no_sleep, wallet, pool_address):
        builder = make_builder(mock_rpc, program_id, sender, ensurer, mint_keypair, no_sleep,
                               allow_approximate_quote=True)
        result = builder.open_position(wallet, pool_address, Pubkey.new_unique(), 1_000_000, range_percent=15)

        assert result.success is True
        assert result.quote_approximate is True

    def test_dry_run_sends_nothing(self, mock_rpc, program_id, sender, ensurer, mint_keypair,
                                   no_sleep, wallet, pool_address, mints):
        builder = make_builder(mock_rpc, program_id, sender, ensurer, mint_keypair, no_sleep)
        builder.dry_run = True
        result = builder.open_position(wallet, pool_address, mints[0], 1_000_000, range_percent=15)

        assert result.success is True
        assert result.simulated is True
        assert result.tick_lower == -23040
        sender.send_instructions.assert_not_called()

    def test_missing_pool(self, mock_rpc, program_id, sender, ensurer, mint_keypair, no_sleep,
                          wallet, pool_address, mints):
        mock_rpc.get_account_info.return_value = account_response(None)
        builder = make_builder(mock_rpc, program_id, sender, ensurer, mint_keypair, no_sleep)
        result = builder.open_position(wallet, pool_address, mints[0], 1_000_000)

        assert result.success is False
        assert result.failed_step == PositionState.UNFUNDED
        assert result.retryable is False
