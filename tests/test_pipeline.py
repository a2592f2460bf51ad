"""
Tests for src.pipeline (LiteBot step sequencing).
"""

import random

import pytest
from unittest.mock import Mock
from solders.pubkey import Pubkey

from config import PENGU_MINT, BotConfig
from src.errors import INSUFFICIENT_BALANCE, NO_ROUTE, WALLET_NOT_FOUND, WalletError
from src.exchanges import WithdrawalResult
from src.jupiter import SwapResult
from src.lifi import BridgeResult
from src.orca.position import PositionResult, PositionState
from src.pipeline import INTER_WALLET_DELAY, LiteBot, PipelineResult

STEP_NAMES = ["balances", "withdrawal", "bridge", "sol", "swap", "liquidity"]


@pytest.fixture
def config():
    return BotConfig(dry_run=True)


def make_wallet_manager(wallet, sol=0.0, usdc=0.0, pengu=0.0):
    manager = Mock()
    manager.indices = [0, 1]
    manager.get_wallet = Mock(return_value=wallet)
    manager.get_sol_balance = Mock(return_value=sol)
    balances = {"USDC": usdc, "PENGU": pengu}
    manager.get_token_balance = Mock(side_effect=lambda w, symbol: balances[symbol])
    return manager


@pytest.fixture
def exchanges():
    manager = Mock(enabled=False)
    manager.withdraw_random = Mock(return_value=WithdrawalResult(
        success=True, exchange_used="bybit", tx_id="w1", amount=12.34))
    return manager


@pytest.fixture
def bridge():
    manager = Mock()
    manager.bridge_usdc_to_solana = Mock(return_value=BridgeResult(
        success=True, route="cctp", amount=1.0, simulated=True))
    return manager


@pytest.fixture
def swaps():
    manager = Mock()
    manager.swap_usdc_to_sol = Mock(return_value=SwapResult(success=True, out_amount=70_000, simulated=True))
    manager.swap_usdc_to_pengu = Mock(return_value=SwapResult(success=True, out_amount=350_000, simulated=True))
    return manager


@pytest.fixture
def positions():
    builder = Mock()
    builder.open_position = Mock(return_value=PositionResult(
        success=True, state=PositionState.FUNDED, simulated=True, tick_lower=-23040, tick_upper=-17024))
    return builder


def make_bot(config, wallet_manager, exchanges, bridge, swaps, positions, **kwargs):
    kwargs.setdefault("sleep", lambda s: None)
    return LiteBot(config, wallet_manager, exchanges, bridge, swaps, positions, **kwargs)


class TestRunWallet:
    """Step order, skips and stop-on-failure."""

    def test_empty_wallet_dry_run(self, config, wallet, exchanges, bridge, swaps, positions):
        bot = make_bot(config, make_wallet_manager(wallet), exchanges, bridge, swaps, positions)
        result = bot.run_wallet(0)

        assert result.success
        assert result.simulated
        assert [s.name for s in result.steps] == STEP_NAMES
        assert result.steps[1].skipped
        bridge.bridge_usdc_to_solana.assert_called_once_with(wallet, 1.0)
        swaps.swap_usdc_to_sol.assert_called_once()
        swaps.swap_usdc_to_pengu.assert_called_once()

    def test_liquidity_arguments(self, config, wallet, exchanges, bridge, swaps, positions):
        bot = make_bot(config, make_wallet_manager(wallet), exchanges, bridge, swaps, positions)
        bot.run_wallet(0)

        args, kwargs = positions.open_position.call_args
        assert args[0] is wallet
        assert args[1] == Pubkey.from_string(config.liquidity.pool_address)
        assert args[2] == Pubkey.from_string(PENGU_MINT)
        assert args[3] == 50_000
        assert kwargs["slippage_bps"] == config.swap.slippage_bps

    def test_deposit_uses_position_size_and_allocation(self, config, wallet, exchanges, bridge, swaps,
                                                       positions):
        config.liquidity.position_size_pengu = 0.2
        config.liquidity.capital_allocation_pct = 50
        bot = make_bot(config, make_wallet_manager(wallet, sol=1.0, usdc=5.0, pengu=10.0),
                       exchanges, bridge, swaps, positions)
        bot.run_wallet(0)

        assert positions.open_position.call_args[0][3] == 100_000

    def test_deposit_capped_by_pengu_balance(self, config, wallet, exchanges, bridge, swaps, positions):
        bot = make_bot(config, make_wallet_manager(wallet, sol=1.0, usdc=5.0, pengu=0.03),
                       exchanges, bridge, swaps, positions)
        result = bot.run_wallet(0)

        assert result.success
        assert positions.open_position.call_args[0][3] == 30_000

    def test_usdc_pengu_pool_preferred(self, config, wallet, exchanges, bridge, swaps, positions):
        usdc_pengu = Pubkey.new_unique()
        config.liquidity.usdc_pengu_pool = str(usdc_pengu)
        bot = make_bot(config, make_wallet_manager(wallet, sol=1.0, usdc=5.0, pengu=10.0),
                       exchanges, bridge, swaps, positions)
        bot.run_wallet(0)

        assert positions.open_position.call_args[0][1] == usdc_pengu

    def test_funded_wallet_only_opens_position(self, config, wallet, exchanges, bridge, swaps, positions):
        manager = make_wallet_manager(wallet, sol=1.0, usdc=5.0, pengu=10.0)
        bot = make_bot(config, manager, exchanges, bridge, swaps, positions)
        result = bot.run_wallet(0)

        assert result.success
        assert [s.skipped for s in result.steps] == [False, True, True, True, True, False]
        bridge.bridge_usdc_to_solana.assert_not_called()
        swaps.swap_usdc_to_sol.assert_not_called()
        swaps.swap_usdc_to_pengu.assert_not_called()

    def test_bridge_failure_stops_wallet(self, config, wallet, exchanges, bridge, swaps, positions):
        bridge.bridge_usdc_to_solana.return_value = BridgeResult(success=False, error="no route",
                                                                 error_code=NO_ROUTE)
        bot = make_bot(config, make_wallet_manager(wallet), exchanges, bridge, swaps, positions)
        result = bot.run_wallet(0)

        assert not result.success
        assert result.failed_step == "bridge"
        assert result.steps[-1].error_code == NO_ROUTE
        swaps.swap_usdc_to_sol.assert_not_called()
        positions.open_position.assert_not_called()

    def test_withdrawal_amount_is_bridged(self, config, wallet, exchanges, bridge, swaps, positions):
        exchanges.enabled = True
        bot = make_bot(config, make_wallet_manager(wallet), exchanges, bridge, swaps, positions)
        result = bot.run_wallet(0)

        assert result.success
        exchanges.withdraw_random.assert_called_once_with([wallet], network_chain=config.bridge.from_chain)
        bridge.bridge_usdc_to_solana.assert_called_once_with(wallet, 12.34)

    def test_withdrawal_failure_does_not_stop(self, config, wallet, exchanges, bridge, swaps, positions):
        exchanges.enabled = True
        exchanges.withdraw_random.return_value = WithdrawalResult(success=False, error="insufficient",
                                                                  error_code=INSUFFICIENT_BALANCE)
        bot = make_bot(config, make_wallet_manager(wallet), exchanges, bridge, swaps, positions)
        result = bot.run_wallet(0)

        assert result.success
        assert result.steps[1].success is False
        bridge.bridge_usdc_to_solana.assert_called_once_with(wallet, 1.0)

    def test_not_enough_usdc_for_sol(self, config, wallet, exchanges, bridge, swaps, positions):
        bot = make_bot(config, make_wallet_manager(wallet), exchanges, bridge, swaps, positions,
                       bridge_amount=0.001)
        result = bot.run_wallet(0)

        assert result.failed_step == "sol"
        assert result.steps[-1].error_code == INSUFFICIENT_BALANCE
        swaps.swap_usdc_to_sol.assert_not_called()

    def test_swap_failure(self, config, wallet, exchanges, bridge, swaps, positions):
        swaps.swap_usdc_to_pengu.return_value = SwapResult(success=False, error="no route", error_code=NO_ROUTE)
        bot = make_bot(config, make_wallet_manager(wallet, sol=1.0, usdc=5.0), exchanges, bridge, swaps, positions)
        result = bot.run_wallet(0)

        assert result.failed_step == "swap"
        positions.open_position.assert_not_called()

    def test_partial_position_reported(self, config, wallet, exchanges, bridge, swaps, positions):
        positions.open_position.return_value = PositionResult(
            success=False, state=PositionState.FAILED, failed_step=PositionState.LIQUIDITY_PENDING,
            position_mint="Mint111", position_pda="Pda111", tx1_signature="sig1", error="tx2 failed",
        )
        bot = make_bot(config, make_wallet_manager(wallet, sol=1.0, usdc=5.0, pengu=10.0),
                       exchanges, bridge, swaps, positions)
        result = bot.run_wallet(0)

        assert not result.success
        assert result.failed_step == "liquidity"
        data = result.steps[-1].data
        assert data["position_mint"] == "Mint111"
        assert data["position_pda"] == "Pda111"
        assert data["failed_step"] == PositionState.LIQUIDITY_PENDING

    def test_live_bridge_rereads_balance(self, config, wallet, exchanges, bridge, swaps, positions):
        bridge.bridge_usdc_to_solana.return_value = BridgeResult(success=True, route="cctp", tx_hash="0x1",
                                                                 arrived=True)
        manager = make_wallet_manager(wallet, sol=1.0, pengu=10.0)
        bot = make_bot(config, manager, exchanges, bridge, swaps, positions, dry_run=False)
        result = bot.run_wallet(0)

        assert not result.simulated
        usdc_reads = [c for c in manager.get_token_balance.call_args_list if c[0][1] == "USDC"]
        assert len(usdc_reads) == 2

    def test_balance_error_reported(self, config, wallet, exchanges, bridge, swaps, positions):
        manager = make_wallet_manager(wallet)
        manager.get_sol_balance.side_effect = WalletError("getBalance failed", retryable=True)
        bot = make_bot(config, manager, exchanges, bridge, swaps, positions)
        result = bot.run_wallet(0)

        assert result.failed_step == "balances"
        assert len(result.steps) == 1

    def test_unknown_wallet(self, config, wallet, exchanges, bridge, swaps, positions):
        manager = make_wallet_manager(wallet)
        manager.get_wallet.side_effect = WalletError("Wallet 9 not found", code=WALLET_NOT_FOUND)
        bot = make_bot(config, manager, exchanges, bridge, swaps, positions)
        result = bot.run_wallet(9)

        assert not result.success
        assert result.failed_step == "wallet"
        assert result.steps[0].error_code == WALLET_NOT_FOUND

    def test_to_dict(self, config, wallet, exchanges, bridge, swaps, positions):
        bot = make_bot(config, make_wallet_manager(wallet), exchanges, bridge, swaps, positions)
        data = bot.run_wallet(0).to_dict()
        assert data["wallet_index"] == 0
        assert [s["name"] for s in data["steps"]] == STEP_NAMES


class TestRunAll:
    """Sequential processing with random pauses."""

    def test_all_wallets(self, config, wallet, exchanges, bridge, swaps, positions, no_sleep):
        bot = make_bot(config, make_wallet_manager(wallet), exchanges, bridge, swaps, positions,
                       sleep=no_sleep, rng=random.Random(1))
        results = bot.run_all()

        assert len(results) == 2
        assert all(isinstance(r, PipelineResult) for r in results)
        assert len(no_sleep.calls) == 1
        low, high = INTER_WALLET_DELAY
        assert low <= no_sleep.calls[0] <= high

    def test_explicit_indices(self, config, wallet, exchanges, bridge, swaps, positions, no_sleep):
        bot = make_bot(config, make_wallet_manager(wallet), exchanges, bridge, swaps, positions, sleep=no_sleep)
        results = bot.run_all([5])
        assert [r.wallet_index for r in results] == [5]
        assert no_sleep.calls == []

    def test_failure_does_not_stop_others(self, config, wallet, exchanges, bridge, swaps, positions, no_sleep):
        bridge.bridge_usdc_to_solana.side_effect = [
            BridgeResult(success=False, error="timeout"),
            BridgeResult(success=True, simulated=True),
        ]
        bot = make_bot(config, make_wallet_manager(wallet), exchanges, bridge, swaps, positions, sleep=no_sleep)
        results = bot.run_all()
        assert [r.success for r in results] == [False, True]
