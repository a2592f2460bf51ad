"""
Shared fixtures for all tests.
"""

import struct

import pytest
from unittest.mock import MagicMock, Mock
from eth_account import Account
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from config import (
    BridgeConfig,
    EvmConfig,
    ExchangeConfig,
    LiquidityConfig,
    MonitorConfig,
    SwapConfig,
)
from src.orca.pool import (
    FEE_RATE_OFFSET,
    LIQUIDITY_OFFSET,
    SQRT_PRICE_OFFSET,
    TICK_CURRENT_OFFSET,
    TICK_SPACING_OFFSET,
    TOKEN_MINT_A_OFFSET,
    TOKEN_MINT_B_OFFSET,
    TOKEN_VAULT_A_OFFSET,
    TOKEN_VAULT_B_OFFSET,
    WhirlpoolState,
    decode_whirlpool,
)
from src.math.ticks import tick_to_sqrt_price_x64
from src.wallets import Wallet

# Стандартная тестовая мнемоника BIP-39
TEST_MNEMONIC = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"
TEST_MNEMONIC_EVM_0 = "0x9858EfFD232B4033E47d90003D41EC34EcaEda94"

EVM_ADDRESS = "0x1234567890123456789012345678901234567890"


def make_whirlpool_bytes(
    tick_spacing: int = 64,
    tick_current: int = -20000,
    sqrt_price: int = None,
    liquidity: int = 10 ** 12,
    fee_rate: int = 3000,
    mint_a: Pubkey = None,
    mint_b: Pubkey = None,
    vault_a: Pubkey = None,
    vault_b: Pubkey = None,
) -> bytes:
    """Сырые данные аккаунта Whirlpool (Anchor layout, 653 байта)."""
    data = bytearray(653)
    if sqrt_price is None:
        sqrt_price = tick_to_sqrt_price_x64(tick_current)
    struct.pack_into("<H", data, TICK_SPACING_OFFSET, tick_spacing)
    struct.pack_into("<H", data, FEE_RATE_OFFSET, fee_rate)
    data[LIQUIDITY_OFFSET:LIQUIDITY_OFFSET + 16] = liquidity.to_bytes(16, "little")
    data[SQRT_PRICE_OFFSET:SQRT_PRICE_OFFSET + 16] = sqrt_price.to_bytes(16, "little")
    struct.pack_into("<i", data, TICK_CURRENT_OFFSET, tick_current)
    for offset, key in (
        (TOKEN_MINT_A_OFFSET, mint_a),
        (TOKEN_VAULT_A_OFFSET, vault_a),
        (TOKEN_MINT_B_OFFSET, mint_b),
        (TOKEN_VAULT_B_OFFSET, vault_b),
    ):
        key = key or Pubkey.new_unique()
        data[offset:offset + 32] = bytes(key)
    return bytes(data)


def account_response(data: bytes = None):
    """Ответ getAccountInfo: data=None -> аккаунт не найден."""
    if data is None:
        return Mock(value=None)
    return Mock(value=Mock(data=data))


@pytest.fixture
def pool_address():
    return Pubkey.new_unique()


@pytest.fixture
def program_id():
    return Pubkey.new_unique()


@pytest.fixture
def mints():
    """(mint_a, mint_b)"""
    return Pubkey.new_unique(), Pubkey.new_unique()


@pytest.fixture
def whirlpool(pool_address, mints) -> WhirlpoolState:
    """Пул со spacing 64 и текущим тиком -20000."""
    data = make_whirlpool_bytes(mint_a=mints[0], mint_b=mints[1])
    return decode_whirlpool(pool_address, data)


@pytest.fixture
def mock_rpc():
    """Мок solana.rpc.api.Client."""
    rpc = MagicMock()
    rpc.get_account_info = MagicMock(return_value=account_response(None))
    rpc.get_balance = MagicMock(return_value=Mock(value=1_000_000_000))
    rpc.get_minimum_balance_for_rent_exemption = MagicMock(return_value=Mock(value=1_461_600))
    return rpc


@pytest.fixture
def wallet() -> Wallet:
    """Кошелёк со случайными ключами."""
    return Wallet(index=0, solana_keypair=Keypair(), evm_account=Account.create())


@pytest.fixture
def mock_account():
    """Мок LocalAccount."""
    account = Mock()
    account.address = EVM_ADDRESS
    account.key = b"\x01" * 32
    return account


@pytest.fixture
def mock_w3():
    """Мок Web3 instance."""
    w3 = MagicMock()
    w3.eth.get_transaction_count = MagicMock(return_value=7)
    w3.eth.gas_price = 100_000_000
    w3.eth.chain_id = 42161
    w3.eth.estimate_gas = MagicMock(return_value=200_000)
    w3.eth.account.sign_transaction = MagicMock(return_value=Mock(raw_transaction=b"signed_tx"))
    w3.eth.send_raw_transaction = MagicMock(return_value=bytes.fromhex("ab" * 32))
    w3.eth.wait_for_transaction_receipt = MagicMock(return_value=Mock(status=1))
    return w3


@pytest.fixture
def liquidity_config():
    return LiquidityConfig(pool_address=str(Pubkey.new_unique()), tx_max_attempts=3)


@pytest.fixture
def bridge_config():
    return BridgeConfig(max_retries=3, arrival_timeout=60.0)


@pytest.fixture
def evm_config():
    return EvmConfig()


@pytest.fixture
def swap_config():
    return SwapConfig(slippage_bps=50, max_price_impact_pct=2.0)


@pytest.fixture
def monitor_config():
    return MonitorConfig(min_sol_balance=0.006, min_usdc_balance=0.5, alert_cooldown=3600.0,
                         max_consecutive_errors=3)


@pytest.fixture
def exchange_config():
    return ExchangeConfig(
        enabled=True,
        bybit_api_key="bybit-key",
        bybit_api_secret="bybit-secret",
        binance_api_key="binance-key",
        binance_api_secret="binance-secret",
    )


@pytest.fixture
def no_sleep():
    """Функция ожидания, запоминающая задержки."""
    calls = []

    def _sleep(seconds):
        calls.append(seconds)

    _sleep.calls = calls
    return _sleep
