"""
Configuration for the Solana PENGU liquidity pipeline

Конфигурация пайплайна: CEX → LI.FI bridge → Jupiter swap → Orca Whirlpools LP.
Все параметры читаются из окружения (.env) в BotConfig.from_env() и передаются
в конструкторы компонентов явно.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from src.errors import ConfigurationError


@dataclass
class EvmChainConfig:
    """Конфигурация EVM сети (источник для bridge)."""
    name: str
    chain_id: int
    rpc_url: str
    explorer_url: str
    native_token: str
    usdc: str
    usdt: str
    ccxt_network: str = ""  # Имя сети для вывода с CEX
    usdc_decimals: int = 6


@dataclass
class TokenConfig:
    """Конфигурация SPL токена."""
    mint: str
    symbol: str
    decimals: int


# ============================================================
# SOLANA / ORCA CONSTANTS
# ============================================================

WHIRLPOOL_PROGRAM_ID = "whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc"

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
WSOL_MINT = "So11111111111111111111111111111111111111112"
PENGU_MINT = "2zMMhcVQEXDtdE6vsFS7S7D5oUodfJHE8vd1gnBouauv"

SOLANA_TOKENS: Dict[str, TokenConfig] = {
    "USDC": TokenConfig(mint=USDC_MINT, symbol="USDC", decimals=6),
    "WSOL": TokenConfig(mint=WSOL_MINT, symbol="WSOL", decimals=9),
    "PENGU": TokenConfig(mint=PENGU_MINT, symbol="PENGU", decimals=6),
}

# Пулы Orca по умолчанию (переопределяются через env)
DEFAULT_PENGU_WSOL_POOL = "FAqh648xeeaTqL7du49sztp9nfj5PjRQrfvaMccyd9cz"

LAMPORTS_PER_SOL = 1_000_000_000

# Compute budget для LP транзакций
COMPUTE_UNITS = 300_000
PRIORITY_FEE_MICROLAMPORTS = 2_000

# ============================================================
# EVM CHAINS (LI.FI chain ids)
# ============================================================

CHAIN_IDS = {
    "ethereum": 1,
    "bsc": 56,
    "arbitrum": 42161,
    "base": 8453,
    "solana": 1151111081099710,  # LI.FI chain id для Solana
}

ETHEREUM = EvmChainConfig(
    name="ethereum",
    chain_id=1,
    rpc_url="https://eth.llamarpc.com",
    explorer_url="https://etherscan.io",
    native_token="ETH",
    usdc="0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
    usdt="0xdAC17F958D2ee523a2206206994597C13D831ec7",
    ccxt_network="ETH",
)

BSC = EvmChainConfig(
    name="bsc",
    chain_id=56,
    rpc_url="https://bsc-dataseed.binance.org/",
    explorer_url="https://bscscan.com",
    native_token="BNB",
    usdc="0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d",
    usdt="0x55d398326f99059fF775485246999027B3197955",
    ccxt_network="BSC",
    usdc_decimals=18,  # Binance-Peg USDC
)

ARBITRUM = EvmChainConfig(
    name="arbitrum",
    chain_id=42161,
    rpc_url="https://arb1.arbitrum.io/rpc",
    explorer_url="https://arbiscan.io",
    native_token="ETH",
    usdc="0xaf88d065e77c8cC2239327C5EDb3A432268e5831",
    usdt="0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9",
    ccxt_network="ARBITRUM",
)

# Note: mainnet.base.org has strict rate limits
BASE = EvmChainConfig(
    name="base",
    chain_id=8453,
    rpc_url="https://base.llamarpc.com",
    explorer_url="https://basescan.org",
    native_token="ETH",
    usdc="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    usdt="",
    ccxt_network="BASE",
)

EVM_CHAINS: Dict[str, EvmChainConfig] = {
    "ethereum": ETHEREUM,
    "bsc": BSC,
    "arbitrum": ARBITRUM,
    "base": BASE,
}

# ============================================================
# DEFAULT SETTINGS
# ============================================================

DEFAULT_WALLET_COUNT = 100
DEFAULT_SLIPPAGE_BPS = 50          # 0.5%
DEFAULT_LP_RANGE_PCT = 15
DEFAULT_LP_POSITION_SIZE_PENGU = 0.05
DEFAULT_LP_CAPITAL_ALLOCATION_PCT = 100.0
SOLANA_COMMITMENTS = ("processed", "confirmed", "finalized")
DEFAULT_MIN_SOL_BALANCE = 0.006
DEFAULT_MIN_USDC_BALANCE = 0.5
DEFAULT_MAX_BRIDGE_FEE_PCT = 3.0
DEFAULT_MIN_BRIDGE_OUTPUT_PCT = 90.0
DEFAULT_MONITOR_INTERVAL = 5.0     # секунды
DEFAULT_ALERT_COOLDOWN = 3600.0    # одно и то же оповещение не чаще раза в час

TRUE_VALUES = ("true", "1", "yes", "on")


# ============================================================
# RUNTIME CONFIGURATION
# ============================================================

@dataclass
class SolanaConfig:
    """Подключение к Solana."""
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    commitment: str = "confirmed"   # preflight и уровень подтверждения транзакций


@dataclass
class EvmConfig:
    """RPC endpoints EVM сетей (name -> url)."""
    rpc_urls: Dict[str, str] = field(default_factory=lambda: {
        name: chain.rpc_url for name, chain in EVM_CHAINS.items()
    })

    def rpc_url(self, chain: str) -> str:
        if chain not in self.rpc_urls:
            raise ValueError(f"Unknown EVM chain: {chain}")
        return self.rpc_urls[chain]


@dataclass
class ExchangeConfig:
    """CEX credentials и параметры вывода."""
    enabled: bool = False
    bybit_api_key: str = ""
    bybit_api_secret: str = ""
    binance_api_key: str = ""
    binance_api_secret: str = ""
    withdraw_currency: str = "USDC"
    withdraw_min_amount: float = 10.0
    withdraw_max_amount: float = 20.0
    repeat_window: float = 3600.0  # не выводить на тот же адрес чаще раза в час

    @property
    def has_bybit(self) -> bool:
        return bool(self.bybit_api_key and self.bybit_api_secret)

    @property
    def has_binance(self) -> bool:
        return bool(self.binance_api_key and self.binance_api_secret)


@dataclass
class BridgeConfig:
    """LI.FI bridge."""
    api_key: str = ""
    from_chain: str = "arbitrum"
    prefer_cctp: bool = True
    max_fee_pct: float = DEFAULT_MAX_BRIDGE_FEE_PCT
    min_output_pct: float = DEFAULT_MIN_BRIDGE_OUTPUT_PCT
    max_retries: int = 3
    arrival_timeout: float = 600.0
    job_db_path: str = ":memory:"


@dataclass
class SwapConfig:
    """Jupiter swap."""
    api_key: str = ""
    slippage_bps: int = DEFAULT_SLIPPAGE_BPS
    max_price_impact_pct: float = 2.0


@dataclass
class LiquidityConfig:
    """Orca Whirlpools LP."""
    pool_address: str = DEFAULT_PENGU_WSOL_POOL
    usdc_pengu_pool: str = ""
    usdc_wsol_pool: str = ""
    lower_pct: int = DEFAULT_LP_RANGE_PCT
    upper_pct: int = DEFAULT_LP_RANGE_PCT
    allow_approximate_quote: bool = False
    tx_max_attempts: int = 3
    position_size_pengu: float = DEFAULT_LP_POSITION_SIZE_PENGU
    capital_allocation_pct: float = DEFAULT_LP_CAPITAL_ALLOCATION_PCT

    @property
    def range_percent(self) -> int:
        # Диапазон симметричный, берём больший из двух процентов
        return max(self.lower_pct, self.upper_pct)

    @property
    def deposit_pengu(self) -> float:
        """Размер депозита PENGU: position_size * allocation%."""
        return self.position_size_pengu * self.capital_allocation_pct / 100

    @property
    def lp_pool_address(self) -> str:
        """Пул для LP PENGU: USDC/PENGU если задан, иначе PENGU/WSOL."""
        return self.usdc_pengu_pool or self.pool_address

    def pool_for_pair(self, token_a: str, token_b: str) -> str:
        """Настроенный адрес пула для пары символов ("" если не задан)."""
        pools = {
            frozenset(("PENGU", "WSOL")): self.pool_address,
            frozenset(("USDC", "PENGU")): self.usdc_pengu_pool,
            frozenset(("USDC", "WSOL")): self.usdc_wsol_pool,
        }
        return pools.get(frozenset((token_a.upper(), token_b.upper())), "")


@dataclass
class MonitorConfig:
    """Мониторинг балансов."""
    interval: float = DEFAULT_MONITOR_INTERVAL
    alert_cooldown: float = DEFAULT_ALERT_COOLDOWN
    min_sol_balance: float = DEFAULT_MIN_SOL_BALANCE
    min_usdc_balance: float = DEFAULT_MIN_USDC_BALANCE
    max_consecutive_errors: int = 5


@dataclass
class BotConfig:
    """
    Полная конфигурация бота.

    Создаётся один раз при старте (from_env) и передаётся в компоненты.
    В тестах создаётся напрямую: BotConfig(mnemonic="...", dry_run=True).
    """
    mnemonic: str = ""
    wallet_count: int = DEFAULT_WALLET_COUNT
    dry_run: bool = False
    solana: SolanaConfig = field(default_factory=SolanaConfig)
    evm: EvmConfig = field(default_factory=EvmConfig)
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    bridge: BridgeConfig = field(default_factory=BridgeConfig)
    swap: SwapConfig = field(default_factory=SwapConfig)
    liquidity: LiquidityConfig = field(default_factory=LiquidityConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, require_mnemonic: bool = True) -> 'BotConfig':
        """
        Собрать конфигурацию из переменных окружения.

        Args:
            env: Источник переменных (по умолчанию os.environ)
            require_mnemonic: Требовать WALLET_MNEMONIC

        Raises:
            ConfigurationError: Отсутствует обязательный параметр или значение невалидно
        """
        env = os.environ if env is None else env

        mnemonic = env.get("WALLET_MNEMONIC", "").strip()
        if mnemonic and _get_bool(env, "WALLET_MNEMONIC_ENCRYPTED", False):
            mnemonic = _decrypt_mnemonic(mnemonic, env.get("WALLET_PASSWORD", ""))
        if require_mnemonic and not mnemonic:
            raise ConfigurationError("WALLET_MNEMONIC is required")

        rpc_urls = {name: chain.rpc_url for name, chain in EVM_CHAINS.items()}
        for name in EVM_CHAINS:
            override = env.get(f"{name.upper()}_RPC_URL")
            if override:
                rpc_urls[name] = override

        slippage_bps = _get_int(env, "SLIPPAGE_BPS", DEFAULT_SLIPPAGE_BPS)
        if not 0 <= slippage_bps <= 10_000:
            raise ConfigurationError(f"SLIPPAGE_BPS must be in 0..10000, got {slippage_bps}")

        lower_pct = _get_int(env, "LP_LOWER_PCT", DEFAULT_LP_RANGE_PCT)
        upper_pct = _get_int(env, "LP_UPPER_PCT", DEFAULT_LP_RANGE_PCT)
        for name, value in (("LP_LOWER_PCT", lower_pct), ("LP_UPPER_PCT", upper_pct)):
            if not 0 < value <= 100:
                raise ConfigurationError(f"{name} must be in (0, 100], got {value}")

        position_size = _get_float(env, "LP_POSITION_SIZE_PENGU", DEFAULT_LP_POSITION_SIZE_PENGU)
        if position_size <= 0:
            raise ConfigurationError(f"LP_POSITION_SIZE_PENGU must be positive, got {position_size}")
        allocation_pct = _get_float(env, "LP_CAPITAL_ALLOCATION_PCT", DEFAULT_LP_CAPITAL_ALLOCATION_PCT)
        if not 0 < allocation_pct <= 100:
            raise ConfigurationError(f"LP_CAPITAL_ALLOCATION_PCT must be in (0, 100], got {allocation_pct}")

        commitment = env.get("SOLANA_COMMITMENT", "confirmed").lower()
        if commitment not in SOLANA_COMMITMENTS:
            raise ConfigurationError(f"SOLANA_COMMITMENT must be one of {', '.join(SOLANA_COMMITMENTS)}")

        exchange = ExchangeConfig(
            enabled=_get_bool(env, "ENABLE_CEX", False),
            bybit_api_key=env.get("BYBIT_API_KEY", ""),
            bybit_api_secret=env.get("BYBIT_API_SECRET", env.get("BYBIT_SECRET", "")),
            binance_api_key=env.get("BINANCE_API_KEY", ""),
            binance_api_secret=env.get("BINANCE_API_SECRET", env.get("BINANCE_SECRET", "")),
            withdraw_currency=env.get("WITHDRAW_CURRENCY", "USDC"),
            withdraw_min_amount=_get_float(env, "WITHDRAW_MIN_AMOUNT", 10.0),
            withdraw_max_amount=_get_float(env, "WITHDRAW_MAX_AMOUNT", 20.0),
        )
        if exchange.enabled and not (exchange.has_bybit or exchange.has_binance):
            raise ConfigurationError("ENABLE_CEX=true requires Bybit or Binance API credentials")
        if exchange.withdraw_min_amount > exchange.withdraw_max_amount:
            raise ConfigurationError("WITHDRAW_MIN_AMOUNT must be <= WITHDRAW_MAX_AMOUNT")

        from_chain = env.get("BRIDGE_FROM_CHAIN", "arbitrum").lower()
        if from_chain not in EVM_CHAINS:
            raise ConfigurationError(f"Unknown BRIDGE_FROM_CHAIN: {from_chain}")

        return cls(
            mnemonic=mnemonic,
            wallet_count=_get_int(env, "WALLET_COUNT", DEFAULT_WALLET_COUNT),
            dry_run=_get_bool(env, "DRY_RUN", False),
            solana=SolanaConfig(
                rpc_url=env.get("SOLANA_RPC_URL", SolanaConfig.rpc_url),
                commitment=commitment,
            ),
            evm=EvmConfig(rpc_urls=rpc_urls),
            exchange=exchange,
            bridge=BridgeConfig(
                api_key=env.get("LIFI_API_KEY", ""),
                from_chain=from_chain,
                max_fee_pct=_get_float(env, "MAX_BRIDGE_FEE_PCT", DEFAULT_MAX_BRIDGE_FEE_PCT),
                job_db_path=env.get("JOB_DB_PATH", ":memory:"),
            ),
            swap=SwapConfig(
                api_key=env.get("JUPITER_API_KEY", ""),
                slippage_bps=slippage_bps,
            ),
            liquidity=LiquidityConfig(
                pool_address=env.get("ORCA_PENGU_WSOL_POOL", DEFAULT_PENGU_WSOL_POOL),
                usdc_pengu_pool=env.get("ORCA_USDC_PENGU_POOL", ""),
                usdc_wsol_pool=env.get("ORCA_USDC_WSOL_POOL", ""),
                lower_pct=lower_pct,
                upper_pct=upper_pct,
                allow_approximate_quote=_get_bool(env, "ALLOW_APPROXIMATE_QUOTE", False),
                position_size_pengu=position_size,
                capital_allocation_pct=allocation_pct,
            ),
            monitor=MonitorConfig(
                min_sol_balance=_get_float(env, "MIN_SOL_BALANCE", DEFAULT_MIN_SOL_BALANCE),
                min_usdc_balance=_get_float(env, "MIN_USDC_BALANCE", DEFAULT_MIN_USDC_BALANCE),
            ),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )


# ============================================================
# HELPER FUNCTIONS
# ============================================================

def _get_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = env.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in TRUE_VALUES


def _get_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = env.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    value = env.get(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def _decrypt_mnemonic(encrypted: str, password: str) -> str:
    """Расшифровать WALLET_MNEMONIC, зашифрованный src.crypto.encrypt_secret."""
    from src.crypto import CryptoError, decrypt_secret

    if not password:
        raise ConfigurationError("WALLET_PASSWORD is required for an encrypted WALLET_MNEMONIC")
    try:
        return decrypt_secret(encrypted, password)
    except CryptoError as e:
        raise ConfigurationError(f"Cannot decrypt WALLET_MNEMONIC: {e}") from e


def get_evm_chain(name: str) -> EvmChainConfig:
    """Получение конфигурации EVM сети по имени."""
    key = name.lower()
    if key not in EVM_CHAINS:
        raise ValueError(f"Unknown EVM chain: {name}")
    return EVM_CHAINS[key]


def get_token(symbol: str) -> TokenConfig:
    """Получение SPL токена по символу."""
    key = symbol.upper()
    if key not in SOLANA_TOKENS:
        raise ValueError(f"Unknown token: {symbol}")
    return SOLANA_TOKENS[key]


def get_token_mint(symbol: str) -> str:
    """Mint адрес SPL токена по символу."""
    return get_token(symbol).mint
