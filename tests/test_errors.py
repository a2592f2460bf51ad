"""
Tests for src.errors (error taxonomy and mappers).
"""

import ccxt
import pytest

from src.errors import (
    CONFIG_ERROR,
    FEES_TOO_HIGH,
    INSUFFICIENT_BALANCE,
    INVALID_TICK_RANGE,
    NETWORK,
    RATE_LIMITED,
    SLIPPAGE,
    UNAUTHORIZED,
    UNKNOWN,
    VALIDATION,
    BotError,
    BridgeError,
    ConfigurationError,
    ExchangeError,
    LiquidityError,
    TradingError,
    is_deterministic_error,
    is_retryable_error,
    map_bridge_error,
    map_exchange_error,
    map_liquidity_error,
    map_trading_error,
)


class TestBotError:
    """Base error formatting."""

    def test_str_contains_code(self):
        assert str(BotError("boom", code=NETWORK)) == "[NETWORK] boom"

    def test_configuration_error_is_fatal(self):
        err = ConfigurationError("WALLET_MNEMONIC is required")
        assert err.code == CONFIG_ERROR
        assert err.retryable is False
        assert err.deterministic is True

    def test_exchange_error_code(self):
        err = ExchangeError("down", exchange="bybit", kind=NETWORK, retryable=True)
        assert err.code == "EXCHANGE_BYBIT"
        assert str(err) == "[EXCHANGE_BYBIT:NETWORK] down"
        assert err.deterministic is False


class TestMapExchangeError:
    """ccxt exceptions -> ExchangeError."""

    @pytest.mark.parametrize(
        "error, kind, retryable",
        [
            (ccxt.InsufficientFunds("not enough USDC"), INSUFFICIENT_BALANCE, False),
            (ccxt.RateLimitExceeded("slow down"), RATE_LIMITED, True),
            (ccxt.DDoSProtection("cloudflare"), RATE_LIMITED, True),
            (ccxt.RequestTimeout("read timed out"), NETWORK, True),
            (ccxt.NetworkError("reset by peer"), NETWORK, True),
            (ccxt.AuthenticationError("bad key"), UNAUTHORIZED, False),
            (ccxt.PermissionDenied("no withdraw"), UNAUTHORIZED, False),
            (ccxt.InvalidAddress("bad address"), VALIDATION, False),
            (ccxt.BadRequest("bad amount"), VALIDATION, False),
        ],
        ids=["insufficient", "rate-limit", "ddos", "timeout", "network", "auth", "permission",
             "address", "bad-request"],
    )
    def test_ccxt_classes(self, error, kind, retryable):
        mapped = map_exchange_error(error, "binance")
        assert mapped.kind == kind
        assert mapped.retryable is retryable
        assert mapped.code == "EXCHANGE_BINANCE"
        assert mapped.details["original"] == type(error).__name__

    @pytest.mark.parametrize(
        "message, kind, retryable",
        [
            ("Insufficient balance", INSUFFICIENT_BALANCE, False),
            ("HTTP 429 Too Many Requests", RATE_LIMITED, True),
            ("connection aborted", NETWORK, True),
            ("API key expired", UNAUTHORIZED, False),
            ("invalid chain", VALIDATION, False),
            ("something odd", UNKNOWN, True),
        ],
        ids=["insufficient", "429", "connection", "api-key", "invalid", "unknown"],
    )
    def test_plain_exceptions_by_message(self, message, kind, retryable):
        mapped = map_exchange_error(Exception(message), "bybit")
        assert mapped.kind == kind
        assert mapped.retryable is retryable

    def test_exchange_error_passthrough(self):
        err = ExchangeError("x", exchange="bybit")
        assert map_exchange_error(err, "binance") is err


class TestDomainMappers:
    """Bridge / trading / liquidity: retryable only for network errors."""

    @pytest.mark.parametrize(
        "message, code, retryable",
        [
            ("Request timeout", NETWORK, True),
            ("insufficient allowance", INSUFFICIENT_BALANCE, False),
            ("price moved", SLIPPAGE, False),
            ("fee too large", FEES_TOO_HIGH, False),
            ("weird", UNKNOWN, False),
        ],
        ids=["timeout", "insufficient", "price", "fee", "unknown"],
    )
    def test_bridge(self, message, code, retryable):
        mapped = map_bridge_error(Exception(message))
        assert isinstance(mapped, BridgeError)
        assert mapped.code == code
        assert mapped.retryable is retryable

    @pytest.mark.parametrize(
        "message, code, retryable",
        [
            ("Slippage tolerance exceeded", SLIPPAGE, False),
            ("insufficient lamports", INSUFFICIENT_BALANCE, False),
            ("429 rate limit", NETWORK, True),
            ("weird", UNKNOWN, False),
        ],
        ids=["slippage", "insufficient", "429", "unknown"],
    )
    def test_trading(self, message, code, retryable):
        mapped = map_trading_error(Exception(message))
        assert isinstance(mapped, TradingError)
        assert mapped.code == code
        assert mapped.retryable is retryable

    @pytest.mark.parametrize(
        "message, code, retryable",
        [
            ("tick out of range", INVALID_TICK_RANGE, False),
            ("insufficient funds", INSUFFICIENT_BALANCE, False),
            ("Blockhash not found", NETWORK, True),
            ("weird", UNKNOWN, False),
        ],
        ids=["tick", "insufficient", "blockhash", "unknown"],
    )
    def test_liquidity(self, message, code, retryable):
        mapped = map_liquidity_error(Exception(message))
        assert isinstance(mapped, LiquidityError)
        assert mapped.code == code
        assert mapped.retryable is retryable

    def test_passthrough(self):
        err = TradingError("x", code=SLIPPAGE)
        assert map_trading_error(err) is err


class TestClassification:
    """is_retryable_error / is_deterministic_error."""

    @pytest.mark.parametrize(
        "error, expected",
        [
            (Exception("connection reset"), True),
            (Exception("HTTP 503"), True),
            (Exception("request timed out"), True),
            (Exception("insufficient funds"), False),
            (Exception("invalid signature, network ok"), False),
            (Exception("unexpected"), False),
            (BotError("x", retryable=True), True),
            (BotError("timeout", retryable=False), False),
        ],
        ids=["connection", "503", "timed-out", "insufficient", "deterministic-wins", "unknown",
             "bot-retryable", "bot-flag-wins"],
    )
    def test_is_retryable(self, error, expected):
        assert is_retryable_error(error) is expected

    def test_is_deterministic(self):
        assert is_deterministic_error(Exception("Unauthorized"))
        assert not is_deterministic_error(Exception("timeout"))
        assert is_deterministic_error(BotError("x", deterministic=True))
