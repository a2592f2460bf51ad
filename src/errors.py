"""
Error taxonomy

Все ошибки внешних вызовов приводятся на границе компонента к одному из
доменных типов с явным флагом retryable. Retryable ошибки повторяются
(retry_with_backoff), остальные возвращаются вызывающему как результат
с success=False.
"""

from typing import Any, Dict, Iterable, Optional

import ccxt


# ── Error codes ──

INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
RATE_LIMITED = "RATE_LIMITED"
NETWORK = "NETWORK"
UNAUTHORIZED = "UNAUTHORIZED"
VALIDATION = "VALIDATION"
SLIPPAGE = "SLIPPAGE"
FEES_TOO_HIGH = "FEES_TOO_HIGH"
LOW_OUTPUT = "LOW_OUTPUT"
NO_ROUTE = "NO_ROUTE"
BRIDGE_TIMEOUT = "BRIDGE_TIMEOUT"
INVALID_TICK_RANGE = "INVALID_TICK_RANGE"
RPC_UNAVAILABLE = "RPC_UNAVAILABLE"
APPROXIMATE_QUOTE = "APPROXIMATE_QUOTE"
TX_FAILED = "TX_FAILED"
INVALID_MNEMONIC = "INVALID_MNEMONIC"
WALLET_NOT_FOUND = "WALLET_NOT_FOUND"
RECENT_WITHDRAWAL = "RECENT_WITHDRAWAL"
SECURITY_CHECK_FAILED = "SECURITY_CHECK_FAILED"
CEX_DISABLED = "CEX_DISABLED"
CONFIG_ERROR = "CONFIG_ERROR"
UNKNOWN = "UNKNOWN"

RETRYABLE_KEYWORDS = ("timeout", "timed out", "network", "connection", "rate limit", "429", "503", "502", "econnreset")
DETERMINISTIC_KEYWORDS = ("insufficient", "invalid", "unauthorized", "401", "403", "validation", "slippage", "tick")


class BotError(Exception):
    """Базовая ошибка бота."""

    def __init__(
        self,
        message: str,
        code: str = UNKNOWN,
        retryable: bool = False,
        deterministic: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable
        self.deterministic = deterministic
        self.details = details or {}

    def __str__(self):
        return f"[{self.code}] {self.message}"


class ConfigurationError(BotError):
    """Отсутствует или невалиден обязательный параметр. Фатально."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=CONFIG_ERROR, retryable=False, deterministic=True, details=details)


class ExchangeError(BotError):
    """Ошибка CEX. Код вида EXCHANGE_<NAME>, причина в kind."""

    def __init__(self, message: str, exchange: str, kind: str = UNKNOWN, retryable: bool = False,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message,
            code=f"EXCHANGE_{exchange.upper()}",
            retryable=retryable,
            deterministic=not retryable,
            details=details,
        )
        self.exchange = exchange
        self.kind = kind

    def __str__(self):
        return f"[{self.code}:{self.kind}] {self.message}"


class BridgeError(BotError):
    """Ошибка bridge (LI.FI)."""
    pass


class TradingError(BotError):
    """Ошибка свапа (Jupiter)."""
    pass


class LiquidityError(BotError):
    """Ошибка LP (Orca Whirlpools)."""
    pass


class WalletError(BotError):
    """Ошибка деривации кошельков или доступа к ним."""
    pass


def _contains(message: str, keywords: Iterable[str]) -> bool:
    return any(k in message for k in keywords)


def map_exchange_error(error: Exception, exchange: str) -> ExchangeError:
    """
    Привести исключение ccxt (или любое другое) к ExchangeError.

    Retryable только rate limit и сетевые ошибки.
    """
    if isinstance(error, ExchangeError):
        return error

    message = str(error)
    lowered = message.lower()

    # Порядок важен: InsufficientFunds и InvalidAddress являются подклассами ExchangeError в ccxt,
    # RateLimitExceeded / DDoSProtection / RequestTimeout являются подклассами NetworkError
    if isinstance(error, ccxt.InsufficientFunds):
        kind, retryable = INSUFFICIENT_BALANCE, False
    elif isinstance(error, (ccxt.RateLimitExceeded, ccxt.DDoSProtection)):
        kind, retryable = RATE_LIMITED, True
    elif isinstance(error, ccxt.NetworkError):
        kind, retryable = NETWORK, True
    elif isinstance(error, (ccxt.AuthenticationError, ccxt.PermissionDenied)):
        kind, retryable = UNAUTHORIZED, False
    elif isinstance(error, (ccxt.BadRequest, ccxt.InvalidAddress, ccxt.BadSymbol)):
        kind, retryable = VALIDATION, False
    elif _contains(lowered, ("insufficient", "balance")):
        kind, retryable = INSUFFICIENT_BALANCE, False
    elif _contains(lowered, ("rate limit", "429", "too many")):
        kind, retryable = RATE_LIMITED, True
    elif _contains(lowered, ("timeout", "network", "connection")):
        kind, retryable = NETWORK, True
    elif _contains(lowered, ("unauthorized", "401", "api key", "permission")):
        kind, retryable = UNAUTHORIZED, False
    elif _contains(lowered, ("invalid", "validation")):
        kind, retryable = VALIDATION, False
    else:
        kind, retryable = UNKNOWN, True

    return ExchangeError(message, exchange=exchange, kind=kind, retryable=retryable,
                         details={"original": type(error).__name__})


def map_bridge_error(error: Exception) -> BridgeError:
    """Retryable только сетевые ошибки."""
    if isinstance(error, BridgeError):
        return error

    lowered = str(error).lower()
    if _contains(lowered, ("timeout", "network", "connection")):
        code, retryable = NETWORK, True
    elif "insufficient" in lowered:
        code, retryable = INSUFFICIENT_BALANCE, False
    elif _contains(lowered, ("slippage", "price")):
        code, retryable = SLIPPAGE, False
    elif "fee" in lowered:
        code, retryable = FEES_TOO_HIGH, False
    else:
        code, retryable = UNKNOWN, False

    return BridgeError(str(error), code=code, retryable=retryable, deterministic=not retryable)


def map_trading_error(error: Exception) -> TradingError:
    """Retryable только сетевые ошибки."""
    if isinstance(error, TradingError):
        return error

    lowered = str(error).lower()
    if "slippage" in lowered:
        code, retryable = SLIPPAGE, False
    elif "insufficient" in lowered:
        code, retryable = INSUFFICIENT_BALANCE, False
    elif _contains(lowered, ("timeout", "network", "connection", "429", "rate limit")):
        code, retryable = NETWORK, True
    else:
        code, retryable = UNKNOWN, False

    return TradingError(str(error), code=code, retryable=retryable, deterministic=not retryable)


def map_liquidity_error(error: Exception) -> LiquidityError:
    """Retryable только сетевые ошибки."""
    if isinstance(error, LiquidityError):
        return error

    lowered = str(error).lower()
    if _contains(lowered, ("tick", "range")):
        code, retryable = INVALID_TICK_RANGE, False
    elif "insufficient" in lowered:
        code, retryable = INSUFFICIENT_BALANCE, False
    elif _contains(lowered, ("timeout", "network", "connection", "blockhash")):
        code, retryable = NETWORK, True
    else:
        code, retryable = UNKNOWN, False

    return LiquidityError(str(error), code=code, retryable=retryable, deterministic=not retryable)


def is_retryable_error(error: Exception) -> bool:
    """Стоит ли повторять вызов, завершившийся этой ошибкой."""
    if isinstance(error, BotError):
        return error.retryable
    lowered = str(error).lower()
    if _contains(lowered, DETERMINISTIC_KEYWORDS):
        return False
    return _contains(lowered, RETRYABLE_KEYWORDS)


def is_deterministic_error(error: Exception) -> bool:
    """Ошибка повторится при тех же входных данных."""
    if isinstance(error, BotError):
        return error.deterministic
    return _contains(str(error).lower(), DETERMINISTIC_KEYWORDS)
