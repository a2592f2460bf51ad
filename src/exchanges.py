"""
CEX withdrawals (Bybit / Binance via ccxt)

Вывод случайной суммы стейблкоина на EVM адрес случайного кошелька.
Сначала Bybit (если ключ проходит проверку безопасности), при неудаче Binance.

Защиты:
- не более одного вывода на адрес в час (repeat_window)
- idempotency key withdraw_{currency}_{address}_{network}
- окно веса SAPI Binance (900 / 60 с)
- withdraw повторяется только при rate limit; сетевая ошибка после отправки
  не повторяется и блокирует адрес на repeat_window
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import ccxt

from config import ExchangeConfig, get_evm_chain
from .errors import (
    CEX_DISABLED,
    INSUFFICIENT_BALANCE,
    NETWORK,
    RATE_LIMITED,
    RECENT_WITHDRAWAL,
    SECURITY_CHECK_FAILED,
    VALIDATION,
    ExchangeError,
    map_exchange_error,
)
from .utils import IdempotencyStore, RateLimitWindow, retry_with_backoff

logger = logging.getLogger(__name__)

BYBIT = "bybit"
BINANCE = "binance"
EXCHANGE_ORDER = (BYBIT, BINANCE)

# Вес SAPI запросов Binance
BINANCE_BALANCE_WEIGHT = 10
BINANCE_WITHDRAW_WEIGHT = 600

BATCH_DELAY = (2.0, 8.0)   # секунды между выводами в batch


@dataclass
class SecurityCheck:
    ok: bool
    reason: str = ""


@dataclass
class WithdrawalResult:
    success: bool
    exchange_used: Optional[str] = None
    tx_id: Optional[str] = None
    amount: float = 0.0
    currency: str = ""
    to_address: str = ""
    network: str = ""
    wallet_index: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False
    # Запрос мог быть принят биржей (таймаут / обрыв после отправки)
    unconfirmed: bool = False


def build_exchange(name: str, api_key: str, secret: str):
    """ccxt клиент спотового аккаунта."""
    params = {
        "apiKey": api_key,
        "secret": secret,
        "enableRateLimit": True,
        "options": {"defaultType": "spot"},
    }
    if name == BYBIT:
        return ccxt.bybit(params)
    if name == BINANCE:
        return ccxt.binance(params)
    raise ValueError(f"Unsupported exchange: {name}")


class ExchangeManager:
    """
    Вывод средств с Bybit / Binance.

    Usage:
        manager = ExchangeManager(config.exchange)
        result = manager.withdraw_random(list(wallet_manager), network_chain="arbitrum")
        if result.success:
            print(result.exchange_used, result.amount)
    """

    def __init__(
        self,
        config: ExchangeConfig,
        bybit=None,
        binance=None,
        idempotency: Optional[IdempotencyStore] = None,
        binance_window: Optional[RateLimitWindow] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        if bybit is None and config.has_bybit:
            bybit = build_exchange(BYBIT, config.bybit_api_key, config.bybit_api_secret)
        if binance is None and config.has_binance:
            binance = build_exchange(BINANCE, config.binance_api_key, config.binance_api_secret)
        self._exchanges = {BYBIT: bybit, BINANCE: binance}

        self.idempotency = idempotency or IdempotencyStore(ttl=config.repeat_window)
        self.binance_window = binance_window or RateLimitWindow(limit=900, window=60.0, sleep=sleep)
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._clock = clock
        # address -> timestamp последнего успешного вывода
        self.withdrawal_history: Dict[str, float] = {}

    @property
    def enabled(self) -> bool:
        return True

    def get_exchange(self, name: str):
        if name not in self._exchanges:
            raise ValueError(f"Unsupported exchange: {name}")
        exchange = self._exchanges[name]
        if exchange is None:
            raise ExchangeError(f"{name} client is not configured", exchange=name, kind=VALIDATION)
        return exchange

    def available_exchanges(self) -> List[str]:
        return [name for name in EXCHANGE_ORDER if self._exchanges.get(name) is not None]

    # ── Security checks ──

    def verify_bybit_security(self) -> SecurityCheck:
        """Ключ Bybit доступен, не read-only и имеет право Withdraw."""
        try:
            exchange = self.get_exchange(BYBIT)
            exchange.fetch_balance()
            info = exchange.privateGetV5UserQueryApi()
            result = (info or {}).get("result") or {}

            if str(result.get("readOnly", "0")) == "1":
                return self._security_failed(BYBIT, "API key is read-only")

            wallet_permissions = (result.get("permissions") or {}).get("Wallet") or []
            if "Withdraw" not in wallet_permissions:
                return self._security_failed(BYBIT, "API key has no Withdraw permission")

            ips = result.get("ips") or []
            if not ips or ips == ["*"]:
                logger.warning("Bybit API key is not IP-restricted")

            logger.info("Bybit security verified")
            return SecurityCheck(ok=True)
        except Exception as e:
            return self._security_failed(BYBIT, str(map_exchange_error(e, BYBIT)))

    def verify_binance_security(self) -> SecurityCheck:
        """Ключ Binance доступен и имеет enableWithdrawals."""
        try:
            exchange = self.get_exchange(BINANCE)
            self.binance_window.acquire(BINANCE_BALANCE_WEIGHT)
            exchange.fetch_balance()
            restrictions = exchange.sapiGetAccountApiRestrictions() or {}

            if not restrictions.get("enableWithdrawals"):
                return self._security_failed(BINANCE, "API key has withdrawals disabled")
            if not restrictions.get("ipRestrict"):
                logger.warning("Binance API key is not IP-restricted")

            logger.info("Binance security verified")
            return SecurityCheck(ok=True)
        except Exception as e:
            return self._security_failed(BINANCE, str(map_exchange_error(e, BINANCE)))

    def verify_security(self, name: str) -> SecurityCheck:
        if name == BYBIT:
            return self.verify_bybit_security()
        if name == BINANCE:
            return self.verify_binance_security()
        return SecurityCheck(ok=False, reason=f"Unsupported exchange: {name}")

    @staticmethod
    def _security_failed(name: str, reason: str) -> SecurityCheck:
        logger.warning(f"{name} security check failed: {reason}")
        return SecurityCheck(ok=False, reason=reason)

    # ── Withdrawals ──

    def _is_recent(self, address: str) -> bool:
        last = self.withdrawal_history.get(address)
        return last is not None and self._clock() - last < self.config.repeat_window

    def get_free_balance(self, name: str, currency: str) -> float:
        exchange = self.get_exchange(name)
        if name == BINANCE:
            self.binance_window.acquire(BINANCE_BALANCE_WEIGHT)
        balances = retry_with_backoff(
            exchange.fetch_balance,
            should_retry=lambda e: map_exchange_error(e, name).retryable,
            sleep=self._sleep,
            label=f"{name} fetch_balance",
        )
        return float((balances.get("free") or {}).get(currency) or 0)

    def withdraw_random_amount(
        self,
        exchange_name: str,
        address: str,
        currency: Optional[str] = None,
        network: str = "",
        min_amount: Optional[float] = None,
        max_amount: Optional[float] = None,
    ) -> WithdrawalResult:
        """
        Вывести случайную сумму в [min_amount, max_amount] (2 знака) на address.

        Returns:
            WithdrawalResult; исключения не выбрасываются
        """
        currency = currency or self.config.withdraw_currency
        min_amount = self.config.withdraw_min_amount if min_amount is None else min_amount
        max_amount = self.config.withdraw_max_amount if max_amount is None else max_amount
        result = WithdrawalResult(success=False, currency=currency, to_address=address, network=network)

        if self._is_recent(address):
            logger.warning(f"Recent withdrawal to {address[:10]}..., skipping for now")
            result.error = "Recent withdrawal to this address, wait before retrying"
            result.error_code = RECENT_WITHDRAWAL
            return result

        key = IdempotencyStore.withdrawal_key(currency, address, network)
        cached = self.idempotency.get(key)
        if cached is not None:
            logger.info(f"Withdrawal {key} already performed, returning stored result")
            return cached

        amount = round(self._rng.uniform(min_amount, max_amount), 2)
        result.amount = amount

        logger.info(f"Withdrawing {amount} {currency} to {address[:10]}... via {exchange_name} ({network or 'default'})")

        try:
            exchange = self.get_exchange(exchange_name)
            available = self.get_free_balance(exchange_name, currency)
            if available < amount:
                logger.warning(f"Insufficient {exchange_name} balance: {available} {currency} < {amount}")
                result.error = f"Insufficient balance: {available} {currency}"
                result.error_code = INSUFFICIENT_BALANCE
                return result

            if exchange_name == BINANCE:
                self.binance_window.acquire(BINANCE_WITHDRAW_WEIGHT)
        except Exception as e:
            err = map_exchange_error(e, exchange_name)
            logger.error(f"Withdrawal via {exchange_name} failed: {err}")
            result.error = str(err)
            result.error_code = err.kind
            result.retryable = err.retryable
            return result

        params = {"network": network} if network else {}
        try:
            # Rate limit отклоняется до обработки, его можно повторить
            response = retry_with_backoff(
                lambda: exchange.withdraw(currency, amount, address, None, params),
                should_retry=lambda e: map_exchange_error(e, exchange_name).kind == RATE_LIMITED,
                sleep=self._sleep,
                label=f"{exchange_name} withdraw",
            )
        except Exception as e:
            err = map_exchange_error(e, exchange_name)
            result.error = str(err)
            result.error_code = err.kind
            if err.kind == NETWORK:
                self.withdrawal_history[address] = self._clock()
                result.exchange_used = exchange_name
                result.unconfirmed = True
                logger.error(f"Withdrawal via {exchange_name} may have been accepted ({err}), "
                             f"check exchange history before retrying {address[:10]}...")
            else:
                result.retryable = err.retryable
                logger.error(f"Withdrawal via {exchange_name} failed: {err}")
            return result

        result.success = True
        result.exchange_used = exchange_name
        result.tx_id = (response or {}).get("id")
        self.withdrawal_history[address] = self._clock()
        self.idempotency.put(key, result)
        logger.info(f"Withdrawal successful: {amount} {currency} via {exchange_name}, id={result.tx_id}")
        return result

    def withdraw_random(
        self,
        wallets: List,
        currency: Optional[str] = None,
        network_chain: str = "arbitrum",
        min_amount: Optional[float] = None,
        max_amount: Optional[float] = None,
    ) -> WithdrawalResult:
        """
        Вывод на случайный кошелёк: Bybit, затем Binance.

        Биржа пропускается, если клиент не настроен или не прошёл проверку безопасности.
        """
        if not wallets:
            return WithdrawalResult(success=False, error="No wallets to withdraw to", error_code=VALIDATION)

        wallet = self._rng.choice(list(wallets))
        network = get_evm_chain(network_chain).ccxt_network
        logger.info(f"Selected wallet {wallet.index} ({wallet.evm_address[:10]}...)")

        result = WithdrawalResult(success=False, to_address=wallet.evm_address, wallet_index=wallet.index,
                                  error="No exchange available", error_code=SECURITY_CHECK_FAILED)

        for name in self.available_exchanges():
            check = self.verify_security(name)
            if not check.ok:
                result = WithdrawalResult(
                    success=False, to_address=wallet.evm_address, wallet_index=wallet.index,
                    error=f"{name} security check failed: {check.reason}", error_code=SECURITY_CHECK_FAILED,
                )
                continue

            result = self.withdraw_random_amount(
                name, wallet.evm_address, currency, network, min_amount, max_amount
            )
            result.wallet_index = wallet.index
            if result.success:
                return result
            if result.error_code == RECENT_WITHDRAWAL or result.unconfirmed:
                # Одинаково для обеих бирж; после неподтверждённого вывода fallback запрещён
                return result
            logger.warning(f"Withdrawal via {name} failed ({result.error}), trying next exchange")

        logger.error(f"All exchanges failed for wallet {wallet.index}: {result.error}")
        return result

    def withdraw_random_batch(
        self,
        wallets: List,
        batch_size: int = 5,
        currency: Optional[str] = None,
        network_chain: str = "arbitrum",
        delay_range: tuple = BATCH_DELAY,
    ) -> List[WithdrawalResult]:
        """
        Выводы на batch_size случайных кошельков по очереди со случайной паузой между ними.

        Returns:
            Список WithdrawalResult в порядке выполнения
        """
        if not wallets or batch_size < 1:
            return []

        selected = self._rng.sample(list(wallets), min(batch_size, len(wallets)))
        logger.info(f"Batch withdrawal to {len(selected)} wallets")

        results = []
        for i, wallet in enumerate(selected):
            if i > 0:
                self._sleep(self._rng.uniform(*delay_range))
            results.append(self.withdraw_random([wallet], currency, network_chain))

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Batch finished: {succeeded}/{len(results)} withdrawals succeeded")
        return results

    # ── Maintenance ──

    def check_connectivity(self) -> Dict[str, bool]:
        status = {}
        for name in self.available_exchanges():
            try:
                self._exchanges[name].fetch_time()
                status[name] = True
            except Exception as e:
                logger.error(f"{name} connectivity error: {e}")
                status[name] = False
        return status

    def cleanup_history(self, max_age: float = 86400.0) -> int:
        """Удалить записи истории выводов старше max_age."""
        now = self._clock()
        stale = [addr for addr, ts in self.withdrawal_history.items() if now - ts >= max_age]
        for addr in stale:
            del self.withdrawal_history[addr]
        self.idempotency.cleanup()
        logger.info(f"Withdrawal history cleaned, {len(self.withdrawal_history)} entries left")
        return len(stale)


class NoOpExchangeManager:
    """Заглушка при ENABLE_CEX=false: выводы не выполняются."""

    enabled = False

    def withdraw_random(self, wallets: List, *args, **kwargs) -> WithdrawalResult:
        logger.info("CEX disabled, withdrawal skipped")
        return WithdrawalResult(success=False, error="CEX withdrawals are disabled", error_code=CEX_DISABLED)

    def withdraw_random_batch(self, wallets: List, *args, **kwargs) -> List[WithdrawalResult]:
        logger.info("CEX disabled, batch withdrawal skipped")
        return []

    def check_connectivity(self) -> Dict[str, bool]:
        return {}

    def cleanup_history(self, max_age: float = 86400.0) -> int:
        return 0


def create_exchange_manager(config: ExchangeConfig, **kwargs):
    if not config.enabled:
        return NoOpExchangeManager()
    return ExchangeManager(config, **kwargs)
