"""
Monitor

Периодический цикл по всем кошелькам:
1. Обновить балансы (SOL / USDC / PENGU)
2. Ребалансировка через свапы
3. Пополнение кошельков с низким балансом (CEX -> bridge)
4. Проверка здоровья внешних сервисов, риски

Ошибка шага не останавливает цикл: она считается, и после
max_consecutive_errors подряд поднимается critical-алерт.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from config import PENGU_MINT, SOLANA_TOKENS, USDC_MINT, MonitorConfig
from .errors import BotError
from .math.liquidity import from_base_units, to_base_units

logger = logging.getLogger(__name__)

# Типы и уровни алертов
ALERT_TYPES = ("connectivity", "balance", "liquidity", "performance", "risk", "error")
ALERT_LEVELS = ("info", "warn", "error", "critical")

DEFAULT_PENGU_PRICE_USDC = 0.1   # пока котировка Jupiter недоступна
PRICE_QUOTE_USDC = 1.0           # котировка цены: 1 USDC -> PENGU
PRICE_QUOTE_SLIPPAGE_BPS = 100
SELL_RATIO_THRESHOLD = 0.7
BUY_RATIO_THRESHOLD = 0.3
REBALANCE_FRACTION = 0.3
MIN_USDC_FOR_BUY = 50.0
HIGH_VALUE_USDC = 1000.0
CLEANUP_INTERVAL = 86400.0
SOL_TOPUP_USDC = 1.0             # USDC на докупку SOL за одно действие


@dataclass
class WalletBalance:
    wallet_index: int
    sol: float = 0.0
    usdc: float = 0.0
    pengu: float = 0.0
    updated_at: float = 0.0

    def pengu_ratio(self, pengu_price_usdc: float) -> float:
        """Доля PENGU в стоимости кошелька (0 для пустого)."""
        pengu_value = self.pengu * pengu_price_usdc
        total = self.usdc + pengu_value
        if total <= 0:
            return 0.0
        return pengu_value / total


@dataclass
class RebalanceAction:
    wallet_index: int
    token_in: str
    token_out: str
    amount: float
    reason: str
    action_type: str = "swap"


@dataclass
class Alert:
    type: str
    level: str
    message: str
    timestamp: float
    data: dict = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.type}_{self.level}_{self.message}"


class Monitor:
    """
    Мониторинг кошельков.

    Usage:
        monitor = Monitor(config.monitor, wallet_manager, swap_manager=swaps)
        monitor.run(max_iterations=10)
    """

    def __init__(
        self,
        config: MonitorConfig,
        wallet_manager,
        swap_manager=None,
        exchange_manager=None,
        bridge_manager=None,
        dry_run: bool = False,
        pengu_price_usdc: float = DEFAULT_PENGU_PRICE_USDC,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.wallet_manager = wallet_manager
        self.swap_manager = swap_manager
        self.exchange_manager = exchange_manager
        self.bridge_manager = bridge_manager
        self.dry_run = dry_run
        self.pengu_price_usdc = pengu_price_usdc
        self._clock = clock
        self._sleep = sleep

        self.balances: Dict[int, WalletBalance] = {}
        self.alerts: List[Alert] = []
        self.alert_history: Dict[str, float] = {}
        self.consecutive_errors: Dict[str, int] = {}
        self.iterations = 0
        self.rebalance_count = 0
        self.recharge_count = 0
        self.started_at = clock()
        self._last_cleanup = self.started_at

    # ── Alerts ──

    def raise_alert(self, alert_type: str, level: str, message: str, data: Optional[dict] = None) -> bool:
        """
        Записать и залогировать алерт.

        Одинаковый (type, level, message) не повторяется чаще alert_cooldown.

        Returns:
            True если алерт выпущен, False если подавлен
        """
        if alert_type not in ALERT_TYPES:
            raise ValueError(f"Unknown alert type: {alert_type}")
        if level not in ALERT_LEVELS:
            raise ValueError(f"Unknown alert level: {level}")

        now = self._clock()
        alert = Alert(type=alert_type, level=level, message=message, timestamp=now, data=data or {})
        last = self.alert_history.get(alert.key)
        if last is not None and now - last < self.config.alert_cooldown:
            logger.debug(f"Alert suppressed: {alert.key}")
            return False

        self.alert_history[alert.key] = now
        self.alerts.append(alert)

        text = f"[ALERT {alert_type}] {message}"
        if level == "info":
            logger.info(text)
        elif level == "warn":
            logger.warning(text)
        elif level == "error":
            logger.error(text)
        else:
            logger.critical(f"[CRITICAL ALERT {alert_type}] {message}")
        return True

    def _record_error(self, operation: str, error: Exception):
        count = self.consecutive_errors.get(operation, 0) + 1
        self.consecutive_errors[operation] = count
        logger.error(f"{operation} failed ({count} in a row): {error}")

        if count >= self.config.max_consecutive_errors:
            self.raise_alert("error", "critical", f"Repeated failures in {operation}", {"count": count})
        else:
            self.raise_alert("error", "warn", f"Failure in {operation}", {"count": count})

    def _record_success(self, operation: str):
        self.consecutive_errors.pop(operation, None)

    def _step(self, operation: str, fn: Callable[[], object]):
        try:
            result = fn()
        except Exception as e:
            self._record_error(operation, e)
            return None
        self._record_success(operation)
        return result

    # ── Balances ──

    def update_balances(self) -> Dict[int, WalletBalance]:
        """Обновить балансы всех кошельков. Кошелёк с ошибкой RPC пропускается."""
        failed = 0
        for wallet in self.wallet_manager:
            try:
                balance = WalletBalance(
                    wallet_index=wallet.index,
                    sol=self.wallet_manager.get_sol_balance(wallet),
                    usdc=self.wallet_manager.get_token_balance(wallet, "USDC"),
                    pengu=self.wallet_manager.get_token_balance(wallet, "PENGU"),
                    updated_at=self._clock(),
                )
            except BotError as e:
                failed += 1
                logger.warning(f"Balance update failed for wallet {wallet.index}: {e}")
                continue
            self.balances[wallet.index] = balance

        if failed and failed == len(self.wallet_manager):
            raise BotError(f"Balance update failed for all {failed} wallets", retryable=True)
        logger.debug(f"Balances updated: {len(self.balances)} wallets, {failed} failed")
        return self.balances

    def refresh_pengu_price(self) -> float:
        """
        Цена PENGU в USDC по котировке Jupiter (1 USDC -> PENGU).

        При ошибке котировки остаётся последняя известная цена.
        """
        client = getattr(self.swap_manager, "client", None)
        if client is None:
            return self.pengu_price_usdc

        usdc_units = to_base_units(PRICE_QUOTE_USDC, SOLANA_TOKENS["USDC"].decimals)
        try:
            quote = client.get_quote(USDC_MINT, PENGU_MINT, usdc_units, PRICE_QUOTE_SLIPPAGE_BPS)
            pengu_out = from_base_units(quote.out_amount, SOLANA_TOKENS["PENGU"].decimals)
            price = PRICE_QUOTE_USDC / pengu_out
        except Exception as e:
            logger.warning(f"PENGU price unavailable ({e}), keeping {self.pengu_price_usdc} USDC")
            return self.pengu_price_usdc

        self.pengu_price_usdc = price
        logger.debug(f"PENGU price: {price:.6f} USDC")
        return price

    # ── Rebalancing ──

    def analyze_rebalance(self, balance: WalletBalance, pengu_price_usdc: Optional[float] = None) -> List[RebalanceAction]:
        price = self.pengu_price_usdc if pengu_price_usdc is None else pengu_price_usdc
        actions = []

        if balance.sol < self.config.min_sol_balance:
            actions.append(RebalanceAction(
                wallet_index=balance.wallet_index,
                token_in="USDC",
                token_out="SOL",
                amount=self.config.min_sol_balance - balance.sol,
                reason="SOL below minimum",
            ))

        ratio = balance.pengu_ratio(price)
        if ratio > SELL_RATIO_THRESHOLD:
            actions.append(RebalanceAction(
                wallet_index=balance.wallet_index,
                token_in="PENGU",
                token_out="USDC",
                amount=balance.pengu * REBALANCE_FRACTION,
                reason=f"PENGU ratio too high ({ratio:.2f})",
            ))
        elif ratio < BUY_RATIO_THRESHOLD and balance.usdc > MIN_USDC_FOR_BUY:
            actions.append(RebalanceAction(
                wallet_index=balance.wallet_index,
                token_in="USDC",
                token_out="PENGU",
                amount=balance.usdc * REBALANCE_FRACTION,
                reason=f"USDC ratio too high (PENGU {ratio:.2f})",
            ))

        return actions

    def execute_rebalance(self, action: RebalanceAction):
        """Выполнить свап. Без swap_manager действие только логируется."""
        logger.info(f"Rebalance wallet {action.wallet_index}: {action.amount:.6f} {action.token_in} -> "
                    f"{action.token_out} ({action.reason})")
        if self.swap_manager is None:
            return None

        wallet = self.wallet_manager.get_wallet(action.wallet_index)
        if action.token_in == "USDC" and action.token_out == "SOL":
            result = self.swap_manager.swap_usdc_to_sol(wallet, SOL_TOPUP_USDC)
        elif action.token_in == "PENGU":
            result = self.swap_manager.swap_pengu_to_usdc(wallet, action.amount)
        else:
            result = self.swap_manager.swap_usdc_to_pengu(wallet, action.amount)

        if result.success:
            self.rebalance_count += 1
        else:
            self.raise_alert("balance", "warn", f"Rebalance failed for wallet {action.wallet_index}",
                             {"error": result.error})
        return result

    def trigger_rebalancing(self) -> List[RebalanceAction]:
        actions = []
        for balance in list(self.balances.values()):
            actions.extend(self.analyze_rebalance(balance))
        for action in actions:
            self.execute_rebalance(action)
        if actions:
            logger.info(f"Rebalance actions: {len(actions)}")
        return actions

    # ── Recharge ──

    def check_recharge_needs(self) -> List[int]:
        """
        Кошельки с SOL или USDC ниже минимума.

        При наличии exchange_manager и bridge_manager запускает
        вывод с CEX на EVM адрес и bridge в Solana.
        """
        low = [
            b.wallet_index for b in self.balances.values()
            if b.sol < self.config.min_sol_balance or b.usdc < self.config.min_usdc_balance
        ]
        if not low:
            return low

        logger.info(f"Wallets with low balance: {low}")
        if self.exchange_manager is None or self.bridge_manager is None:
            return low
        if not getattr(self.exchange_manager, "enabled", False):
            logger.info("CEX disabled, recharge skipped")
            return low

        for index in low:
            self.recharge_wallet(index)
        return low

    def recharge_wallet(self, index: int) -> bool:
        wallet = self.wallet_manager.get_wallet(index)
        withdrawal = self.exchange_manager.withdraw_random([wallet])
        if not withdrawal.success:
            self.raise_alert("balance", "warn", f"Recharge withdrawal failed for wallet {index}",
                             {"error": withdrawal.error})
            return False

        bridge = self.bridge_manager.bridge_usdc_to_solana(wallet, withdrawal.amount)
        if not bridge.success:
            self.raise_alert("balance", "error", f"Recharge bridge failed for wallet {index}",
                             {"error": bridge.error})
            return False

        self.recharge_count += 1
        logger.info(f"Wallet {index} recharged with {withdrawal.amount} via {withdrawal.exchange_used}")
        return True

    # ── Health / risk ──

    def check_health(self):
        if self.dry_run:
            logger.debug("Dry run: connectivity checks skipped")
            return

        if self.exchange_manager is not None:
            for name, ok in self.exchange_manager.check_connectivity().items():
                if not ok:
                    self.raise_alert("connectivity", "error", f"{name} API unreachable")

        metrics = self.get_metrics()
        if metrics["wallets_tracked"] and metrics["total_usdc"] < 100:
            self.raise_alert("balance", "warn", "Total USDC balance is low", {"total_usdc": metrics["total_usdc"]})

    def check_risks(self):
        for balance in self.balances.values():
            value = balance.usdc + balance.pengu * self.pengu_price_usdc
            if value > HIGH_VALUE_USDC:
                self.raise_alert("risk", "warn", f"Wallet {balance.wallet_index} holds a high value",
                                 {"value_usdc": value})
            if balance.pengu_ratio(self.pengu_price_usdc) > 0.9:
                self.raise_alert("risk", "warn", f"Wallet {balance.wallet_index} PENGU ratio above 90%")

    # ── Loop ──

    def daily_cleanup(self) -> int:
        """Очистить старые алерты и историю выводов."""
        now = self._clock()
        cutoff = now - CLEANUP_INTERVAL
        before = len(self.alerts)
        self.alerts = [a for a in self.alerts if a.timestamp >= cutoff]
        self.alert_history = {k: ts for k, ts in self.alert_history.items() if ts >= cutoff}
        if self.exchange_manager is not None:
            self.exchange_manager.cleanup_history(CLEANUP_INTERVAL)
        self._last_cleanup = now
        removed = before - len(self.alerts)
        logger.info(f"Daily cleanup: {removed} alerts removed")
        return removed

    def run_once(self):
        self.iterations += 1
        logger.debug(f"Monitoring cycle {self.iterations}")

        if self._step("update_balances", self.update_balances) is None:
            return
        self._step("price", self.refresh_pengu_price)
        self._step("rebalance", self.trigger_rebalancing)
        self._step("recharge", self.check_recharge_needs)
        self._step("health_check", self.check_health)
        self._step("risk_monitoring", self.check_risks)

        if self._clock() - self._last_cleanup >= CLEANUP_INTERVAL:
            self._step("cleanup", self.daily_cleanup)

    def run(self, max_iterations: Optional[int] = None, interval: Optional[float] = None):
        """Цикл мониторинга. Без max_iterations работает до KeyboardInterrupt."""
        interval = self.config.interval if interval is None else interval
        logger.info(f"Monitor started: {len(self.wallet_manager)} wallets, interval {interval}s")
        count = 0
        try:
            while max_iterations is None or count < max_iterations:
                self.run_once()
                count += 1
                if max_iterations is None or count < max_iterations:
                    self._sleep(interval)
        except KeyboardInterrupt:
            logger.info("Monitor stopped by user")
        logger.info(f"Monitor finished after {count} cycles")

    def get_metrics(self) -> dict:
        balances = list(self.balances.values())
        return {
            "wallets_tracked": len(balances),
            "active_wallets": sum(1 for b in balances if b.sol > 0 or b.usdc > 0 or b.pengu > 0),
            "total_sol": sum(b.sol for b in balances),
            "total_usdc": sum(b.usdc for b in balances),
            "total_pengu": sum(b.pengu for b in balances),
            "iterations": self.iterations,
            "rebalances": self.rebalance_count,
            "recharges": self.recharge_count,
            "alerts": len(self.alerts),
            "uptime": self._clock() - self.started_at,
        }
