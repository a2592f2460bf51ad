"""
Lite bot: полный проход пайплайна для одного кошелька.

Шаги (строго по порядку):
    balances -> withdrawal -> bridge -> sol -> swap -> liquidity

withdrawal выполняется только при включённых CEX и нехватке USDC;
его неудача не останавливает кошелёк (bridge может пройти с уже
имеющимся балансом EVM). Любая другая неудача останавливает кошелёк.
"""

import logging
import random
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Iterable, List, Optional

from solders.pubkey import Pubkey

from config import PENGU_MINT, SOLANA_TOKENS, BotConfig
from .errors import INSUFFICIENT_BALANCE
from .math.liquidity import to_base_units

logger = logging.getLogger(__name__)

DEFAULT_BRIDGE_AMOUNT_USDC = 1.0
SOL_SWAP_USDC = 0.01
PENGU_SWAP_USDC = 0.01
MIN_PENGU_BALANCE = 0.01
INTER_WALLET_DELAY = (2.0, 8.0)   # секунды, случайная пауза между кошельками


@dataclass
class StepResult:
    name: str
    success: bool
    skipped: bool = False
    detail: str = ""
    error: Optional[str] = None
    error_code: Optional[str] = None
    data: dict = field(default_factory=dict)


@dataclass
class PipelineResult:
    wallet_index: int
    success: bool = False
    failed_step: Optional[str] = None
    simulated: bool = False
    steps: List[StepResult] = field(default_factory=list)
    duration: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


class _Balances:
    def __init__(self, sol: float = 0.0, usdc: float = 0.0, pengu: float = 0.0):
        self.sol = sol
        self.usdc = usdc
        self.pengu = pengu

    def as_dict(self) -> dict:
        return {"sol": self.sol, "usdc": self.usdc, "pengu": self.pengu}


class StepFailed(Exception):
    """Шаг пайплайна завершился неудачей."""

    def __init__(self, step: StepResult):
        super().__init__(step.error or step.name)
        self.step = step


class LiteBot:
    """
    Usage:
        bot = LiteBot(config, wallets, exchanges, bridge, swaps, positions)
        result = bot.run_wallet(0)
        results = bot.run_all()
    """

    def __init__(
        self,
        config: BotConfig,
        wallet_manager,
        exchange_manager,
        bridge_manager,
        swap_manager,
        position_builder,
        dry_run: Optional[bool] = None,
        bridge_amount: float = DEFAULT_BRIDGE_AMOUNT_USDC,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.wallet_manager = wallet_manager
        self.exchange_manager = exchange_manager
        self.bridge_manager = bridge_manager
        self.swap_manager = swap_manager
        self.position_builder = position_builder
        self.dry_run = config.dry_run if dry_run is None else dry_run
        self.bridge_amount = bridge_amount
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._clock = clock

    # ── Steps ──

    def _read_balances(self, wallet) -> _Balances:
        return _Balances(
            sol=self.wallet_manager.get_sol_balance(wallet),
            usdc=self.wallet_manager.get_token_balance(wallet, "USDC"),
            pengu=self.wallet_manager.get_token_balance(wallet, "PENGU"),
        )

    def _step_balances(self, wallet, state: dict) -> StepResult:
        balances = self._read_balances(wallet)
        state["balances"] = balances
        logger.info(f"Wallet {wallet.index}: SOL={balances.sol:.6f} USDC={balances.usdc:.6f} PENGU={balances.pengu:.6f}")
        return StepResult("balances", True, data=balances.as_dict())

    def _step_withdrawal(self, wallet, state: dict) -> StepResult:
        balances = state["balances"]
        if not getattr(self.exchange_manager, "enabled", False):
            return StepResult("withdrawal", True, skipped=True, detail="CEX disabled")
        if balances.usdc >= self.config.monitor.min_usdc_balance:
            return StepResult("withdrawal", True, skipped=True, detail="USDC sufficient")

        result = self.exchange_manager.withdraw_random([wallet], network_chain=self.config.bridge.from_chain)
        if result.success:
            state["bridge_amount"] = result.amount
            return StepResult("withdrawal", True, detail=f"{result.amount} via {result.exchange_used}",
                              data={"exchange": result.exchange_used, "tx_id": result.tx_id})

        logger.warning(f"Withdrawal failed for wallet {wallet.index}, continuing with EVM balance: {result.error}")
        return StepResult("withdrawal", False, detail="continuing with existing EVM balance",
                          error=result.error, error_code=result.error_code)

    def _step_bridge(self, wallet, state: dict) -> StepResult:
        balances = state["balances"]
        if balances.usdc >= self.config.monitor.min_usdc_balance:
            return StepResult("bridge", True, skipped=True, detail="USDC sufficient")

        amount = state.get("bridge_amount", self.bridge_amount)
        result = self.bridge_manager.bridge_usdc_to_solana(wallet, amount)
        step = StepResult("bridge", result.success, detail=f"{amount} USDC via {result.route or 'lifi'}",
                          error=result.error, error_code=result.error_code,
                          data={"tx_hash": result.tx_hash, "dst_tx_hash": result.dst_tx_hash,
                                "simulated": result.simulated})
        if not result.success:
            raise StepFailed(step)

        if result.simulated:
            balances.usdc += amount
        else:
            balances.usdc = self.wallet_manager.get_token_balance(wallet, "USDC")
        return step

    def _step_sol(self, wallet, state: dict) -> StepResult:
        balances = state["balances"]
        if balances.sol >= self.config.monitor.min_sol_balance:
            return StepResult("sol", True, skipped=True, detail="SOL sufficient")

        if balances.usdc < SOL_SWAP_USDC:
            raise StepFailed(StepResult(
                "sol", False,
                error=f"SOL below minimum ({balances.sol} < {self.config.monitor.min_sol_balance}) "
                      f"and not enough USDC to buy it",
                error_code=INSUFFICIENT_BALANCE,
            ))

        result = self.swap_manager.swap_usdc_to_sol(wallet, SOL_SWAP_USDC)
        step = StepResult("sol", result.success, detail=f"swap {SOL_SWAP_USDC} USDC -> SOL",
                          error=result.error, error_code=result.error_code,
                          data={"signature": result.signature, "simulated": result.simulated})
        if not result.success:
            raise StepFailed(step)
        balances.usdc -= SOL_SWAP_USDC
        return step

    def _step_swap(self, wallet, state: dict) -> StepResult:
        balances = state["balances"]
        if balances.pengu >= MIN_PENGU_BALANCE:
            return StepResult("swap", True, skipped=True, detail="PENGU sufficient")

        if balances.usdc < PENGU_SWAP_USDC:
            raise StepFailed(StepResult(
                "swap", False, error=f"Not enough USDC to buy PENGU: {balances.usdc} < {PENGU_SWAP_USDC}",
                error_code=INSUFFICIENT_BALANCE,
            ))

        result = self.swap_manager.swap_usdc_to_pengu(wallet, PENGU_SWAP_USDC)
        step = StepResult("swap", result.success, detail=f"swap {PENGU_SWAP_USDC} USDC -> PENGU",
                          error=result.error, error_code=result.error_code,
                          data={"signature": result.signature, "out_amount": result.out_amount,
                                "simulated": result.simulated})
        if not result.success:
            raise StepFailed(step)

        if result.simulated:
            balances.pengu += result.out_amount / 10 ** SOLANA_TOKENS["PENGU"].decimals
        else:
            balances.pengu = self.wallet_manager.get_token_balance(wallet, "PENGU")
        return step

    def _step_liquidity(self, wallet, state: dict) -> StepResult:
        balances = state["balances"]
        lp = self.config.liquidity
        deposit = min(lp.deposit_pengu, balances.pengu)
        amount = to_base_units(deposit, SOLANA_TOKENS["PENGU"].decimals)
        if amount <= 0:
            raise StepFailed(StepResult(
                "liquidity", False, error=f"No PENGU to deposit (balance {balances.pengu})",
                error_code=INSUFFICIENT_BALANCE,
            ))

        result = self.position_builder.open_position(
            wallet,
            Pubkey.from_string(lp.lp_pool_address),
            Pubkey.from_string(PENGU_MINT),
            amount,
            slippage_bps=self.config.swap.slippage_bps,
        )
        step = StepResult("liquidity", result.success, detail=f"LP {deposit} PENGU",
                          error=result.error, error_code=result.error_code, data=result.to_dict())
        if not result.success:
            raise StepFailed(step)
        return step

    # ── Runs ──

    def run_wallet(self, index: int) -> PipelineResult:
        """Полный проход для кошелька index. Исключения не выбрасываются."""
        started = self._clock()
        result = PipelineResult(wallet_index=index, simulated=self.dry_run)
        mode = "DRY RUN" if self.dry_run else "LIVE"
        logger.info(f"=== Wallet {index} ({mode}) ===")

        steps = (
            ("balances", self._step_balances),
            ("withdrawal", self._step_withdrawal),
            ("bridge", self._step_bridge),
            ("sol", self._step_sol),
            ("swap", self._step_swap),
            ("liquidity", self._step_liquidity),
        )

        try:
            wallet = self.wallet_manager.get_wallet(index)
            state = {}
            for name, fn in steps:
                try:
                    step = fn(wallet, state)
                except StepFailed as e:
                    step = e.step
                    result.steps.append(step)
                    result.failed_step = name
                    logger.error(f"Wallet {index}: step {name} failed: {step.error}")
                    break
                except Exception as e:
                    result.steps.append(StepResult(name, False, error=str(e),
                                                   error_code=getattr(e, "code", None)))
                    result.failed_step = name
                    logger.error(f"Wallet {index}: step {name} failed: {e}")
                    break
                result.steps.append(step)
                status = "skipped" if step.skipped else ("ok" if step.success else "failed")
                logger.info(f"Wallet {index}: {name} {status} {step.detail}".rstrip())
        except Exception as e:
            result.failed_step = "wallet"
            result.steps.append(StepResult("wallet", False, error=str(e), error_code=getattr(e, "code", None)))
            logger.error(f"Wallet {index}: {e}")

        result.success = result.failed_step is None
        result.duration = self._clock() - started
        logger.info(f"Wallet {index}: {'success' if result.success else 'FAILED at ' + result.failed_step} "
                    f"in {result.duration:.1f}s")
        return result

    def run_all(self, indices: Optional[Iterable[int]] = None) -> List[PipelineResult]:
        """Кошельки обрабатываются последовательно со случайной паузой между ними."""
        indices = list(self.wallet_manager.indices if indices is None else indices)
        results = []
        for n, index in enumerate(indices):
            if n > 0:
                delay = self._rng.uniform(*INTER_WALLET_DELAY)
                logger.info(f"Waiting {delay:.1f}s before next wallet")
                self._sleep(delay)
            results.append(self.run_wallet(index))

        ok = sum(1 for r in results if r.success)
        logger.info(f"Pipeline finished: {ok}/{len(results)} wallets succeeded")
        return results
