"""
Jupiter Aggregator API Client

Свапы на Solana через Jupiter v6.

API flow:
1. GET /quote: котировка и маршрут
2. POST /swap: сериализованная VersionedTransaction (base64)
3. Подписать своим ключом и отправить в сеть

Docs: https://station.jup.ag/docs/apis/swap-api
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import requests

from config import SOLANA_TOKENS, USDC_MINT, WSOL_MINT, PENGU_MINT, SwapConfig
from .errors import INSUFFICIENT_BALANCE, NETWORK, NO_ROUTE, SLIPPAGE, TradingError, map_trading_error
from .math.liquidity import to_base_units
from .solana_tx import SolanaTxSender
from .utils import CircuitBreaker, CircuitOpenError, retry_with_backoff

logger = logging.getLogger(__name__)

JUPITER_BASE_URL = "https://quote-api.jup.ag/v6"


# ── Exceptions ──

class JupiterError(Exception):
    """Базовая ошибка Jupiter."""
    pass


class JupiterAPIError(JupiterError):
    """API вернул ошибку (non-200 или невалидный ответ)."""
    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(f"Jupiter API error {status_code}: {message}")

    @property
    def retryable(self) -> bool:
        return self.status_code == 429 or self.status_code >= 500


class JupiterNoRouteError(JupiterError):
    """Маршрут для пары не найден."""
    pass


class JupiterTimeoutError(JupiterError):
    """Таймаут запроса к API."""
    pass


def _should_retry(error: Exception) -> bool:
    if isinstance(error, JupiterAPIError):
        return error.retryable
    return isinstance(error, JupiterTimeoutError)


# ── Data classes ──

@dataclass
class JupiterQuote:
    """Результат GET /quote."""
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    other_amount_threshold: int
    price_impact_pct: float   # в процентах (API отдаёт долю: "0.0012" -> 0.12)
    slippage_bps: int
    route_description: str    # "Jupiter: Whirlpool -> Meteora"
    raw: dict                 # Сырой ответ для POST /swap


@dataclass
class SwapResult:
    success: bool
    signature: Optional[str] = None
    input_mint: str = ""
    output_mint: str = ""
    in_amount: int = 0
    out_amount: int = 0
    price_impact_pct: float = 0.0
    simulated: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False


class JupiterClient:
    """
    HTTP-клиент Jupiter Swap API.

    Использование:
        client = JupiterClient()
        quote = client.get_quote(USDC_MINT, PENGU_MINT, 10_000_000, slippage_bps=50)
        tx_b64 = client.get_swap_transaction(quote, str(keypair.pubkey()))
    """

    def __init__(
        self,
        api_key: str = "",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        max_attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.timeout = timeout
        self.max_attempts = max_attempts
        self._sleep = sleep
        self.breaker = breaker or CircuitBreaker("jupiter", failure_threshold=5, open_seconds=30.0)
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
        })
        if api_key:
            self.session.headers.update({"x-api-key": api_key})

    def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{JUPITER_BASE_URL}{path}"
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout:
            raise JupiterTimeoutError(f"Timeout calling {path} ({self.timeout}s)")
        except requests.exceptions.RequestException as e:
            raise JupiterError(f"Request failed: {e}")

        if resp.status_code != 200:
            raise JupiterAPIError(resp.status_code, resp.text[:500])

        try:
            return resp.json()
        except ValueError:
            raise JupiterAPIError(resp.status_code, "Invalid JSON response")

    def _call(self, method: str, path: str, **kwargs) -> dict:
        # 429 и 5xx повторяются и открывают breaker, остальное сразу наверх
        return retry_with_backoff(
            lambda: self.breaker.call(lambda: self._request(method, path, **kwargs), counts_as_failure=_should_retry),
            tries=self.max_attempts,
            base_delay=1.0,
            max_delay=8.0,
            jitter=1.0,
            should_retry=_should_retry,
            sleep=self._sleep,
            label=f"jupiter {path}",
        )

    def get_quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int = 50) -> JupiterQuote:
        """
        Получить котировку.

        Args:
            input_mint: Mint входного токена
            output_mint: Mint выходного токена
            amount: Сумма в минимальных единицах входного токена
            slippage_bps: Допустимый slippage

        Raises:
            JupiterNoRouteError: Маршрут не найден
            JupiterAPIError: Ошибка API
            JupiterTimeoutError: Таймаут
        """
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": slippage_bps,
        }
        try:
            body = self._call("GET", "/quote", params=params)
        except JupiterAPIError as e:
            if e.status_code in (400, 404):
                raise JupiterNoRouteError(f"No route: {e}")
            raise

        if not body or "outAmount" not in body:
            msg = body.get("error", "Empty quote") if isinstance(body, dict) else "Empty quote"
            raise JupiterNoRouteError(f"No route: {msg}")

        labels = []
        for step in body.get("routePlan") or []:
            label = (step.get("swapInfo") or {}).get("label")
            if label and label not in labels:
                labels.append(label)
        route_description = "Jupiter: " + " -> ".join(labels) if labels else "Jupiter"

        return JupiterQuote(
            input_mint=body.get("inputMint", input_mint),
            output_mint=body.get("outputMint", output_mint),
            in_amount=int(body.get("inAmount", amount)),
            out_amount=int(body["outAmount"]),
            other_amount_threshold=int(body.get("otherAmountThreshold", 0)),
            price_impact_pct=float(body.get("priceImpactPct") or 0) * 100,
            slippage_bps=int(body.get("slippageBps", slippage_bps)),
            route_description=route_description,
            raw=body,
        )

    def get_swap_transaction(self, quote: JupiterQuote, user_public_key: str) -> str:
        """POST /swap -> base64 VersionedTransaction (не подписана)."""
        payload = {
            "quoteResponse": quote.raw,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": "auto",
        }
        body = self._call("POST", "/swap", json=payload)
        swap_tx = body.get("swapTransaction")
        if not swap_tx:
            raise JupiterError("No swapTransaction in response")
        return swap_tx


class SwapManager:
    """
    Свапы для кошельков пайплайна.

    Ошибки не выбрасываются: swap() всегда возвращает SwapResult.
    """

    def __init__(
        self,
        config: SwapConfig,
        client: Optional[JupiterClient] = None,
        sender: Optional[SolanaTxSender] = None,
        rpc=None,
        dry_run: bool = False,
    ):
        self.config = config
        self.client = client or JupiterClient(api_key=config.api_key)
        if sender is None and rpc is not None:
            sender = SolanaTxSender(rpc)
        self.sender = sender
        self.dry_run = dry_run

    def swap(
        self,
        wallet,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: Optional[int] = None,
    ) -> SwapResult:
        """
        Свап amount (минимальные единицы input_mint).

        Returns:
            SwapResult (simulated=True в dry run, подпись не отправляется)
        """
        slippage_bps = self.config.slippage_bps if slippage_bps is None else slippage_bps
        result = SwapResult(success=False, input_mint=input_mint, output_mint=output_mint, in_amount=amount)

        try:
            if amount <= 0:
                raise TradingError(f"Swap amount must be positive, got {amount}",
                                   code=INSUFFICIENT_BALANCE, deterministic=True)

            quote = self.client.get_quote(input_mint, output_mint, amount, slippage_bps)
            result.out_amount = quote.out_amount
            result.price_impact_pct = quote.price_impact_pct
            logger.info(f"Quote {quote.route_description}: {amount} -> {quote.out_amount} "
                        f"(impact {quote.price_impact_pct:.3f}%)")

            if quote.price_impact_pct > self.config.max_price_impact_pct:
                raise TradingError(
                    f"Price impact {quote.price_impact_pct:.2f}% > {self.config.max_price_impact_pct}%",
                    code=SLIPPAGE, deterministic=True,
                )

            if self.dry_run:
                logger.info(f"[DRY RUN] Swap for wallet {wallet.index} not sent")
                result.success = True
                result.simulated = True
                return result

            if self.sender is None:
                raise TradingError("Solana sender is not configured", code=NETWORK)

            tx_b64 = self.client.get_swap_transaction(quote, wallet.solana_address)
            result.signature = self.sender.send_versioned_base64(tx_b64, wallet.solana_keypair)
            result.success = True
            logger.info(f"Swap confirmed for wallet {wallet.index}: {result.signature}")
            return result

        except JupiterNoRouteError as e:
            error = TradingError(str(e), code=NO_ROUTE)
        except JupiterAPIError as e:
            error = TradingError(str(e), code=NETWORK if e.retryable else NO_ROUTE, retryable=e.retryable)
        except JupiterError as e:
            error = TradingError(str(e), code=NETWORK, retryable=True)
        except CircuitOpenError as e:
            error = TradingError(e.message, code=NETWORK, retryable=True)
        except Exception as e:
            error = map_trading_error(e)
            if getattr(e, "retryable", False):
                error.retryable = True

        logger.error(f"Swap failed for wallet {wallet.index}: {error}")
        result.error = str(error)
        result.error_code = error.code
        result.retryable = error.retryable
        return result

    def swap_usdc_to_pengu(self, wallet, usdc_amount: float, slippage_bps: Optional[int] = None) -> SwapResult:
        amount = to_base_units(usdc_amount, SOLANA_TOKENS["USDC"].decimals)
        return self.swap(wallet, USDC_MINT, PENGU_MINT, amount, slippage_bps)

    def swap_usdc_to_sol(self, wallet, usdc_amount: float, slippage_bps: Optional[int] = None) -> SwapResult:
        amount = to_base_units(usdc_amount, SOLANA_TOKENS["USDC"].decimals)
        return self.swap(wallet, USDC_MINT, WSOL_MINT, amount, slippage_bps)

    def swap_pengu_to_usdc(self, wallet, pengu_amount: float, slippage_bps: Optional[int] = None) -> SwapResult:
        amount = to_base_units(pengu_amount, SOLANA_TOKENS["PENGU"].decimals)
        return self.swap(wallet, PENGU_MINT, USDC_MINT, amount, slippage_bps)
