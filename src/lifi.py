"""
LI.FI Bridge API Client

Bridge USDC из EVM сети (Arbitrum по умолчанию) в USDC-SPL на Solana.

API flow:
1. GET /quote: маршрут(ы) и готовый transactionRequest
2. Approve USDC на approvalAddress, отправить transactionRequest
3. GET /status: статус доставки на стороне Solana

Выбор маршрута: CCTP в приоритете, иначе самый дешёвый.
Маршрут с комиссией выше max_fee_pct отклоняется без повторов.

Docs: https://docs.li.fi/li.fi-api/li.fi-api
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import requests
from web3 import Web3

from config import CHAIN_IDS, USDC_MINT, BridgeConfig, EvmConfig, get_evm_chain
from .errors import (
    BRIDGE_TIMEOUT,
    FEES_TOO_HIGH,
    LOW_OUTPUT,
    NETWORK,
    NO_ROUTE,
    TX_FAILED,
    BridgeError,
    map_bridge_error,
)
from .evm import EvmTransactionError, broadcast_transaction, ensure_allowance, get_web3, wait_for_receipt
from .math.liquidity import to_base_units
from .utils import JobStore, backoff_delay

logger = logging.getLogger(__name__)

LIFI_BASE_URL = "https://li.quest/v1"
CCTP_TOOL = "cctp"

HIGH_FEES = "HIGH_FEES"
LOW_OUTPUT_REASON = "LOW_OUTPUT"
INVALID_QUOTE = "INVALID_QUOTE"


# ── Exceptions ──

class LiFiError(Exception):
    """Базовая ошибка LI.FI."""
    pass


class LiFiAPIError(LiFiError):
    """API вернул ошибку (non-200 или невалидный ответ)."""
    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(f"LI.FI API error {status_code}: {message}")


class LiFiNoRouteError(LiFiError):
    """Маршрут не найден."""
    pass


class LiFiTimeoutError(LiFiError):
    """Таймаут запроса к API."""
    pass


# ── Data classes ──

@dataclass
class FeeAnalysis:
    viable: bool
    total_fees: float = 0.0
    fee_pct: float = 0.0
    output_pct: float = 0.0
    reason: Optional[str] = None


@dataclass
class BridgeResult:
    success: bool
    tx_hash: Optional[str] = None
    dst_tx_hash: Optional[str] = None
    route: Optional[str] = None
    amount: float = 0.0
    fee_pct: float = 0.0
    arrived: bool = False
    simulated: bool = False
    job_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False


def _route_value(route: dict, key: str, default=None):
    """Поле маршрута: верхний уровень, затем estimate, затем action."""
    if key in route:
        return route[key]
    for section in ("estimate", "action"):
        nested = route.get(section) or {}
        if key in nested:
            return nested[key]
    return default


def _route_fee(route: dict) -> float:
    fee = route.get("estimatedFeeUsd")
    if fee is None:
        gas_costs = _route_value(route, "gasCosts") or []
        fee = gas_costs[0].get("price") if gas_costs else 0
    try:
        return float(fee or 0)
    except (TypeError, ValueError):
        return 0.0


def _tool(route: dict) -> str:
    return str(route.get("tool") or "").lower()


def pick_route(routes: List[dict], prefer_cctp: bool = True) -> Optional[dict]:
    """
    Выбрать маршрут.

    CCTP при prefer_cctp, иначе самый дешёвый не-CCTP маршрут
    (estimatedFeeUsd или gasCosts[0].price). Если есть только CCTP, первый маршрут.
    """
    if not routes:
        return None

    if prefer_cctp:
        for route in routes:
            if _tool(route) == CCTP_TOOL:
                return route

    non_cctp = [r for r in routes if _tool(r) != CCTP_TOOL]
    if not non_cctp:
        return routes[0]
    return min(non_cctp, key=_route_fee)


def analyze_fees(route: dict, max_fee_pct: float = 3.0, min_output_pct: float = 90.0) -> FeeAnalysis:
    """
    Проверка стоимости маршрута.

    fee_pct = sum(price * gasLimit) / 10^gas_decimals / (fromAmount / 10^from_decimals) * 100
    output_pct = (toAmount / 10^to_decimals) / (fromAmount / 10^from_decimals) * 100

    Decimals по умолчанию: gas 18, fromToken 18, toToken 6.
    """
    try:
        gas_costs = _route_value(route, "gasCosts") or []
        total_fees = 0.0
        for cost in gas_costs:
            total_fees += float(cost.get("price") or 0) * float(cost.get("gasLimit") or 0)

        gas_decimals = 18
        if gas_costs:
            gas_decimals = int((gas_costs[0].get("token") or {}).get("decimals") or 18)
        from_decimals = int((_route_value(route, "fromToken") or {}).get("decimals") or 18)
        to_decimals = int((_route_value(route, "toToken") or {}).get("decimals") or 6)

        from_amount = float(_route_value(route, "fromAmount", 0)) / 10 ** from_decimals
        to_amount = float(_route_value(route, "toAmount", 0)) / 10 ** to_decimals
    except (TypeError, ValueError, AttributeError) as e:
        logger.error(f"Cannot analyze route fees: {e}")
        return FeeAnalysis(viable=False, reason=INVALID_QUOTE)

    if from_amount <= 0:
        return FeeAnalysis(viable=False, total_fees=total_fees, reason=INVALID_QUOTE)

    fee_pct = (total_fees / 10 ** gas_decimals) / from_amount * 100
    output_pct = to_amount / from_amount * 100

    if fee_pct > max_fee_pct:
        return FeeAnalysis(viable=False, total_fees=total_fees, fee_pct=fee_pct,
                           output_pct=output_pct, reason=HIGH_FEES)
    if output_pct < min_output_pct:
        return FeeAnalysis(viable=False, total_fees=total_fees, fee_pct=fee_pct,
                           output_pct=output_pct, reason=LOW_OUTPUT_REASON)

    return FeeAnalysis(viable=True, total_fees=total_fees, fee_pct=fee_pct, output_pct=output_pct)


class LiFiClient:
    """
    HTTP-клиент LI.FI API.

    Использование:
        client = LiFiClient(api_key)
        routes = client.get_quote(42161, SOLANA_CHAIN_ID, usdc, USDC_MINT, 10_000_000, evm_addr, sol_addr)
        route = pick_route(routes)
    """

    def __init__(self, api_key: str = "", timeout: float = 20.0, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if api_key:
            self.session.headers.update({"x-lifi-api-key": api_key})

    def _get(self, path: str, params: dict) -> dict:
        url = f"{LIFI_BASE_URL}{path}"
        try:
            resp = self.session.get(url, params=params, timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise LiFiTimeoutError(f"Timeout calling {path} ({self.timeout}s)")
        except requests.exceptions.RequestException as e:
            raise LiFiError(f"Request failed: {e}")

        if resp.status_code == 404 and path == "/quote":
            raise LiFiNoRouteError(f"No route: {resp.text[:200]}")
        if resp.status_code != 200:
            raise LiFiAPIError(resp.status_code, resp.text[:500])

        try:
            return resp.json()
        except ValueError:
            raise LiFiAPIError(resp.status_code, "Invalid JSON response")

    def get_quote(
        self,
        from_chain: int,
        to_chain: int,
        from_token: str,
        to_token: str,
        from_amount: int,
        from_address: str,
        to_address: str,
        slippage: float = 0.005,
    ) -> List[dict]:
        """
        Получить маршруты.

        Ответ бывает двух видов: {"routes": [...]} или один step с transactionRequest.
        Оба приводятся к списку.

        Raises:
            LiFiNoRouteError: Маршрутов нет
            LiFiAPIError: Ошибка API
            LiFiTimeoutError: Таймаут
        """
        params = {
            "fromChain": str(from_chain),
            "toChain": str(to_chain),
            "fromToken": from_token,
            "toToken": to_token,
            "fromAmount": str(from_amount),
            "fromAddress": from_address,
            "toAddress": to_address,
            "slippage": slippage,
        }
        body = self._get("/quote", params)

        if isinstance(body, list):
            routes = body
        elif isinstance(body, dict) and isinstance(body.get("routes"), list):
            routes = body["routes"]
        elif isinstance(body, dict) and body:
            routes = [body]
        else:
            routes = []

        if not routes:
            raise LiFiNoRouteError("Empty quote response")
        return routes

    def get_status(self, tx_hash: str, bridge: Optional[str] = None,
                   from_chain: Optional[int] = None, to_chain: Optional[int] = None) -> dict:
        params = {"txHash": tx_hash}
        if bridge:
            params["bridge"] = bridge
        if from_chain is not None:
            params["fromChain"] = str(from_chain)
        if to_chain is not None:
            params["toChain"] = str(to_chain)
        return self._get("/status", params)


class BridgeManager:
    """
    Bridge USDC -> USDC-SPL для кошельков пайплайна.

    Повторная отправка после частичного сбоя блокируется таблицей bridge_jobs:
    если у задачи уже есть src_tx_hash, выполняется только ожидание доставки.
    Hash сохраняется сразу после send_raw_transaction, до ожидания receipt.
    """

    def __init__(
        self,
        config: BridgeConfig,
        evm: EvmConfig,
        wallet_manager,
        client: Optional[LiFiClient] = None,
        job_store: Optional[JobStore] = None,
        web3_factory: Callable[[str], Web3] = get_web3,
        dry_run: bool = False,
        poll_base_delay: float = 5.0,
        poll_max_delay: float = 60.0,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.evm = evm
        self.wallet_manager = wallet_manager
        self.client = client or LiFiClient(config.api_key)
        self.job_store = job_store or JobStore(config.job_db_path)
        self._web3_factory = web3_factory
        self.dry_run = dry_run
        self.poll_base_delay = poll_base_delay
        self.poll_max_delay = poll_max_delay
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._clock = clock

    @staticmethod
    def job_id(wallet_index: int, chain: str, amount_units: int) -> str:
        return f"bridge_{wallet_index}_{chain}_{amount_units}"

    def _failure(self, error: BridgeError, **fields) -> BridgeResult:
        logger.error(f"Bridge failed: {error}")
        return BridgeResult(success=False, error=str(error), error_code=error.code,
                            retryable=error.retryable, **fields)

    def bridge_usdc_to_solana(
        self,
        wallet,
        amount: float,
        from_chain: Optional[str] = None,
        prefer_cctp: Optional[bool] = None,
        max_retries: Optional[int] = None,
    ) -> BridgeResult:
        """
        Bridge amount USDC с EVM адреса кошелька на его Solana адрес.

        Returns:
            BridgeResult; исключения не выбрасываются
        """
        chain = get_evm_chain(from_chain or self.config.from_chain)
        prefer_cctp = self.config.prefer_cctp if prefer_cctp is None else prefer_cctp
        max_retries = max_retries or self.config.max_retries
        amount_units = to_base_units(amount, chain.usdc_decimals)
        job_id = self.job_id(wallet.index, chain.name, amount_units)

        existing = self.job_store.get(job_id)
        if existing and existing.src_tx_hash and existing.status != JobStore.FAILED:
            if existing.status == JobStore.DONE:
                logger.info(f"Bridge job {job_id} already done ({existing.src_tx_hash})")
                return BridgeResult(success=True, tx_hash=existing.src_tx_hash, dst_tx_hash=existing.dst_tx_hash,
                                    amount=amount, arrived=True, job_id=job_id)
            logger.info(f"Bridge job {job_id} already submitted, waiting for arrival only")
            return self._await_arrival(job_id, existing.src_tx_hash, None, chain.chain_id, wallet, amount, 0, 0.0)

        logger.info(f"Bridging {amount} USDC {chain.name} -> Solana for wallet {wallet.index} (CCTP preferred: {prefer_cctp})")

        last_error = BridgeError(f"Bridge failed after {max_retries} attempts", code=NO_ROUTE)
        for attempt in range(1, max_retries + 1):
            try:
                routes = self.client.get_quote(
                    from_chain=chain.chain_id,
                    to_chain=CHAIN_IDS["solana"],
                    from_token=chain.usdc,
                    to_token=USDC_MINT,
                    from_amount=amount_units,
                    from_address=wallet.evm_address,
                    to_address=wallet.solana_address,
                )
                route = pick_route(routes, prefer_cctp)
                if route is None:
                    raise BridgeError("No bridge route", code=NO_ROUTE, retryable=True)

                analysis = analyze_fees(route, self.config.max_fee_pct, self.config.min_output_pct)
                if not analysis.viable:
                    if analysis.reason == HIGH_FEES:
                        return self._failure(
                            BridgeError(f"Bridge fees too high: {analysis.fee_pct:.2f}% > {self.config.max_fee_pct}%",
                                        code=FEES_TOO_HIGH, deterministic=True),
                            route=route.get("tool"), amount=amount, fee_pct=analysis.fee_pct, job_id=job_id,
                        )
                    raise BridgeError(f"Route not viable: {analysis.reason} (output {analysis.output_pct:.1f}%)",
                                      code=LOW_OUTPUT, retryable=True)

                logger.info(f"Route {route.get('tool')}: fee {analysis.fee_pct:.3f}%, output {analysis.output_pct:.1f}%")

                if self.dry_run:
                    logger.info("[DRY RUN] Bridge not submitted")
                    return BridgeResult(success=True, route=route.get("tool"), amount=amount,
                                        fee_pct=analysis.fee_pct, simulated=True, job_id=job_id)

                return self._execute(job_id, route, chain, wallet, amount, amount_units, analysis.fee_pct)

            except LiFiNoRouteError as e:
                last_error = BridgeError(str(e), code=NO_ROUTE, retryable=True)
            except LiFiAPIError as e:
                retryable = e.status_code == 429 or e.status_code >= 500
                last_error = BridgeError(str(e), code=NETWORK if retryable else NO_ROUTE, retryable=retryable)
            except LiFiError as e:
                last_error = BridgeError(str(e), code=NETWORK, retryable=True)
            except BridgeError as e:
                last_error = e
            except Exception as e:
                last_error = map_bridge_error(e)

            if not last_error.retryable:
                return self._failure(last_error, amount=amount, job_id=job_id)

            logger.warning(f"Bridge attempt {attempt}/{max_retries} failed: {last_error}")
            if attempt < max_retries:
                self._sleep(self._rng.uniform(1.0, 3.0))

        return self._failure(last_error, amount=amount, job_id=job_id)

    def _execute(self, job_id: str, route: dict, chain, wallet, amount: float,
                 amount_units: int, fee_pct: float) -> BridgeResult:
        tx_request = route.get("transactionRequest")
        if not tx_request:
            raise BridgeError("Route has no transactionRequest", code=NO_ROUTE, retryable=True)

        self.job_store.upsert(job_id, JobStore.PENDING, "approve")
        w3 = self._web3_factory(self.evm.rpc_url(chain.name))
        account = wallet.evm_account

        spender = _route_value(route, "approvalAddress") or tx_request["to"]
        ensure_allowance(w3, account, chain.usdc, spender, amount_units)

        baseline = self._solana_usdc(wallet)

        tx = {
            "to": Web3.to_checksum_address(tx_request["to"]),
            "data": tx_request["data"],
            "value": _to_int(tx_request.get("value", 0)),
            "chainId": chain.chain_id,
        }
        if tx_request.get("gasLimit"):
            tx["gas"] = _to_int(tx_request["gasLimit"])

        self.job_store.upsert(job_id, JobStore.PENDING, "send")
        tx_hash = broadcast_transaction(w3, account, tx)
        # После broadcast повторная отправка запрещена: дальше только ожидание
        self.job_store.upsert(job_id, JobStore.SUBMITTED, "receipt", src_tx_hash=tx_hash)

        try:
            wait_for_receipt(w3, tx_hash)
        except EvmTransactionError as e:
            self.job_store.upsert(job_id, JobStore.FAILED, "receipt")
            return self._failure(BridgeError(str(e), code=TX_FAILED, deterministic=True),
                                 tx_hash=tx_hash, route=route.get("tool"), amount=amount, job_id=job_id)
        except Exception as e:
            logger.warning(f"Receipt for {tx_hash} not available ({e}), waiting for arrival")
        else:
            logger.info(f"Bridge TX confirmed on {chain.name}: {tx_hash}")
        self.job_store.upsert(job_id, JobStore.SUBMITTED, "arrival")

        min_units = _to_int(_route_value(route, "toAmountMin", 0) or 0)
        return self._await_arrival(job_id, tx_hash, route.get("tool"), chain.chain_id,
                                   wallet, amount, min_units, fee_pct, baseline)

    def _solana_usdc(self, wallet) -> Optional[int]:
        try:
            return self.wallet_manager.get_token_balance_raw(wallet, USDC_MINT)
        except Exception as e:
            logger.debug(f"Cannot read Solana USDC balance: {e}")
            return None

    def _await_arrival(self, job_id: str, tx_hash: str, tool: Optional[str], from_chain_id: int,
                       wallet, amount: float, min_units: int, fee_pct: float,
                       baseline: Optional[int] = None) -> BridgeResult:
        """
        Ждать доставку: статус LI.FI DONE или рост баланса USDC-SPL.

        Опрос с задержкой min(base * 2^i, cap) до arrival_timeout.
        """
        deadline = self._clock() + self.config.arrival_timeout
        attempt = 0

        while self._clock() < deadline:
            try:
                status = self.client.get_status(tx_hash, tool, from_chain_id, CHAIN_IDS["solana"])
            except LiFiError as e:
                logger.debug(f"Status poll failed: {e}")
                status = {}

            state = str(status.get("status", "")).upper()
            if state == "DONE":
                dst_hash = (status.get("receiving") or {}).get("txHash")
                self.job_store.upsert(job_id, JobStore.DONE, "done", dst_tx_hash=dst_hash)
                logger.info(f"Bridge delivered to Solana: {dst_hash}")
                return BridgeResult(success=True, tx_hash=tx_hash, dst_tx_hash=dst_hash, route=tool,
                                    amount=amount, fee_pct=fee_pct, arrived=True, job_id=job_id)
            if state == "FAILED":
                self.job_store.upsert(job_id, JobStore.FAILED, "arrival")
                return self._failure(
                    BridgeError(f"Bridge reported FAILED: {status.get('substatusMessage', '')}", code=NETWORK),
                    tx_hash=tx_hash, route=tool, amount=amount, job_id=job_id,
                )

            if baseline is not None and min_units > 0:
                current = self._solana_usdc(wallet)
                if current is not None and current - baseline >= min_units:
                    self.job_store.upsert(job_id, JobStore.DONE, "done")
                    logger.info(f"Bridge funds arrived on Solana (+{current - baseline} units)")
                    return BridgeResult(success=True, tx_hash=tx_hash, route=tool, amount=amount,
                                        fee_pct=fee_pct, arrived=True, job_id=job_id)

            self._sleep(backoff_delay(attempt, self.poll_base_delay, self.poll_max_delay))
            attempt += 1

        return self._failure(
            BridgeError(f"Funds not delivered within {self.config.arrival_timeout}s", code=BRIDGE_TIMEOUT),
            tx_hash=tx_hash, route=tool, amount=amount, fee_pct=fee_pct, job_id=job_id,
        )


def _to_int(value) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value or 0)
