"""
Orca Whirlpool list API client

GET https://api.mainnet.orca.so/v1/whirlpool/list: список всех пулов
с TVL, объёмом и ценой. Используется для поиска пула по паре mint'ов.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import requests

logger = logging.getLogger(__name__)

ORCA_API_URL = "https://api.mainnet.orca.so/v1"


# ── Exceptions ──

class OrcaError(Exception):
    """Базовая ошибка Orca API."""
    pass


class OrcaAPIError(OrcaError):
    """API вернул ошибку (non-200 или невалидный ответ)."""
    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(f"Orca API error {status_code}: {message}")


class OrcaTimeoutError(OrcaError):
    """Таймаут запроса к API."""
    pass


class OrcaNoPoolError(OrcaError):
    """Пул для пары не найден."""
    pass


# ── Data classes ──

@dataclass
class OrcaPoolInfo:
    address: str
    mint_a: str
    mint_b: str
    symbol_a: str
    symbol_b: str
    tick_spacing: int
    price: float
    tvl: float
    volume_day: float = 0.0

    @property
    def pair(self) -> str:
        return f"{self.symbol_a}/{self.symbol_b}"


def _parse_pool(item: dict) -> OrcaPoolInfo:
    token_a = item.get("tokenA") or {}
    token_b = item.get("tokenB") or {}
    volume = item.get("volume") or {}
    return OrcaPoolInfo(
        address=item["address"],
        mint_a=token_a.get("mint", ""),
        mint_b=token_b.get("mint", ""),
        symbol_a=token_a.get("symbol", "?"),
        symbol_b=token_b.get("symbol", "?"),
        tick_spacing=int(item.get("tickSpacing", 0)),
        price=float(item.get("price") or 0),
        tvl=float(item.get("tvl") or 0),
        volume_day=float(volume.get("day") or 0) if isinstance(volume, dict) else 0.0,
    )


class OrcaApiClient:
    """
    HTTP-клиент Orca pool list.

    Использование:
        client = OrcaApiClient()
        pool = client.best_pool(PENGU_MINT, WSOL_MINT)
        print(pool.address, pool.tvl)
    """

    def __init__(self, timeout: float = 15.0, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    def list_pools(self) -> List[OrcaPoolInfo]:
        """
        Raises:
            OrcaAPIError: Ошибка API
            OrcaTimeoutError: Таймаут
        """
        url = f"{ORCA_API_URL}/whirlpool/list"
        try:
            resp = self.session.get(url, timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise OrcaTimeoutError(f"Timeout listing pools ({self.timeout}s)")
        except requests.exceptions.RequestException as e:
            raise OrcaError(f"Request failed: {e}")

        if resp.status_code != 200:
            raise OrcaAPIError(resp.status_code, resp.text[:500])

        try:
            body = resp.json()
        except ValueError:
            raise OrcaAPIError(resp.status_code, "Invalid JSON response")

        pools = []
        for item in body.get("whirlpools", []):
            try:
                pools.append(_parse_pool(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed pool entry: {e}")
        logger.debug(f"Orca API returned {len(pools)} pools")
        return pools

    def find_pools(self, mint_a: str, mint_b: str) -> List[OrcaPoolInfo]:
        """Пулы пары (в любом порядке токенов), по убыванию TVL."""
        wanted = {mint_a, mint_b}
        matches = [p for p in self.list_pools() if {p.mint_a, p.mint_b} == wanted]
        matches.sort(key=lambda p: p.tvl, reverse=True)
        return matches

    def best_pool(self, mint_a: str, mint_b: str) -> OrcaPoolInfo:
        """
        Raises:
            OrcaNoPoolError: Для пары нет ни одного пула
        """
        pools = self.find_pools(mint_a, mint_b)
        if not pools:
            raise OrcaNoPoolError(f"No Whirlpool for {mint_a[:8]}.../{mint_b[:8]}...")
        best = pools[0]
        logger.info(f"Best pool {best.pair}: {best.address} (TVL ${best.tvl:,.0f})")
        return best
