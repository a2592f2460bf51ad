"""
Tick array existence checks

Перед открытием позиции оба tick array диапазона должны существовать.
Инициализируются только аккаунты, для которых RPC явно ответил
"аккаунт не найден". Ошибка чтения (таймаут, 5xx) это не "не найден":
она повторяется, а при исчерпании попыток пробрасывается.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from ..errors import LiquidityError, RPC_UNAVAILABLE
from ..utils import retry_with_backoff
from .instructions import initialize_tick_array_ix
from .pda import TickArrayPair

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountLookup:
    """
    Результат чтения аккаунта: FOUND (data заполнено), NOT_FOUND или ERROR.
    """
    FOUND = "FOUND"
    NOT_FOUND = "NOT_FOUND"
    ERROR = "ERROR"

    status: str
    data: Optional[bytes] = None
    error: Optional[str] = None

    @property
    def exists(self) -> bool:
        return self.status == self.FOUND


def fetch_account(rpc, address: Pubkey) -> AccountLookup:
    """
    Прочитать аккаунт, различая "не существует" и ошибку транспорта.

    getAccountInfo возвращает value=None только для отсутствующего аккаунта.
    Любое исключение клиента даёт ERROR.
    """
    try:
        resp = rpc.get_account_info(address)
    except Exception as e:
        logger.warning(f"getAccountInfo {str(address)[:10]}... failed: {e}")
        return AccountLookup(status=AccountLookup.ERROR, error=str(e))

    if resp.value is None:
        return AccountLookup(status=AccountLookup.NOT_FOUND)
    return AccountLookup(status=AccountLookup.FOUND, data=bytes(resp.value.data))


class TickArrayEnsurer:
    """
    Проверка и подготовка инициализации tick arrays.

    Usage:
        ensurer = TickArrayEnsurer(rpc, program_id)
        instructions = ensurer.ensure_pair(pool.address, pair, funder)
        # instructions добавляются в транзакцию перед open_position
    """

    def __init__(
        self,
        rpc,
        program_id: Pubkey,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.rpc = rpc
        self.program_id = program_id
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep

    def lookup(self, address: Pubkey) -> AccountLookup:
        """
        Чтение с повторами ERROR.

        Raises:
            LiquidityError(RPC_UNAVAILABLE): RPC не ответил за max_attempts попыток
        """
        def _read() -> AccountLookup:
            result = fetch_account(self.rpc, address)
            if result.status == AccountLookup.ERROR:
                raise LiquidityError(
                    f"Cannot read tick array {address}: {result.error}",
                    code=RPC_UNAVAILABLE, retryable=True,
                )
            return result

        return retry_with_backoff(
            _read,
            tries=self.max_attempts,
            base_delay=self.base_delay,
            jitter=0.0,
            sleep=self._sleep,
            label=f"tick array {str(address)[:10]}",
        )

    def ensure(self, whirlpool: Pubkey, address: Pubkey, start_tick: int, funder: Pubkey) -> Optional[Instruction]:
        """
        None если tick array уже существует, иначе инструкция initialize_tick_array.

        Идемпотентно: повторный вызов для существующего аккаунта ничего не делает.
        """
        lookup = self.lookup(address)
        if lookup.exists:
            logger.debug(f"Tick array {start_tick} exists")
            return None

        logger.info(f"Tick array {start_tick} missing, adding initialize instruction")
        return initialize_tick_array_ix(
            program_id=self.program_id,
            whirlpool=whirlpool,
            tick_array=address,
            funder=funder,
            start_tick_index=start_tick,
        )

    def ensure_pair(self, whirlpool: Pubkey, pair: TickArrayPair, funder: Pubkey) -> List[Instruction]:
        """Инструкции для обоих tick arrays. Общий массив инициализируется один раз."""
        instructions = []
        for start_tick, address in pair.unique():
            ix = self.ensure(whirlpool, address, start_tick, funder)
            if ix is not None:
                instructions.append(ix)
        return instructions
