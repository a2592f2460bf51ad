"""
Utility classes for retries, rate limiting and bookkeeping.

Includes:
- setup_logging: Console logging for CLI entry points
- retry_with_backoff: Bounded retry with exponential backoff + jitter
- CircuitBreaker: CLOSED / OPEN / HALF_OPEN guard for flaky upstreams
- IdempotencyStore: In-memory TTL map of already-performed operations
- RateLimitWindow: Sliding request-weight window (Binance SAPI)
- JobStore: sqlite job-status table for bridge idempotency
"""

import logging
import random
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .errors import BotError, is_retryable_error

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(level: str = "INFO") -> logging.Logger:
    """
    Настроить консольный вывод логов для корневого логгера.

    Повторный вызов только меняет уровень (handler не дублируется).
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    if not any(getattr(h, "_pipeline_handler", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
        handler._pipeline_handler = True
        root.addHandler(handler)

    return root


def backoff_delay(attempt: int, base_delay: float, max_delay: float, jitter: float = 0.0) -> float:
    """
    Задержка перед попыткой attempt (0-based): min(base * 2^attempt, max) + jitter.
    """
    delay = min(base_delay * (2 ** attempt), max_delay)
    if jitter > 0:
        delay += random.uniform(0, jitter)
    return delay


def retry_with_backoff(
    fn: Callable[[], Any],
    tries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    jitter: float = 0.25,
    should_retry: Callable[[Exception], bool] = is_retryable_error,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "call",
) -> Any:
    """
    Выполнить fn с повторами.

    Повторяются только ошибки, для которых should_retry(e) == True.
    Последняя ошибка пробрасывается вызывающему.

    Args:
        fn: Вызов без аргументов
        tries: Максимум попыток (>= 1)
        base_delay: Начальная задержка, секунды
        max_delay: Потолок задержки
        jitter: Случайная добавка 0..jitter секунд
        should_retry: Классификатор ошибок
        sleep: Функция ожидания (подменяется в тестах)
        label: Имя операции для логов
    """
    if tries < 1:
        raise ValueError("tries must be >= 1")

    for attempt in range(tries):
        try:
            return fn()
        except Exception as e:
            if attempt == tries - 1 or not should_retry(e):
                raise
            delay = backoff_delay(attempt, base_delay, max_delay, jitter)
            logger.warning(f"{label} failed (attempt {attempt + 1}/{tries}): {e}; retry in {delay:.2f}s")
            sleep(delay)


class CircuitOpenError(BotError):
    """Вызов отклонён: circuit breaker открыт."""

    def __init__(self, name: str, retry_in: float):
        super().__init__(
            f"Circuit '{name}' is open, retry in {retry_in:.1f}s",
            code="CIRCUIT_OPEN",
            retryable=True,
        )


class CircuitBreaker:
    """
    Circuit breaker для нестабильных внешних API.

    CLOSED: вызовы проходят, ошибки считаются.
    OPEN: после failure_threshold ошибок подряд вызовы отклоняются open_seconds.
    HALF_OPEN: пропускается не более half_open_max_calls пробных вызовов;
               успех закрывает, ошибка снова открывает.

    Usage:
        breaker = CircuitBreaker("jupiter", failure_threshold=5, open_seconds=30)
        quote = breaker.call(lambda: client.get_quote(...))
    """

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        open_seconds: float = 30.0,
        half_open_max_calls: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.open_seconds = open_seconds
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock
        self._lock = threading.Lock()
        self._state = self.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._half_open_calls = 0

    @property
    def state(self) -> str:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def _maybe_half_open(self):
        if self._state == self.OPEN and self._clock() - self._opened_at >= self.open_seconds:
            self._state = self.HALF_OPEN
            self._half_open_calls = 0
            logger.info(f"Circuit '{self.name}' half-open")

    def _before_call(self):
        with self._lock:
            self._maybe_half_open()
            if self._state == self.OPEN:
                raise CircuitOpenError(self.name, self.open_seconds - (self._clock() - self._opened_at))
            if self._state == self.HALF_OPEN:
                if self._half_open_calls >= self.half_open_max_calls:
                    raise CircuitOpenError(self.name, 0.0)
                self._half_open_calls += 1

    def record_success(self):
        with self._lock:
            if self._state != self.CLOSED:
                logger.info(f"Circuit '{self.name}' closed")
            self._state = self.CLOSED
            self._failures = 0
            self._half_open_calls = 0

    def record_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == self.HALF_OPEN or self._failures >= self.failure_threshold:
                if self._state != self.OPEN:
                    logger.warning(f"Circuit '{self.name}' opened after {self._failures} failures")
                self._state = self.OPEN
                self._opened_at = self._clock()

    def call(self, fn: Callable[[], Any], counts_as_failure: Optional[Callable[[Exception], bool]] = None) -> Any:
        """
        Вызвать fn через breaker.

        counts_as_failure: какие ошибки считать сбоем upstream (по умолчанию все).
        Остальные ошибки пробрасываются, но breaker их считает ответом.
        """
        self._before_call()
        try:
            result = fn()
        except Exception as e:
            if counts_as_failure is None or counts_as_failure(e):
                self.record_failure()
            else:
                self.record_success()
            raise
        self.record_success()
        return result


class IdempotencyStore:
    """
    In-memory хранилище выполненных операций с TTL.

    Ключ описывает операцию (например withdraw_USDC_12.5_0xabc_ARBITRUM),
    значение: её результат. Повторный запуск той же операции в пределах TTL
    возвращает сохранённый результат вместо нового вызова.
    """

    def __init__(self, ttl: float = 3600.0, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self._clock = clock
        self._items: Dict[str, tuple] = {}
        self._lock = threading.Lock()

    @staticmethod
    def withdrawal_key(currency: str, address: str, network: str) -> str:
        return f"withdraw_{currency}_{address}_{network}"

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            value, expires_at = item
            if self._clock() >= expires_at:
                del self._items[key]
                return None
            return value

    def put(self, key: str, value: Any):
        with self._lock:
            self._items[key] = (value, self._clock() + self.ttl)

    def cleanup(self) -> int:
        """Удалить просроченные записи. Возвращает их количество."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, exp) in self._items.items() if now >= exp]
            for k in expired:
                del self._items[k]
        return len(expired)

    def __len__(self):
        with self._lock:
            return len(self._items)


class RateLimitWindow:
    """
    Скользящее окно веса запросов.

    Binance SAPI: не более 900 единиц веса за 60 секунд (с запасом от лимита).
    acquire() блокирует до освобождения места в окне.
    """

    def __init__(
        self,
        limit: int = 900,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.limit = limit
        self.window = window
        self._clock = clock
        self._sleep = sleep
        self._events: List[tuple] = []
        self._lock = threading.Lock()

    def _purge(self, now: float):
        self._events = [(t, w) for t, w in self._events if now - t < self.window]

    def used(self) -> int:
        with self._lock:
            self._purge(self._clock())
            return sum(w for _, w in self._events)

    def acquire(self, weight: int = 1) -> float:
        """
        Занять weight единиц окна.

        Returns:
            Сколько секунд пришлось ждать
        """
        if weight > self.limit:
            raise ValueError(f"weight {weight} exceeds window limit {self.limit}")

        waited = 0.0
        while True:
            with self._lock:
                now = self._clock()
                self._purge(now)
                used = sum(w for _, w in self._events)
                if used + weight <= self.limit:
                    self._events.append((now, weight))
                    return waited
                wait = self.window - (now - self._events[0][0])
            logger.debug(f"Rate limit window full ({used}/{self.limit}), waiting {wait:.2f}s")
            self._sleep(max(wait, 0.01))
            waited += max(wait, 0.01)


@dataclass
class JobRecord:
    """Строка таблицы bridge_jobs."""
    id: str
    status: str
    step: str
    src_tx_hash: Optional[str] = None
    dst_tx_hash: Optional[str] = None
    updated_at: float = 0.0


class JobStore:
    """
    Таблица статусов bridge-задач (sqlite).

    Не даёт повторно отправить bridge после частичного сбоя: если у задачи уже
    есть src_tx_hash, повторный запуск только дожидается прихода средств.
    """

    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    DONE = "DONE"
    FAILED = "FAILED"

    def __init__(self, path: str = ":memory:"):
        self.path = path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        with self._conn:
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS bridge_jobs ("
                " id TEXT PRIMARY KEY,"
                " status TEXT NOT NULL,"
                " step TEXT NOT NULL,"
                " src_tx_hash TEXT,"
                " dst_tx_hash TEXT,"
                " updated_at REAL NOT NULL)"
            )

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT id, status, step, src_tx_hash, dst_tx_hash, updated_at FROM bridge_jobs WHERE id = ?",
                (job_id,),
            ).fetchone()
        return JobRecord(*row) if row else None

    def upsert(self, job_id: str, status: str, step: str,
               src_tx_hash: Optional[str] = None, dst_tx_hash: Optional[str] = None) -> JobRecord:
        """Создать или обновить задачу. None не затирает уже записанные хэши."""
        now = time.time()
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO bridge_jobs (id, status, step, src_tx_hash, dst_tx_hash, updated_at)"
                " VALUES (?, ?, ?, ?, ?, ?)"
                " ON CONFLICT(id) DO UPDATE SET"
                "  status = excluded.status,"
                "  step = excluded.step,"
                "  src_tx_hash = COALESCE(excluded.src_tx_hash, bridge_jobs.src_tx_hash),"
                "  dst_tx_hash = COALESCE(excluded.dst_tx_hash, bridge_jobs.dst_tx_hash),"
                "  updated_at = excluded.updated_at",
                (job_id, status, step, src_tx_hash, dst_tx_hash, now),
            )
        return self.get(job_id)

    def list_by_status(self, status: str) -> List[JobRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, status, step, src_tx_hash, dst_tx_hash, updated_at FROM bridge_jobs"
                " WHERE status = ? ORDER BY updated_at",
                (status,),
            ).fetchall()
        return [JobRecord(*r) for r in rows]

    def close(self):
        self._conn.close()
