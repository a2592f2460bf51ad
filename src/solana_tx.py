"""
Solana transaction submission

Подпись, отправка raw-транзакции и ожидание подтверждения с ограниченным
таймаутом. Используется свапом (versioned tx от Jupiter) и LP (legacy tx
из собственных инструкций).
"""

import base64
import logging
import time
from typing import Callable, List, Sequence

from solana.rpc.commitment import Commitment
from solana.rpc.types import TxOpts
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.signature import Signature
from solders.transaction import Transaction, VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from .errors import BotError, NETWORK, TX_FAILED

logger = logging.getLogger(__name__)

_Status = TransactionConfirmationStatus

# Статусы, удовлетворяющие уровню commitment
CONFIRMATION_LEVELS = {
    "processed": (_Status.Processed, _Status.Confirmed, _Status.Finalized),
    "confirmed": (_Status.Confirmed, _Status.Finalized),
    "finalized": (_Status.Finalized,),
}


class TransactionError(BotError):
    """Транзакция не отправлена или не подтверждена."""

    def __init__(self, message: str, signature: str = None, retryable: bool = False):
        super().__init__(
            message,
            code=NETWORK if retryable else TX_FAILED,
            retryable=retryable,
            deterministic=not retryable,
            details={"signature": signature} if signature else None,
        )
        self.signature = signature


class SolanaTxSender:
    """
    Отправка и подтверждение транзакций.

    Usage:
        sender = SolanaTxSender(rpc)
        sig = sender.send_instructions(ixs, payer, [payer, mint_keypair])
    """

    def __init__(
        self,
        rpc,
        commitment: str = "confirmed",
        confirm_timeout: float = 60.0,
        poll_interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if commitment not in CONFIRMATION_LEVELS:
            raise ValueError(f"Unknown commitment: {commitment}")
        self.rpc = rpc
        self.commitment = commitment
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    def latest_blockhash(self):
        try:
            return self.rpc.get_latest_blockhash().value.blockhash
        except Exception as e:
            raise TransactionError(f"Cannot fetch blockhash: {e}", retryable=True) from e

    def send_raw(self, raw: bytes) -> str:
        try:
            resp = self.rpc.send_raw_transaction(raw, opts=TxOpts(preflight_commitment=Commitment(self.commitment)))
        except Exception as e:
            lowered = str(e).lower()
            retryable = any(k in lowered for k in ("timeout", "blockhash", "connection", "429", "503"))
            raise TransactionError(f"Send failed: {e}", retryable=retryable) from e
        return str(resp.value)

    def confirm(self, signature: str):
        """
        Дождаться статуса не ниже self.commitment.

        Raises:
            TransactionError: ошибка исполнения (не retryable) или таймаут (retryable)
        """
        sig = Signature.from_string(signature)
        deadline = self._clock() + self.confirm_timeout

        while self._clock() < deadline:
            try:
                status = self.rpc.get_signature_statuses([sig]).value[0]
            except Exception as e:
                logger.debug(f"Status poll failed for {signature[:12]}...: {e}")
                status = None

            if status is not None:
                if status.err is not None:
                    raise TransactionError(f"Transaction {signature} failed: {status.err}", signature=signature)
                if status.confirmation_status in CONFIRMATION_LEVELS[self.commitment]:
                    logger.info(f"Confirmed: {signature}")
                    return
            self._sleep(self.poll_interval)

        raise TransactionError(
            f"Transaction {signature} not confirmed within {self.confirm_timeout}s",
            signature=signature, retryable=True,
        )

    def send_instructions(self, instructions: List[Instruction], payer: Keypair, signers: Sequence[Keypair]) -> str:
        """Собрать legacy транзакцию со свежим blockhash, отправить и подтвердить."""
        blockhash = self.latest_blockhash()
        tx = Transaction.new_signed_with_payer(instructions, payer.pubkey(), list(signers), blockhash)
        signature = self.send_raw(bytes(tx))
        logger.info(f"TX sent: {signature}")
        self.confirm(signature)
        return signature

    def send_versioned_base64(self, tx_base64: str, signer: Keypair) -> str:
        """Подписать сериализованную versioned транзакцию (Jupiter) и отправить."""
        unsigned = VersionedTransaction.from_bytes(base64.b64decode(tx_base64))
        signed = VersionedTransaction(unsigned.message, [signer])
        signature = self.send_raw(bytes(signed))
        logger.info(f"TX sent: {signature}")
        self.confirm(signature)
        return signature
