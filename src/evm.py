"""
EVM helpers for the bridge source chain.

ERC20 balance/allowance/approve и отправка подписанной транзакции
(sign -> send_raw_transaction, затем отдельно wait_for_transaction_receipt).
"""

import logging
from typing import Tuple

from eth_account.signers.local import LocalAccount
from web3 import Web3

logger = logging.getLogger(__name__)

MAX_UINT256 = 2 ** 256 - 1
RECEIPT_TIMEOUT = 120

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function"
    },
    {
        "constant": True,
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"}
        ],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function"
    },
    {
        "constant": False,
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"}
        ],
        "name": "approve",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function"
    },
]


class EvmTransactionError(Exception):
    """Транзакция отклонена сетью (receipt.status != 1)."""

    def __init__(self, tx_hash: str, message: str = "Transaction reverted"):
        self.tx_hash = tx_hash
        super().__init__(f"{message}: {tx_hash}")


def get_web3(rpc_url: str, timeout: float = 30.0) -> Web3:
    return Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))


def erc20_balance(w3: Web3, token_address: str, owner: str) -> int:
    contract = w3.eth.contract(address=Web3.to_checksum_address(token_address), abi=ERC20_ABI)
    return contract.functions.balanceOf(Web3.to_checksum_address(owner)).call()


def broadcast_transaction(w3: Web3, account: LocalAccount, tx: dict) -> str:
    """
    Подписать и отправить транзакцию, не дожидаясь receipt.

    Недостающие nonce / gasPrice / chainId / gas заполняются из сети.

    Returns:
        tx_hash hex
    """
    tx = dict(tx)
    tx.setdefault("from", account.address)
    tx.setdefault("nonce", w3.eth.get_transaction_count(account.address, "pending"))
    tx.setdefault("chainId", w3.eth.chain_id)
    if "maxFeePerGas" not in tx:
        tx.setdefault("gasPrice", w3.eth.gas_price)
    if "gas" not in tx:
        tx["gas"] = int(w3.eth.estimate_gas(tx) * 1.2)

    signed_tx = w3.eth.account.sign_transaction(tx, account.key)
    tx_hash = w3.eth.send_raw_transaction(signed_tx.raw_transaction)
    tx_hash_hex = tx_hash.hex()
    logger.info(f"TX sent: {tx_hash_hex}")
    return tx_hash_hex


def wait_for_receipt(w3: Web3, tx_hash: str, timeout: float = RECEIPT_TIMEOUT):
    """
    Raises:
        EvmTransactionError: receipt.status != 1
    """
    receipt = w3.eth.wait_for_transaction_receipt(Web3.to_bytes(hexstr=tx_hash), timeout=timeout)
    if receipt.status != 1:
        raise EvmTransactionError(tx_hash)
    return receipt


def send_transaction(w3: Web3, account: LocalAccount, tx: dict) -> Tuple[str, object]:
    """
    Подписать, отправить и дождаться receipt.

    Returns:
        (tx_hash hex, receipt)

    Raises:
        EvmTransactionError: receipt.status != 1
    """
    tx_hash = broadcast_transaction(w3, account, tx)
    return tx_hash, wait_for_receipt(w3, tx_hash)


def ensure_allowance(w3: Web3, account: LocalAccount, token_address: str, spender: str, amount: int) -> bool:
    """
    Approve spender на MAX_UINT256, если текущий allowance меньше amount.

    Returns:
        True если approve был отправлен
    """
    token = w3.eth.contract(address=Web3.to_checksum_address(token_address), abi=ERC20_ABI)
    spender = Web3.to_checksum_address(spender)

    current = token.functions.allowance(account.address, spender).call()
    if current >= amount:
        logger.debug(f"Token already approved: {current} >= {amount}")
        return False

    logger.info(f"Approving {token_address[:10]}... for {spender[:10]}...")
    tx = token.functions.approve(spender, MAX_UINT256).build_transaction({
        "from": account.address,
        "nonce": w3.eth.get_transaction_count(account.address, "pending"),
        "gas": 100000,
        "gasPrice": w3.eth.gas_price,
    })
    send_transaction(w3, account, tx)
    logger.info("Token approved successfully")
    return True
