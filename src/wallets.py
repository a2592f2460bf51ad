"""
Wallet derivation

Из одной мнемоники детерминированно выводятся N кошельков:
- Solana:  m/44'/501'/{i}'/0'   (ed25519, solders)
- EVM:     m/44'/60'/{i}'/0/0   (secp256k1, eth-account)

Кошельки выводятся один раз при старте и не меняются.
"""

import logging
import struct
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

from eth_account import Account
from eth_account.hdaccount import seed_from_mnemonic
from eth_account.signers.local import LocalAccount
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from config import LAMPORTS_PER_SOL, SOLANA_TOKENS
from .errors import INVALID_MNEMONIC, RPC_UNAVAILABLE, WALLET_NOT_FOUND, WalletError
from .evm import erc20_balance
from .orca.pda import get_associated_token_address
from .orca.tick_arrays import AccountLookup, fetch_account

logger = logging.getLogger(__name__)

Account.enable_unaudited_hdwallet_features()

SOLANA_PATH = "m/44'/501'/{index}'/0'"
EVM_PATH = "m/44'/60'/{index}'/0/0"

# SPL token account: mint(32) + owner(32) + amount(u64)
TOKEN_AMOUNT_OFFSET = 64


@dataclass(frozen=True)
class Wallet:
    index: int
    solana_keypair: Keypair
    evm_account: LocalAccount

    @property
    def solana_address(self) -> str:
        return str(self.solana_keypair.pubkey())

    @property
    def evm_address(self) -> str:
        return self.evm_account.address

    def to_dict(self) -> dict:
        """Только публичные адреса."""
        return {"index": self.index, "solana": self.solana_address, "evm": self.evm_address}


def derive_wallet(mnemonic: str, index: int, seed: Optional[bytes] = None) -> Wallet:
    if seed is None:
        seed = seed_from_mnemonic(mnemonic, "")
    solana_keypair = Keypair.from_seed_and_derivation_path(seed, SOLANA_PATH.format(index=index))
    evm_account = Account.from_mnemonic(mnemonic, account_path=EVM_PATH.format(index=index))
    return Wallet(index=index, solana_keypair=solana_keypair, evm_account=evm_account)


class WalletManager:
    """
    Набор кошельков + чтение балансов в Solana.

    Usage:
        manager = WalletManager.from_mnemonic(config.mnemonic, count=100, rpc=Client(url))
        wallet = manager.get_wallet(0)
        sol = manager.get_sol_balance(wallet)
    """

    def __init__(self, wallets: List[Wallet], rpc=None):
        self._wallets: Dict[int, Wallet] = {w.index: w for w in wallets}
        self.rpc = rpc

    @classmethod
    def from_mnemonic(cls, mnemonic: str, count: int = 100, rpc=None) -> 'WalletManager':
        """
        Raises:
            WalletError(INVALID_MNEMONIC): мнемоника не проходит проверку BIP-39
        """
        if count < 1:
            raise WalletError(f"Wallet count must be positive, got {count}", code=INVALID_MNEMONIC)

        words = " ".join(mnemonic.split())
        try:
            seed = seed_from_mnemonic(words, "")
            wallets = [derive_wallet(words, i, seed) for i in range(count)]
        except Exception as e:
            # Текст исключения может содержать слова мнемоники
            raise WalletError(
                f"Invalid mnemonic ({type(e).__name__})", code=INVALID_MNEMONIC, deterministic=True
            ) from None

        logger.info(f"Derived {len(wallets)} wallets")
        return cls(wallets, rpc=rpc)

    def __len__(self):
        return len(self._wallets)

    def __iter__(self) -> Iterator[Wallet]:
        return iter(self._wallets[i] for i in sorted(self._wallets))

    @property
    def indices(self) -> List[int]:
        return sorted(self._wallets)

    def get_wallet(self, index: int) -> Wallet:
        wallet = self._wallets.get(index)
        if wallet is None:
            raise WalletError(f"Wallet {index} not found", code=WALLET_NOT_FOUND, deterministic=True)
        return wallet

    def _require_rpc(self):
        if self.rpc is None:
            raise WalletError("Solana RPC client is not configured", code=RPC_UNAVAILABLE)
        return self.rpc

    def get_sol_balance(self, wallet: Wallet) -> float:
        rpc = self._require_rpc()
        try:
            lamports = rpc.get_balance(wallet.solana_keypair.pubkey()).value
        except Exception as e:
            raise WalletError(f"getBalance failed: {e}", code=RPC_UNAVAILABLE, retryable=True) from e
        return lamports / LAMPORTS_PER_SOL

    def get_token_balance_raw(self, wallet: Wallet, mint: str) -> int:
        """Баланс ATA в минимальных единицах; ATA ещё не создан -> 0."""
        rpc = self._require_rpc()
        ata = get_associated_token_address(wallet.solana_keypair.pubkey(), Pubkey.from_string(mint))
        lookup = fetch_account(rpc, ata)
        if lookup.status == AccountLookup.NOT_FOUND:
            return 0
        if lookup.status == AccountLookup.ERROR:
            raise WalletError(f"Cannot read token account {ata}: {lookup.error}",
                              code=RPC_UNAVAILABLE, retryable=True)
        if len(lookup.data) < TOKEN_AMOUNT_OFFSET + 8:
            return 0
        (amount,) = struct.unpack_from("<Q", lookup.data, TOKEN_AMOUNT_OFFSET)
        return amount

    def get_token_balance(self, wallet: Wallet, symbol: str) -> float:
        token = SOLANA_TOKENS[symbol.upper()]
        raw = self.get_token_balance_raw(wallet, token.mint)
        return raw / 10 ** token.decimals

    def get_evm_token_balance(self, wallet: Wallet, w3, token_address: str, decimals: int = 6) -> float:
        """ERC20 баланс EVM адреса кошелька (USDC по умолчанию, 6 decimals)."""
        return erc20_balance(w3, token_address, wallet.evm_address) / 10 ** decimals
