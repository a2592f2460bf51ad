"""
PENGU Liquidity Pipeline Bot

CEX -> LI.FI bridge -> Jupiter swap -> Orca Whirlpools LP
для набора кошельков, выведенных из одной мнемоники.

Команды:
    run              полный проход пайплайна (--wallet N | --all, --dry-run)
    monitor          цикл мониторинга балансов
    wallets          адреса выведенных кошельков
    pools            поиск пулов Orca для пары
    encrypt-mnemonic зашифровать мнемонику для WALLET_MNEMONIC
"""

import argparse
import getpass
import json
import logging
import sys

from dotenv import load_dotenv
from solana.rpc.api import Client
from solana.rpc.commitment import Commitment

from config import BotConfig, get_token_mint
from src.crypto import encrypt_secret
from src.errors import BotError, ConfigurationError
from src.exchanges import create_exchange_manager
from src.jupiter import SwapManager
from src.lifi import BridgeManager
from src.monitor import Monitor
from src.orca import OrcaApiClient, PositionBuilder
from src.orca.discovery import OrcaError
from src.pipeline import DEFAULT_BRIDGE_AMOUNT_USDC, LiteBot
from src.solana_tx import SolanaTxSender
from src.utils import setup_logging
from src.wallets import WalletManager

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pengu-bot", description="PENGU liquidity pipeline bot")
    parser.add_argument("-v", "--verbose", action="store_true", help="DEBUG logging")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the pipeline")
    target = run.add_mutually_exclusive_group()
    target.add_argument("--wallet", type=int, default=0, help="Wallet index (default 0)")
    target.add_argument("--all", action="store_true", help="All derived wallets")
    run.add_argument("--dry-run", action="store_true", help="Simulate, send nothing")
    run.add_argument("--amount", type=float, default=DEFAULT_BRIDGE_AMOUNT_USDC, help="Bridge amount, USDC")

    monitor = sub.add_parser("monitor", help="Balance monitor loop")
    monitor.add_argument("--interval", type=float, default=None, help="Seconds between cycles")
    monitor.add_argument("--iterations", type=int, default=None, help="Stop after N cycles")
    monitor.add_argument("--dry-run", action="store_true")

    wallets = sub.add_parser("wallets", help="Print derived addresses")
    wallets.add_argument("--count", type=int, default=None)

    pools = sub.add_parser("pools", help="Find Orca pools for a pair")
    pools.add_argument("--token-a", default="PENGU")
    pools.add_argument("--token-b", default="WSOL")

    sub.add_parser("encrypt-mnemonic", help="Encrypt a mnemonic for WALLET_MNEMONIC")
    return parser


def build_components(config: BotConfig):
    rpc = Client(config.solana.rpc_url, commitment=Commitment(config.solana.commitment))
    sender = SolanaTxSender(rpc, commitment=config.solana.commitment)
    wallets = WalletManager.from_mnemonic(config.mnemonic, config.wallet_count, rpc=rpc)
    exchanges = create_exchange_manager(config.exchange)
    bridge = BridgeManager(config.bridge, config.evm, wallets, dry_run=config.dry_run)
    swaps = SwapManager(config.swap, sender=sender, dry_run=config.dry_run)
    positions = PositionBuilder(rpc, config.liquidity, sender=sender, dry_run=config.dry_run)
    return wallets, exchanges, bridge, swaps, positions


def cmd_run(config: BotConfig, args) -> int:
    wallets, exchanges, bridge, swaps, positions = build_components(config)
    bot = LiteBot(config, wallets, exchanges, bridge, swaps, positions, bridge_amount=args.amount)

    if args.all:
        results = bot.run_all()
    else:
        results = [bot.run_wallet(args.wallet)]

    summary = {
        "mode": "DRY_RUN" if config.dry_run else "LIVE",
        "success": all(r.success for r in results),
        "wallets": [r.to_dict() for r in results],
    }
    print(json.dumps(summary, indent=2, default=str))
    return 0 if summary["success"] else 1


def cmd_monitor(config: BotConfig, args) -> int:
    wallets, exchanges, bridge, swaps, _ = build_components(config)
    monitor = Monitor(config.monitor, wallets, swap_manager=swaps, exchange_manager=exchanges,
                      bridge_manager=bridge, dry_run=config.dry_run)
    monitor.run(max_iterations=args.iterations, interval=args.interval)
    print(json.dumps(monitor.get_metrics(), indent=2))
    return 0


def cmd_wallets(config: BotConfig, args) -> int:
    count = args.count or config.wallet_count
    wallets = WalletManager.from_mnemonic(config.mnemonic, count)
    for wallet in wallets:
        print(f"{wallet.index:>4}  {wallet.solana_address}  {wallet.evm_address}")
    return 0


def cmd_pools(config: BotConfig, args) -> int:
    mint_a = get_token_mint(args.token_a)
    mint_b = get_token_mint(args.token_b)
    configured = config.liquidity.pool_for_pair(args.token_a, args.token_b)
    if configured:
        print(f"{configured}  configured for {args.token_a.upper()}/{args.token_b.upper()}")
    try:
        found = OrcaApiClient().find_pools(mint_a, mint_b)
    except OrcaError as e:
        print(f"Orca API error: {e}")
        return 1
    if not found:
        print(f"No Orca pools for {args.token_a}/{args.token_b}")
        return 1
    for pool in found:
        print(f"{pool.address}  {pool.pair:<14} spacing={pool.tick_spacing:<4} tvl=${pool.tvl:,.0f}")
    return 0


def cmd_encrypt_mnemonic(config, args) -> int:
    mnemonic = getpass.getpass("Mnemonic: ").strip()
    password = getpass.getpass("Password: ")
    if password != getpass.getpass("Repeat password: "):
        print("Passwords do not match")
        return 1
    print(encrypt_secret(mnemonic, password))
    print("Set WALLET_MNEMONIC to the value above and WALLET_MNEMONIC_ENCRYPTED=true")
    return 0


COMMANDS = {
    "run": cmd_run,
    "monitor": cmd_monitor,
    "wallets": cmd_wallets,
    "pools": cmd_pools,
    "encrypt-mnemonic": cmd_encrypt_mnemonic,
}


def main(argv=None) -> int:
    """Главная функция. Возвращает код выхода."""
    args = build_parser().parse_args(argv)
    load_dotenv()

    needs_mnemonic = args.command in ("run", "monitor", "wallets")
    try:
        config = BotConfig.from_env(require_mnemonic=needs_mnemonic)
    except ConfigurationError as e:
        setup_logging("INFO")
        logger.error(f"Configuration error: {e}")
        return 1

    if getattr(args, "dry_run", False):
        config.dry_run = True
    setup_logging("DEBUG" if args.verbose else config.log_level)

    try:
        return COMMANDS[args.command](config, args)
    except BotError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
