"""
Whirlpool instruction builders

Кодирование Anchor: 8 байт discriminator = sha256("global:<name>")[:8],
далее аргументы в little-endian (borsh).
"""

import hashlib
import struct
from typing import List

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import CreateAccountParams, create_account
from solders.sysvar import RENT
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import (
    InitializeMintParams,
    create_associated_token_account,
    initialize_mint,
)

MINT_ACCOUNT_SIZE = 82
U64_MAX = 2 ** 64 - 1
U128_MAX = 2 ** 128 - 1


def anchor_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


OPEN_POSITION_DISCRIMINATOR = anchor_discriminator("open_position")
INCREASE_LIQUIDITY_DISCRIMINATOR = anchor_discriminator("increase_liquidity")
INITIALIZE_TICK_ARRAY_DISCRIMINATOR = anchor_discriminator("initialize_tick_array")


def _u128(value: int) -> bytes:
    if not 0 <= value <= U128_MAX:
        raise ValueError(f"u128 out of range: {value}")
    return value.to_bytes(16, "little")


def _u64(value: int) -> bytes:
    if not 0 <= value <= U64_MAX:
        raise ValueError(f"u64 out of range: {value}")
    return struct.pack("<Q", value)


def open_position_ix(
    program_id: Pubkey,
    funder: Pubkey,
    owner: Pubkey,
    position: Pubkey,
    position_bump: int,
    position_mint: Pubkey,
    position_token_account: Pubkey,
    whirlpool: Pubkey,
    tick_lower: int,
    tick_upper: int,
) -> Instruction:
    data = OPEN_POSITION_DISCRIMINATOR + struct.pack("<Bii", position_bump, tick_lower, tick_upper)
    accounts = [
        AccountMeta(funder, is_signer=True, is_writable=True),
        AccountMeta(owner, is_signer=False, is_writable=False),
        AccountMeta(position, is_signer=False, is_writable=True),
        AccountMeta(position_mint, is_signer=True, is_writable=True),
        AccountMeta(position_token_account, is_signer=False, is_writable=True),
        AccountMeta(whirlpool, is_signer=False, is_writable=False),
        AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(RENT, is_signer=False, is_writable=False),
        AccountMeta(ASSOCIATED_TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id, data, accounts)


def increase_liquidity_ix(
    program_id: Pubkey,
    whirlpool: Pubkey,
    position_authority: Pubkey,
    position: Pubkey,
    position_token_account: Pubkey,
    token_owner_account_a: Pubkey,
    token_owner_account_b: Pubkey,
    token_vault_a: Pubkey,
    token_vault_b: Pubkey,
    tick_array_lower: Pubkey,
    tick_array_upper: Pubkey,
    liquidity_amount: int,
    token_max_a: int,
    token_max_b: int,
) -> Instruction:
    """
    increase_liquidity. Аккаунт position здесь PDA позиции, а не mint.
    """
    data = (
        INCREASE_LIQUIDITY_DISCRIMINATOR
        + _u128(liquidity_amount)
        + _u64(token_max_a)
        + _u64(token_max_b)
    )
    accounts = [
        AccountMeta(whirlpool, is_signer=False, is_writable=True),
        AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(position_authority, is_signer=True, is_writable=False),
        AccountMeta(position, is_signer=False, is_writable=True),
        AccountMeta(position_token_account, is_signer=False, is_writable=False),
        AccountMeta(token_owner_account_a, is_signer=False, is_writable=True),
        AccountMeta(token_owner_account_b, is_signer=False, is_writable=True),
        AccountMeta(token_vault_a, is_signer=False, is_writable=True),
        AccountMeta(token_vault_b, is_signer=False, is_writable=True),
        AccountMeta(tick_array_lower, is_signer=False, is_writable=True),
        AccountMeta(tick_array_upper, is_signer=False, is_writable=True),
    ]
    return Instruction(program_id, data, accounts)


def initialize_tick_array_ix(
    program_id: Pubkey,
    whirlpool: Pubkey,
    tick_array: Pubkey,
    funder: Pubkey,
    start_tick_index: int,
) -> Instruction:
    data = INITIALIZE_TICK_ARRAY_DISCRIMINATOR + struct.pack("<i", start_tick_index)
    accounts = [
        AccountMeta(whirlpool, is_signer=False, is_writable=False),
        AccountMeta(funder, is_signer=True, is_writable=True),
        AccountMeta(tick_array, is_signer=False, is_writable=True),
        AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id, data, accounts)


def compute_budget_ixs(units: int, micro_lamports: int) -> List[Instruction]:
    return [set_compute_unit_limit(units), set_compute_unit_price(micro_lamports)]


def create_position_mint_ixs(
    payer: Pubkey,
    owner: Pubkey,
    mint: Pubkey,
    rent_lamports: int,
) -> List[Instruction]:
    """
    Инструкции TX1: аккаунт mint (82 байта, владелец token program),
    initialize_mint с 0 decimals и ATA владельца.
    """
    return [
        create_account(CreateAccountParams(
            from_pubkey=payer,
            to_pubkey=mint,
            lamports=rent_lamports,
            space=MINT_ACCOUNT_SIZE,
            owner=TOKEN_PROGRAM_ID,
        )),
        initialize_mint(InitializeMintParams(
            decimals=0,
            mint=mint,
            mint_authority=owner,
            program_id=TOKEN_PROGRAM_ID,
        )),
        create_associated_token_account(payer=payer, owner=owner, mint=mint),
    ]
