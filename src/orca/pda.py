"""
Program-derived addresses for Orca Whirlpools.

- Position:   seeds [b"position", position_mint]
- Tick array: seeds [b"tick_array", whirlpool, str(start_tick)]
"""

from dataclasses import dataclass
from typing import List, Tuple

from solders.pubkey import Pubkey
from spl.token.instructions import get_associated_token_address as _spl_ata

from ..math.ticks import tick_array_start_index


def get_position_pda(program_id: Pubkey, position_mint: Pubkey) -> Tuple[Pubkey, int]:
    """(position PDA, bump)"""
    return Pubkey.find_program_address([b"position", bytes(position_mint)], program_id)


def get_tick_array_pda(program_id: Pubkey, whirlpool: Pubkey, start_tick: int) -> Pubkey:
    """
    Адрес tick array. Start tick кодируется десятичной строкой (как в SDK),
    отрицательные со знаком минус.
    """
    address, _ = Pubkey.find_program_address(
        [b"tick_array", bytes(whirlpool), str(start_tick).encode()],
        program_id,
    )
    return address


def get_associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    return _spl_ata(owner, mint)


@dataclass(frozen=True)
class TickArrayPair:
    """Tick arrays, покрывающие нижнюю и верхнюю границу диапазона."""
    lower_start: int
    lower_address: Pubkey
    upper_start: int
    upper_address: Pubkey

    @property
    def is_shared(self) -> bool:
        return self.lower_start == self.upper_start

    def unique(self) -> List[Tuple[int, Pubkey]]:
        """(start_tick, address) без повторов: общий массив только один раз."""
        if self.is_shared:
            return [(self.lower_start, self.lower_address)]
        return [(self.lower_start, self.lower_address), (self.upper_start, self.upper_address)]


def resolve_tick_arrays(
    program_id: Pubkey,
    whirlpool: Pubkey,
    tick_lower: int,
    tick_upper: int,
    tick_spacing: int,
) -> TickArrayPair:
    lower_start = tick_array_start_index(tick_lower, tick_spacing)
    upper_start = tick_array_start_index(tick_upper, tick_spacing)

    lower_address = get_tick_array_pda(program_id, whirlpool, lower_start)
    if upper_start == lower_start:
        upper_address = lower_address
    else:
        upper_address = get_tick_array_pda(program_id, whirlpool, upper_start)

    return TickArrayPair(
        lower_start=lower_start,
        lower_address=lower_address,
        upper_start=upper_start,
        upper_address=upper_address,
    )
