"""
🧮 Pump.fun bonding-curve layout + PDA helpers
• decode_curve()  – fixed-offset parse of the curve account blob
• curve_pda() / creator_vault_pda() / amm_creator_vault_pda()
"""

import struct
from dataclasses import dataclass
from typing import Optional

from solders.pubkey import Pubkey

# ───────── program ids / seeds ─────────
PUMP_PROGRAM_ID = Pubkey.from_string("6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P")
PUMP_SWAP_PROGRAM_ID = Pubkey.from_string("PSwapMdSai8tjrEXcxFeQth87xC4rRsa4VA5mhGhXkP")
BONDING_SEED = b"bonding-curve"
CREATOR_VAULT_SEED = b"creator-vault"
AMM_CREATOR_VAULT_SEED = b"creator_vault"

# discriminator(8) + 5×u64 + complete(1) + creator(32)
CURVE_LAYOUT = struct.Struct("<8sQQQQQB32s")
CURVE_MIN_SIZE = CURVE_LAYOUT.size      # 81


@dataclass(frozen=True)
class CurveState:
    virtual_token_reserves: int
    virtual_sol_reserves: int
    real_token_reserves: int
    real_sol_reserves: int
    token_total_supply: int
    complete: bool
    creator: str


def decode_curve(buf: bytes) -> Optional[CurveState]:
    """Parse a bonding-curve account. Returns None when the blob is too short."""
    if buf is None or len(buf) < CURVE_MIN_SIZE:
        return None
    (_disc, v_tok, v_sol, r_tok, r_sol, supply,
     complete, creator) = CURVE_LAYOUT.unpack_from(buf, 0)
    return CurveState(
        virtual_token_reserves=v_tok,
        virtual_sol_reserves=v_sol,
        real_token_reserves=r_tok,
        real_sol_reserves=r_sol,
        token_total_supply=supply,
        complete=complete == 1,
        creator=str(Pubkey(creator)),
    )


# ───────── PDA derivation ─────────

def _pda(seed: bytes, key: str, program: Pubkey) -> str:
    return str(Pubkey.find_program_address(
        [seed, bytes(Pubkey.from_string(key))], program)[0])


def curve_pda(mint: str) -> str:
    return _pda(BONDING_SEED, mint, PUMP_PROGRAM_ID)


def creator_vault_pda(creator: str) -> str:
    return _pda(CREATOR_VAULT_SEED, creator, PUMP_PROGRAM_ID)


def amm_creator_vault_pda(creator: str) -> str:
    # PumpSwap vault *authority*; fees land in its WSOL token account
    return _pda(AMM_CREATOR_VAULT_SEED, creator, PUMP_SWAP_PROGRAM_ID)
