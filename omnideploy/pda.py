"""
Deterministic program-derived addresses for the venue's programs.

Derivation walks the bump seed down from 255 and accepts the first
``sha256(seeds || bump || program_id || "ProgramDerivedAddress")`` that is
off the ed25519 curve. solders implements exactly the runtime's
algorithm, so every address computed here matches what the programs
check in their ``seeds = [...]`` constraints.

No RPC access; every function is pure.
"""

from __future__ import annotations

from typing import Sequence, Tuple

from solders.pubkey import Pubkey

MAX_SEEDS = 16
MAX_SEED_LEN = 32

REGISTRY_SEED = b"registry"
REGISTRY_AUTHORITY_SEED = b"authority"
TOKEN_AUTHORITY_SEED = b"token_authority"
TOKEN_CONFIG_SEED = b"token_config"
VAULT_SIGNER_SEED = b"vault_signer"


def _check_seeds(seeds: Sequence[bytes]) -> list:
    # The bump is appended as one more seed, hence MAX_SEEDS - 1
    if len(seeds) > MAX_SEEDS - 1:
        raise ValueError(f"too many seeds: {len(seeds)} (max {MAX_SEEDS - 1})")
    checked = []
    for seed in seeds:
        if not isinstance(seed, (bytes, bytearray)):
            raise ValueError(f"seed must be bytes, got {type(seed).__name__}")
        if len(seed) > MAX_SEED_LEN:
            raise ValueError(f"seed longer than {MAX_SEED_LEN} bytes: {len(seed)}")
        checked.append(bytes(seed))
    return checked


def derive(seeds: Sequence[bytes], owner: Pubkey) -> Tuple[Pubkey, int]:
    """Return ``(address, bump)`` for ``seeds`` under program ``owner``."""
    return Pubkey.find_program_address(_check_seeds(seeds), owner)


def verify(seeds: Sequence[bytes], owner: Pubkey, address: Pubkey, bump: int) -> bool:
    """True if ``address`` is the PDA of ``seeds + [bump]`` under ``owner``."""
    if not 0 <= bump <= 255:
        return False
    seeds = _check_seeds(seeds)
    try:
        candidate = Pubkey.create_program_address(seeds + [bytes([bump])], owner)
    except Exception:
        # on-curve result for this bump
        return False
    return candidate == address


def registry_address(registry_program: Pubkey) -> Tuple[Pubkey, int]:
    return derive([REGISTRY_SEED], registry_program)


def registry_authority_address(registry_program: Pubkey, registry: Pubkey) -> Tuple[Pubkey, int]:
    return derive([REGISTRY_AUTHORITY_SEED, bytes(registry)], registry_program)


def token_authority_address(token_program: Pubkey) -> Tuple[Pubkey, int]:
    return derive([TOKEN_AUTHORITY_SEED], token_program)


def token_config_address(token_program: Pubkey, mint: Pubkey) -> Tuple[Pubkey, int]:
    return derive([TOKEN_CONFIG_SEED, bytes(mint)], token_program)


def vault_signer_address(clob_program: Pubkey, market: Pubkey) -> Tuple[Pubkey, int]:
    return derive([VAULT_SIGNER_SEED, bytes(market)], clob_program)
