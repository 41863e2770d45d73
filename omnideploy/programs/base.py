"""
Shared plumbing for the program clients.

Instruction data follows Anchor's convention: an 8-byte discriminator,
``sha256("global:<instruction name>")[:8]``, followed by the Borsh
encoding of the instruction arguments in declaration order.
"""

import hashlib
import logging
from typing import Collection, Dict, Optional, Sequence

from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from omnideploy.rpc import ChainGateway, TxOutcome, TxReceipt

logger = logging.getLogger(__name__)


def anchor_discriminator(name: str, prefix: str = "global") -> bytes:
    return hashlib.sha256(f"{prefix}:{name}".encode()).digest()[:8]


def readonly(pubkey: Pubkey, signer: bool = False) -> AccountMeta:
    return AccountMeta(pubkey=pubkey, is_signer=signer, is_writable=False)


def writable(pubkey: Pubkey, signer: bool = False) -> AccountMeta:
    return AccountMeta(pubkey=pubkey, is_signer=signer, is_writable=True)


class ProgramClient:
    """
    Base class for a client of one on-chain program.

    Subclasses declare ``ERROR_NAMES`` (custom error number -> name) and
    ``ALREADY_EXISTS_CODES`` (numbers meaning the entity is already
    there), and build instructions with ``instruction()``.
    """

    ERROR_NAMES: Dict[int, str] = {}
    ALREADY_EXISTS_CODES: Collection[int] = frozenset()

    def __init__(self, gateway: ChainGateway, program_id: Pubkey, payer: Keypair):
        self.gateway = gateway
        self.program_id = program_id
        self.payer = payer

    def instruction(self, name: str, encoded_args: bytes, keys: Sequence[AccountMeta]) -> Instruction:
        return Instruction(self.program_id, anchor_discriminator(name) + encoded_args, list(keys))

    def _signers(self, extra: Sequence[Keypair]) -> list:
        signers = [self.payer]
        seen = {self.payer.pubkey()}
        for kp in extra:
            if kp.pubkey() not in seen:
                signers.append(kp)
                seen.add(kp.pubkey())
        return signers

    async def submit(
        self,
        instructions: Sequence[Instruction],
        label: str,
        extra_signers: Sequence[Keypair] = (),
    ) -> TxOutcome:
        return await self.gateway.submit(
            instructions,
            self._signers(extra_signers),
            label=label,
            error_names=self.ERROR_NAMES,
            already_exists_codes=self.ALREADY_EXISTS_CODES,
        )

    async def send(
        self,
        instructions: Sequence[Instruction],
        label: str,
        extra_signers: Sequence[Keypair] = (),
    ) -> TxReceipt:
        outcome = await self.submit(instructions, label, extra_signers)
        return outcome.receipt()

    def error_name(self, code: Optional[int]) -> Optional[str]:
        return self.ERROR_NAMES.get(code) if code is not None else None
