"""Client for the OMNI utility token program."""

import logging
from dataclasses import dataclass

import borsh_construct as borsh
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.sysvar import RENT
from spl.token.constants import TOKEN_PROGRAM_ID

from omnideploy import pda
from omnideploy.programs.base import ProgramClient, readonly, writable
from omnideploy.rpc import TxReceipt

logger = logging.getLogger(__name__)

INITIALIZE_LAYOUT = borsh.CStruct(
    "name" / borsh.String,
    "symbol" / borsh.String,
    "uri" / borsh.String,
    "max_supply" / borsh.U64,
)


@dataclass(frozen=True)
class UtilityTokenParams:
    name: str
    symbol: str
    uri: str
    max_supply: int


class UtilityTokenClient(ProgramClient):
    ERROR_NAMES = {
        6000: "InvalidAuthority",
        6001: "ExceedsMaxSupply",
        6002: "InvalidMaxSupply",
        6003: "InvalidMint",
        6004: "InvalidOwner",
    }

    def token_authority(self) -> Pubkey:
        return pda.token_authority_address(self.program_id)[0]

    def token_config(self, mint: Pubkey) -> Pubkey:
        return pda.token_config_address(self.program_id, mint)[0]

    async def is_initialized(self, mint: Pubkey) -> bool:
        return await self.gateway.account_exists(self.token_config(mint))

    def initialize_ix(self, params: UtilityTokenParams, mint: Pubkey) -> Instruction:
        data = INITIALIZE_LAYOUT.build({
            "name": params.name,
            "symbol": params.symbol,
            "uri": params.uri,
            "max_supply": params.max_supply,
        })
        payer = self.payer.pubkey()
        return self.instruction(
            "initialize",
            data,
            [
                writable(self.token_config(mint)),
                writable(mint, signer=True),
                readonly(self.token_authority()),
                writable(payer, signer=True),
                writable(payer, signer=True),
                readonly(SYSTEM_PROGRAM_ID),
                readonly(TOKEN_PROGRAM_ID),
                readonly(RENT),
            ],
        )

    async def initialize(self, params: UtilityTokenParams, mint: Keypair) -> TxReceipt:
        """Create the mint (authority: token-authority PDA) and its config account."""
        return await self.send(
            [self.initialize_ix(params, mint.pubkey())],
            label=f"omni_token.initialize({params.symbol})",
            extra_signers=[mint],
        )
