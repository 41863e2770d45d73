"""Client for the SPL Token program: mints, associated accounts, minting."""

import logging
from typing import Tuple

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import CreateAccountParams, create_account
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    InitializeMintParams,
    MintToParams,
    create_associated_token_account,
    get_associated_token_address,
    initialize_mint,
    mint_to,
)

from omnideploy.keypairs import short_address
from omnideploy.programs.base import ProgramClient
from omnideploy.rpc import TxReceipt

logger = logging.getLogger(__name__)

MINT_ACCOUNT_SIZE = 82


class SplTokenClient(ProgramClient):
    """Plain SPL Token operations; the payer is also the mint authority."""

    # TokenError ordinals (not Anchor-offset)
    ERROR_NAMES = {
        0: "NotRentExempt",
        1: "InsufficientFunds",
        2: "InvalidMint",
        3: "MintMismatch",
        4: "OwnerMismatch",
        5: "FixedSupply",
        6: "AlreadyInUse",
    }
    ALREADY_EXISTS_CODES = frozenset({6})

    def __init__(self, gateway, payer: Keypair, program_id: Pubkey = TOKEN_PROGRAM_ID):
        super().__init__(gateway, program_id, payer)

    async def mint_exists(self, mint: Pubkey) -> bool:
        return await self.gateway.account_exists(mint)

    async def create_mint(self, mint: Keypair, decimals: int, authority: Pubkey = None) -> TxReceipt:
        """Allocate and initialize ``mint`` with ``decimals``."""
        authority = authority or self.payer.pubkey()
        lamports = await self.gateway.minimum_rent(MINT_ACCOUNT_SIZE)
        instructions = [
            create_account(CreateAccountParams(
                from_pubkey=self.payer.pubkey(),
                to_pubkey=mint.pubkey(),
                lamports=lamports,
                space=MINT_ACCOUNT_SIZE,
                owner=self.program_id,
            )),
            initialize_mint(InitializeMintParams(
                decimals=decimals,
                program_id=self.program_id,
                mint=mint.pubkey(),
                mint_authority=authority,
                freeze_authority=None,
            )),
        ]
        receipt = await self.send(
            instructions,
            label=f"spl_token.create_mint({short_address(mint.pubkey())})",
            extra_signers=[mint],
        )
        logger.info(f"Created mint {mint.pubkey()} ({decimals} decimals)")
        return receipt

    @staticmethod
    def associated_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
        return get_associated_token_address(owner, mint)

    async def ensure_token_account(self, owner: Pubkey, mint: Pubkey) -> Tuple[Pubkey, bool]:
        """Return ``(associated token account, created)``."""
        account = self.associated_address(owner, mint)
        if await self.gateway.account_exists(account):
            return account, False
        ix = create_associated_token_account(payer=self.payer.pubkey(), owner=owner, mint=mint)
        await self.send([ix], label=f"spl_token.create_ata({short_address(owner)})")
        return account, True

    async def mint_to(self, mint: Pubkey, destination: Pubkey, amount: int) -> TxReceipt:
        ix = mint_to(MintToParams(
            program_id=self.program_id,
            mint=mint,
            dest=destination,
            mint_authority=self.payer.pubkey(),
            amount=amount,
        ))
        return await self.send([ix], label=f"spl_token.mint_to({short_address(destination)}, {amount})")

    async def token_balance(self, account: Pubkey) -> int:
        return await self.gateway.get_token_balance(account)

    async def mint_up_to(self, mint: Pubkey, owner: Pubkey, target: int) -> int:
        """Mint into ``owner``'s associated account until it holds ``target``.

        Returns the amount minted (0 when already at or above target).
        """
        account, _ = await self.ensure_token_account(owner, mint)
        balance = await self.token_balance(account)
        shortfall = target - balance
        if shortfall <= 0:
            return 0
        await self.mint_to(mint, account, shortfall)
        return shortfall
