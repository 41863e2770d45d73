"""Solana JSON-RPC gateway: reads, transaction submission and confirmation."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Collection, Dict, List, Optional, Sequence, Tuple

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from omnideploy.errors import (
    AlreadyExistsError,
    DeploymentError,
    FailureClass,
    OnChainLogicError,
    TransientNetworkError,
    backoff_delay,
    classify_chain_error,
    extract_error_code,
    extract_error_name,
    retry_transient,
)
from omnideploy.errors.classification import describe_error

logger = logging.getLogger(__name__)

_TRANSPORT_ERRORS = (httpx.HTTPError, SolanaRpcException, asyncio.TimeoutError, ConnectionError)


@dataclass(frozen=True)
class TxReceipt:
    label: str
    signature: str


@dataclass
class TxOutcome:
    """Result of submitting one transaction.

    ``failure`` is None on success; otherwise it says how the caller
    should treat the rejection.
    """
    label: str
    signature: Optional[str] = None
    failure: Optional[FailureClass] = None
    error_code: Optional[int] = None
    error_name: Optional[str] = None
    message: Optional[str] = None
    logs: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failure is None

    def receipt(self) -> TxReceipt:
        """Return the receipt, raising the error matching the failure class."""
        if self.ok:
            return TxReceipt(label=self.label, signature=self.signature)
        raise self.error()

    def error(self) -> DeploymentError:
        detail = self.error_name or (f"code {self.error_code}" if self.error_code is not None else self.message)
        text = f"{self.label} rejected: {detail}"
        if self.failure is FailureClass.TRANSIENT:
            return TransientNetworkError(text, label=self.label, signature=self.signature)
        error_cls = AlreadyExistsError if self.failure is FailureClass.ALREADY_EXISTS else OnChainLogicError
        return error_cls(
            text,
            error_code=self.error_code,
            error_name=self.error_name,
            logs=self.logs,
            label=self.label,
        )


def _rpc_error_details(exc: RPCException) -> Tuple[str, List[str], Optional[str]]:
    """(message, logs, err) out of an RPCException from a failed preflight."""
    payload = exc.args[0] if exc.args else None
    message = getattr(payload, "message", None) or str(exc)
    data = getattr(payload, "data", None)
    logs = list(getattr(data, "logs", None) or [])
    err = getattr(data, "err", None)
    return message, logs, (str(err) if err is not None else None)


class ChainGateway:
    """
    Thin async layer over solana-py's AsyncClient.

    Reads are retried on transport failures. Transactions are rebuilt
    with a fresh blockhash on each attempt; only transient failures
    before a signature is obtained are retried, so an instruction is
    never sent twice once the cluster has accepted it.
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        confirm_timeout: float = 60.0,
        client: Optional[AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.confirm_timeout = confirm_timeout
        self._client = client

    @property
    def client(self) -> AsyncClient:
        if self._client is None:
            self._client = AsyncClient(self.rpc_url, commitment=Confirmed)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def __aenter__(self) -> "ChainGateway":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def _read(self, label: str, call: Callable[[], Any]) -> Any:
        async def attempt():
            try:
                return await call()
            except _TRANSPORT_ERRORS as e:
                raise TransientNetworkError(f"{label}: {e}", label=label) from e

        return await retry_transient(
            attempt,
            max_attempts=self.max_retries,
            base_delay=self.backoff_seconds,
            label=label,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_balance(self, pubkey: Pubkey) -> int:
        resp = await self._read("get_balance", lambda: self.client.get_balance(pubkey, commitment=Confirmed))
        return resp.value

    async def account_exists(self, pubkey: Pubkey) -> bool:
        resp = await self._read("get_account_info", lambda: self.client.get_account_info(pubkey, commitment=Confirmed))
        return resp.value is not None

    async def get_token_balance(self, token_account: Pubkey) -> int:
        """Raw token amount held by ``token_account``; 0 when it does not exist."""
        if not await self.account_exists(token_account):
            return 0
        resp = await self._read(
            "get_token_account_balance",
            lambda: self.client.get_token_account_balance(token_account, commitment=Confirmed),
        )
        return int(resp.value.amount)

    async def minimum_rent(self, size: int) -> int:
        resp = await self._read(
            "get_minimum_balance_for_rent_exemption",
            lambda: self.client.get_minimum_balance_for_rent_exemption(size),
        )
        return resp.value

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def request_airdrop(self, pubkey: Pubkey, lamports: int) -> TxReceipt:
        label = f"airdrop {lamports} lamports"
        try:
            resp = await self._read("request_airdrop", lambda: self.client.request_airdrop(pubkey, lamports))
        except RPCException as e:
            message, _, _ = _rpc_error_details(e)
            raise TransientNetworkError(f"{label} refused: {message}", label=label) from e
        signature = str(resp.value)
        outcome = await self._await_confirmation(TxOutcome(label=label, signature=signature))
        return outcome.receipt()

    async def transfer(self, sender: Keypair, recipient: Pubkey, lamports: int) -> TxReceipt:
        ix = transfer(TransferParams(from_pubkey=sender.pubkey(), to_pubkey=recipient, lamports=lamports))
        return await self.send([ix], [sender], label=f"transfer {lamports} lamports")

    async def send(
        self,
        instructions: Sequence[Instruction],
        signers: Sequence[Keypair],
        *,
        label: str,
        error_names: Optional[Dict[int, str]] = None,
        already_exists_codes: Collection[int] = (),
    ) -> TxReceipt:
        outcome = await self.submit(
            instructions,
            signers,
            label=label,
            error_names=error_names,
            already_exists_codes=already_exists_codes,
        )
        return outcome.receipt()

    async def submit(
        self,
        instructions: Sequence[Instruction],
        signers: Sequence[Keypair],
        *,
        label: str,
        error_names: Optional[Dict[int, str]] = None,
        already_exists_codes: Collection[int] = (),
    ) -> TxOutcome:
        """
        Sign with ``signers`` (the first pays fees), send and confirm.

        Never raises for a rejected transaction; the returned outcome
        carries the failure class instead.
        """
        error_names = error_names or {}
        payer = signers[0].pubkey()
        outcome = TxOutcome(label=label, failure=FailureClass.TRANSIENT, message="not attempted")

        for attempt in range(self.max_retries):
            outcome = await self._send_once(instructions, signers, payer, label, error_names, already_exists_codes)
            if outcome.signature is not None or outcome.failure is not FailureClass.TRANSIENT:
                break
            if attempt < self.max_retries - 1:
                wait = backoff_delay(self.backoff_seconds, attempt)
                logger.warning(f"{label}: transient failure ({outcome.message}), retry {attempt + 1}/{self.max_retries} in {wait:.1f}s")
                await asyncio.sleep(wait)

        if outcome.signature is not None and outcome.failure is None:
            outcome = await self._await_confirmation(outcome, error_names, already_exists_codes)

        if outcome.ok:
            logger.info(f"{label}: confirmed {outcome.signature[:16]}...")
        else:
            logger.debug(f"{label}: {outcome.failure.value} ({outcome.error_name or outcome.message})")
        return outcome

    async def _send_once(
        self,
        instructions: Sequence[Instruction],
        signers: Sequence[Keypair],
        payer: Pubkey,
        label: str,
        error_names: Dict[int, str],
        already_exists_codes: Collection[int],
    ) -> TxOutcome:
        try:
            blockhash_resp = await self.client.get_latest_blockhash(commitment=Confirmed)
            blockhash = blockhash_resp.value.blockhash
            message = Message.new_with_blockhash(list(instructions), payer, blockhash)
            tx = Transaction(list(signers), message, blockhash)
            resp = await self.client.send_transaction(
                tx,
                opts=TxOpts(skip_confirmation=True, preflight_commitment=Confirmed),
            )
        except RPCException as e:
            message, logs, err = _rpc_error_details(e)
            return self._rejection(label, f"{message} {err or ''}".strip(), logs, error_names, already_exists_codes)
        except _TRANSPORT_ERRORS as e:
            return TxOutcome(label=label, failure=FailureClass.TRANSIENT, message=str(e) or type(e).__name__)
        return TxOutcome(label=label, signature=str(resp.value))

    def _rejection(
        self,
        label: str,
        message: str,
        logs: List[str],
        error_names: Dict[int, str],
        already_exists_codes: Collection[int],
        signature: Optional[str] = None,
    ) -> TxOutcome:
        error_code = extract_error_code(message, logs)
        failure = classify_chain_error(error_code, logs, message, already_exists_codes)
        return TxOutcome(
            label=label,
            signature=signature,
            failure=failure,
            error_code=error_code,
            error_name=extract_error_name(logs) or describe_error(error_code, error_names),
            message=message,
            logs=logs,
        )

    async def _await_confirmation(
        self,
        outcome: TxOutcome,
        error_names: Optional[Dict[int, str]] = None,
        already_exists_codes: Collection[int] = (),
        poll_interval: float = 0.5,
    ) -> TxOutcome:
        """Poll the signature status until confirmed, failed or timed out."""
        signature = Signature.from_string(outcome.signature)
        start = time.time()
        poll_count = 0

        while time.time() - start < self.confirm_timeout:
            try:
                resp = await self.client.get_signature_statuses([signature])
                value = resp.value[0] if resp.value else None
                if value:
                    if value.err:
                        return self._rejection(
                            outcome.label, str(value.err), [], error_names or {},
                            already_exists_codes, signature=outcome.signature,
                        )
                    status = str(value.confirmation_status or "").lower()
                    if "confirmed" in status or "finalized" in status:
                        return outcome
            except _TRANSPORT_ERRORS as e:
                logger.debug(f"Status check failed: {e}")

            poll_count += 1
            await asyncio.sleep(min(poll_interval * (1.2 ** min(poll_count, 10)), 2.0))

        logger.warning(f"{outcome.label}: {outcome.signature[:16]}... not confirmed after {self.confirm_timeout}s")
        return TxOutcome(
            label=outcome.label,
            signature=outcome.signature,
            failure=FailureClass.TRANSIENT,
            message="confirmation timeout",
        )
