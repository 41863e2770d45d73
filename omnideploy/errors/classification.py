"""Classification of RPC and program failures."""
import re
from enum import Enum
from typing import Collection, Iterable, Optional


class FailureClass(str, Enum):
    ALREADY_EXISTS = "already_exists"
    ON_CHAIN_LOGIC = "on_chain_logic"
    TRANSIENT = "transient"


# Anchor reserves 6000+ for program-declared #[error_code] variants.
ANCHOR_CUSTOM_ERROR_OFFSET = 6000

_HEX_CUSTOM = re.compile(r"custom program error: 0x([0-9a-fA-F]+)")
_DEC_CUSTOM = re.compile(r"(?:InstructionErrorCustom|Custom)\((\d+)\)")
_ANCHOR_NUMBER = re.compile(r"Error Number: (\d+)")
_ANCHOR_NAME = re.compile(r"Error Code: (\w+)")

_TRANSIENT_MESSAGE = re.compile(
    r"\b(?:"
    r"blockhash ?not ?found"
    r"|block height exceeded"
    r"|account ?in ?use"
    r"|timed out"
    r"|timeout"
    r"|connection (?:refused|reset|closed|aborted|error)"
    r"|network (?:error|unreachable)"
    r"|too many requests"
    r"|service unavailable"
    r"|node is behind"
    r"|(?:http|status)[ :]*(?:429|502|503|504)"
    r"|(?:429|502|503|504) (?:too many|bad gateway|service|gateway)"
    r")\b",
    re.IGNORECASE,
)

_ALREADY_IN_USE = "already in use"


def extract_error_code(message: Optional[str], logs: Iterable[str] = ()) -> Optional[int]:
    """Pull the custom program error number out of an RPC error and its logs."""
    haystacks = list(logs)
    if message:
        haystacks.append(message)
    for text in haystacks:
        match = _ANCHOR_NUMBER.search(text)
        if match:
            return int(match.group(1))
    for text in haystacks:
        match = _HEX_CUSTOM.search(text)
        if match:
            return int(match.group(1), 16)
        match = _DEC_CUSTOM.search(text)
        if match:
            return int(match.group(1))
    return None


def extract_error_name(logs: Iterable[str]) -> Optional[str]:
    for line in logs:
        match = _ANCHOR_NAME.search(line)
        if match:
            return match.group(1)
    return None


def classify_chain_error(
    error_code: Optional[int],
    logs: Iterable[str] = (),
    message: Optional[str] = None,
    already_exists_codes: Collection[int] = (),
) -> FailureClass:
    """Decide how the caller should treat a rejected transaction.

    Program codes listed in ``already_exists_codes`` and the system
    program's "account already in use" rejection both mean the entity is
    there already. A failure is transient only when no program ran (no
    code, no logs) and the RPC message itself reads as a transport or
    node problem; program log lines never make a failure transient.
    Everything else is a domain rejection.
    """
    logs = list(logs)
    if error_code is not None and error_code in already_exists_codes:
        return FailureClass.ALREADY_EXISTS

    text = " ".join(logs + [message or ""]).lower()
    if _ALREADY_IN_USE in text:
        return FailureClass.ALREADY_EXISTS
    if error_code is None and not logs and message and _TRANSIENT_MESSAGE.search(message):
        return FailureClass.TRANSIENT
    return FailureClass.ON_CHAIN_LOGIC


def describe_error(error_code: Optional[int], error_names: dict) -> Optional[str]:
    """Human-readable name for a custom program error."""
    if error_code is None:
        return None
    name = error_names.get(error_code)
    if name:
        return name
    if error_code >= ANCHOR_CUSTOM_ERROR_OFFSET:
        return f"custom error {error_code}"
    return f"program error {error_code}"
