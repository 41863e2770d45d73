"""Deployment exception hierarchy."""
from typing import Optional, Sequence


class DeploymentError(Exception):
    """Base exception for all deployment errors."""
    code: str = "SYS_001"

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "context": self.context}


class ConfigurationError(DeploymentError):
    """Settings could not be parsed or are inconsistent."""
    code = "CFG_001"


class TransientNetworkError(DeploymentError):
    """RPC transport failure that may resolve on retry."""
    code = "NET_001"

    def __init__(self, message: str, retry_after: Optional[float] = None, **context):
        super().__init__(message, **context)
        self.retry_after = retry_after


class OnChainError(DeploymentError):
    """A program rejected the instruction."""
    code = "CHAIN_000"

    def __init__(
        self,
        message: str,
        error_code: Optional[int] = None,
        error_name: Optional[str] = None,
        logs: Sequence[str] = (),
        **context,
    ):
        super().__init__(message, **context)
        self.error_code = error_code
        self.error_name = error_name
        self.logs = list(logs)

    def log_excerpt(self, limit: int = 5) -> str:
        return "\n".join(self.logs[-limit:])


class AlreadyExistsError(OnChainError):
    """Entity already exists on chain; expected when a stage is re-run."""
    code = "CHAIN_001"


class OnChainLogicError(OnChainError):
    """Rejected for domain reasons (bad parameters, missing authority)."""
    code = "CHAIN_002"


class PreconditionMissingError(DeploymentError):
    """A required upstream artifact has not been persisted."""
    code = "PRE_001"

    def __init__(self, message: str, artifact: Optional[str] = None, **context):
        super().__init__(message, artifact=artifact, **context)
        self.artifact = artifact


class CorruptArtifactError(DeploymentError):
    """A persisted record exists but cannot be read."""
    code = "ART_001"

    def __init__(self, message: str, path: Optional[str] = None, reason: Optional[str] = None, **context):
        super().__init__(message, path=path, reason=reason, **context)
        self.path = path
        self.reason = reason


class CorruptIdentityError(CorruptArtifactError):
    """A persisted keypair file exists but does not parse."""
    code = "ART_002"
