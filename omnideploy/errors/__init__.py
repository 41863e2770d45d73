"""
Error handling for the deployment pipeline.

Two propagation scopes:
1. Item scope - TransientNetworkError (after retries), AlreadyExistsError,
   OnChainLogicError. Caught by the stage, recorded, stage continues.
2. Stage scope - PreconditionMissingError, CorruptArtifactError. Abort the
   stage immediately.
"""

from omnideploy.errors.exceptions import (
    DeploymentError, ConfigurationError, TransientNetworkError, OnChainError,
    AlreadyExistsError, OnChainLogicError, PreconditionMissingError,
    CorruptArtifactError, CorruptIdentityError,
)
from omnideploy.errors.classification import (
    FailureClass, classify_chain_error, extract_error_code, extract_error_name,
)
from omnideploy.errors.recovery import backoff_delay, retry_transient

ITEM_ERRORS = (TransientNetworkError, OnChainError)

__all__ = [
    "DeploymentError", "ConfigurationError", "TransientNetworkError", "OnChainError",
    "AlreadyExistsError", "OnChainLogicError", "PreconditionMissingError",
    "CorruptArtifactError", "CorruptIdentityError",
    "FailureClass", "classify_chain_error", "extract_error_code", "extract_error_name",
    "backoff_delay", "retry_transient", "ITEM_ERRORS",
]
