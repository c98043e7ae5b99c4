"""
Custom exception classes for the application.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class RewardTrackerError(Exception):
    """Base exception class for the reward tracker."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(RewardTrackerError):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class SchedulerError(RewardTrackerError):
    """Raised when there's a scheduler error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SCHEDULER_ERROR", details)


class ValidationError(RewardTrackerError):
    """Raised when upstream data fails validation (e.g. malformed account data)."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)


class DataInconsistencyError(RewardTrackerError):
    """Raised when upstream data is missing or contradicts itself."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "DATA_INCONSISTENCY", details)


class ExternalServiceError(RewardTrackerError):
    """Raised when an external service keeps failing after retries."""

    def __init__(
        self,
        message: str,
        code: str = "EXTERNAL_SERVICE_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, code, details)


class SolanaRPCError(ExternalServiceError):
    """Raised when a Solana RPC call fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SOLANA_RPC_ERROR", details)


class PriceServiceError(ExternalServiceError):
    """Raised when the fiat price service fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "PRICE_SERVICE_ERROR", details)


class MissingBlockTimeError(DataInconsistencyError):
    """Raised when the cluster has no block time for a reward's effective slot."""

    def __init__(self, slot: int):
        super().__init__(
            f"Block time not found for slot {slot}",
            {"slot": slot}
        )
