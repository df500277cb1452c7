"""
Custom exception classes for the volume bot.

Every exception carries keyword context so log lines show which
owner/token/wallet was involved.
"""


class BotException(Exception):
    """Base exception for all bot-related errors."""

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self):
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{ctx_str}]"
        return self.message


class ValidationException(BotException):
    """Raised when a start request or settings update is rejected."""
    pass


class InvalidSettingsException(ValidationException):
    """Raised when settings violate their constraints."""
    pass


class NoWalletsException(ValidationException):
    """Raised when a session or monitor is started without wallets."""
    pass


class StateException(BotException):
    """Raised when state management operations fail."""
    pass


class AlreadyRunningException(StateException):
    """Raised when a non-terminal session already exists for (owner, token)."""
    pass


class AlreadyMonitoringException(StateException):
    """Raised when a monitor is started twice."""
    pass


class InvalidTransitionException(StateException):
    """Raised on a session status change that the lifecycle does not allow."""
    pass


class SwapException(BotException):
    """Raised when swap operations fail."""
    pass


class NetworkException(BotException):
    """Raised when network/RPC operations fail."""
    pass


class PriceUnavailableException(NetworkException):
    """Raised when no usable price could be fetched for a token."""
    pass


class WalletException(BotException):
    """Raised when wallet operations fail."""
    pass


class ConfigurationException(BotException):
    """Raised when configuration is invalid."""
    pass


class StorageException(BotException):
    """Raised when the settings store cannot be read or written."""
    pass
