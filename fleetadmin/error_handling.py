"""
Error Handling and Retry Logic
==============================

This module provides the error taxonomy and retry mechanisms for the device
fleet administration system.

Features:
- Error classification by category (network, authentication, precondition,
  transfer, persistence, not found, remote command)
- Exception types carrying their category and retryability
- Exponential backoff with jitter, with per-call retryable and
  non-retryable exception lists
- Retry decorator used around SSH connection setup
"""

import logging
import random
import socket
import time
import functools
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Type

# Configure logging
logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Error category classification."""
    NETWORK = "network"
    AUTHENTICATION = "authentication"
    PRECONDITION = "precondition"
    TRANSFER = "transfer"
    PERSISTENCE = "persistence"
    NOT_FOUND = "not_found"
    REMOTE_COMMAND = "remote_command"
    UNKNOWN = "unknown"


class FleetError(Exception):
    """Base class for fleet administration errors."""
    category = ErrorCategory.UNKNOWN
    retryable = False


class DeviceUnreachableError(FleetError):
    """Transport failure or non-zero application code from a device."""
    category = ErrorCategory.NETWORK
    retryable = True


class DeviceLoginError(FleetError):
    """Device rejected the credentials or returned an empty token."""
    category = ErrorCategory.AUTHENTICATION


class DeviceApiError(FleetError):
    """A token-authorized device call answered with a failure."""
    category = ErrorCategory.NETWORK


class PreconditionError(FleetError):
    """Input is unusable; nothing was sent to any device."""
    category = ErrorCategory.PRECONDITION


class TransferIntegrityError(FleetError):
    """File transfer did not arrive intact."""
    category = ErrorCategory.TRANSFER


class RemoteCommandError(FleetError):
    """A remote command exited with a non-zero status."""
    category = ErrorCategory.REMOTE_COMMAND

    def __init__(self, command: str, exit_status: int, stderr: str = ""):
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr and stderr.strip() else ""
        super().__init__(f"Command '{command}' failed with exit status {exit_status}{detail}")


class PersistenceError(FleetError):
    """Registry store write failed."""
    category = ErrorCategory.PERSISTENCE


class DeviceNotFoundError(FleetError):
    """No device with the given identity."""
    category = ErrorCategory.NOT_FOUND


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    retryable_exceptions: List[Type[Exception]] = field(default_factory=list)
    non_retryable_exceptions: List[Type[Exception]] = field(default_factory=list)


def categorize(exception: Exception) -> ErrorCategory:
    """Classify an exception into an error category."""
    if isinstance(exception, FleetError):
        return exception.category
    if isinstance(exception, (socket.timeout, TimeoutError, ConnectionError, OSError)):
        return ErrorCategory.NETWORK
    return ErrorCategory.UNKNOWN


def is_retryable(exception: Exception) -> bool:
    """Determine if error is retryable."""
    if isinstance(exception, FleetError):
        return exception.retryable
    return categorize(exception) == ErrorCategory.NETWORK


class RetryManager:
    """Decides whether and when a failed attempt is retried."""

    def __init__(self, config: RetryConfig):
        self.config = config

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for next retry attempt."""
        delay = min(self.config.base_delay * (self.config.backoff_multiplier ** attempt), self.config.max_delay)

        # Add jitter to prevent thundering herd
        if self.config.jitter:
            delay *= (0.5 + random.random() * 0.5)

        return delay

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if operation should be retried."""
        if attempt >= self.config.max_attempts - 1:
            return False

        if any(isinstance(exception, exc_type) for exc_type in self.config.non_retryable_exceptions):
            return False

        if any(isinstance(exception, exc_type) for exc_type in self.config.retryable_exceptions):
            return True

        return is_retryable(exception)


def retry_with_backoff(config: RetryConfig = None):
    """Decorator for adding retry logic to functions."""
    if config is None:
        config = RetryConfig()

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            retry_manager = RetryManager(config)

            for attempt in range(config.max_attempts):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if not retry_manager.should_retry(e, attempt):
                        if attempt > 0:
                            logger.error(f"Giving up on {func.__name__} after {attempt + 1} attempts: {e}")
                        raise
                    delay = retry_manager.calculate_delay(attempt)
                    logger.warning(f"Attempt {attempt + 1} failed for {func.__name__}: {e}. Retrying in {delay:.2f}s")
                    time.sleep(delay)

        return wrapper
    return decorator
