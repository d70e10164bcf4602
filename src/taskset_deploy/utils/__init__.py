"""Utility modules for logging, errors, retries and AWS client management."""

from taskset_deploy.utils.aws_client import AWSClientManager, AWSCredentials, AssumeRoleConfig
from taskset_deploy.utils.cancellation import CancellationToken
from taskset_deploy.utils.retry import RetryStrategy, with_retry, CONFLICT_ERROR_CODES, TRANSIENT_ERROR_CODES
from taskset_deploy.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    DeploymentError,
    ConfigurationError,
    ProvisionError,
    ShiftError,
    UnhealthyError,
    DeploymentTimeoutError,
    RetireError,
    ConflictError,
    RollbackError,
    DeploymentNotFoundError,
    DeploymentCancelled,
    ErrorHandler,
    error_handler
)
from taskset_deploy.utils.logging import get_logger, setup_logging

__all__ = [
    # AWS Client
    'AWSClientManager',
    'AWSCredentials',
    'AssumeRoleConfig',

    # Cancellation
    'CancellationToken',

    # Retry
    'RetryStrategy',
    'with_retry',
    'CONFLICT_ERROR_CODES',
    'TRANSIENT_ERROR_CODES',

    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'DeploymentError',
    'ConfigurationError',
    'ProvisionError',
    'ShiftError',
    'UnhealthyError',
    'DeploymentTimeoutError',
    'RetireError',
    'ConflictError',
    'RollbackError',
    'DeploymentNotFoundError',
    'DeploymentCancelled',
    'ErrorHandler',
    'error_handler',

    # Logging
    'get_logger',
    'setup_logging',
]
