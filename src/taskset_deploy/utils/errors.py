"""Error taxonomy for blue/green deployments.

Components translate raw platform failures (botocore ``ClientError`` and
friends) into these exceptions at their boundary, so the orchestrator only
ever reasons about deployment-level failures.
"""

from typing import Optional, Dict, Any, List, Type
from enum import Enum
from dataclasses import dataclass
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError, PartialCredentialsError
from taskset_deploy.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory(Enum):
    """Categories of errors that can occur during a deployment."""
    CONFIGURATION = "configuration"
    AWS = "aws"
    NETWORK = "network"
    CREDENTIAL = "credential"
    PERMISSION = "permission"
    PROVISIONING = "provisioning"
    TRAFFIC = "traffic"
    HEALTH = "health"
    TIMEOUT = "timeout"
    CLEANUP = "cleanup"
    CONFLICT = "conflict"
    ROLLBACK = "rollback"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Needs operator action
    ERROR = "error"  # Deployment cannot proceed, rollback possible
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"


@dataclass
class ErrorContext:
    """Context information for an error."""
    service: Optional[str] = None
    deployment_id: Optional[str] = None
    task_set_id: Optional[str] = None
    operation: Optional[str] = None
    aws_error_code: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


class DeploymentError(Exception):
    """Base exception for deployment errors."""

    category = ErrorCategory.UNKNOWN
    severity = ErrorSeverity.ERROR

    def __init__(
        self,
        message: str,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize deployment error.

        Args:
            message: Human-readable error message
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
        """
        super().__init__(message)
        self.message = message
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []

    def to_user_message(self) -> str:
        """Convert error to user-friendly message.

        Returns:
            Formatted error message for display to user
        """
        lines = [f"{self.severity.value.upper()}: {self.message}"]

        if self.context.service:
            lines.append(f"   Service: {self.context.service}")
        if self.context.task_set_id:
            lines.append(f"   TaskSet: {self.context.task_set_id}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")
        if self.cause:
            lines.append(f"   Cause: {self.cause}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization.

        Returns:
            Dictionary representation of the error
        """
        return {
            'type': type(self).__name__,
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'context': {
                'service': self.context.service,
                'deployment_id': self.context.deployment_id,
                'task_set_id': self.context.task_set_id,
                'operation': self.context.operation,
                'aws_error_code': self.context.aws_error_code,
                'request_id': self.context.request_id,
                'additional_info': self.context.additional_info,
            },
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions,
        }


class ConfigurationError(DeploymentError):
    """Error in configuration file or settings."""
    category = ErrorCategory.CONFIGURATION
    severity = ErrorSeverity.CRITICAL


class ProvisionError(DeploymentError):
    """A new TaskSet could not be created or stabilized."""
    category = ErrorCategory.PROVISIONING


class ShiftError(DeploymentError):
    """The listener weight update was rejected or broke the weight invariant."""
    category = ErrorCategory.TRAFFIC


class UnhealthyError(DeploymentError):
    """A target group breached its health thresholds while taking traffic."""
    category = ErrorCategory.HEALTH


class DeploymentTimeoutError(DeploymentError, TimeoutError):
    """Steady-state or settle window exceeded."""
    category = ErrorCategory.TIMEOUT


class RetireError(DeploymentError):
    """Retired TaskSet could not be drained or deleted."""
    category = ErrorCategory.CLEANUP
    severity = ErrorSeverity.WARNING


class ConflictError(DeploymentError):
    """Service already has a deployment in flight."""
    category = ErrorCategory.CONFLICT


class RollbackError(DeploymentError):
    """Failure while rolling back; requires manual operator action."""
    category = ErrorCategory.ROLLBACK
    severity = ErrorSeverity.CRITICAL


class DeploymentNotFoundError(DeploymentError):
    """No deployment with the requested id is known."""


class DeploymentCancelled(Exception):
    """Raised inside a suspended operation when its cancellation token fires."""


class ErrorHandler:
    """Translates AWS and network exceptions into the deployment taxonomy."""

    # Known AWS error codes with a message and operator suggestions
    AWS_ERROR_MAPPING = {
        'AccessDeniedException': {
            'message': 'Access denied - insufficient permissions',
            'suggestions': [
                'Check the IAM policy allows ecs:*TaskSet*, elasticloadbalancing:ModifyListener '
                'and cloudwatch:GetMetricStatistics',
                'Verify you are operating in the correct AWS region',
            ]
        },
        'AccessDenied': {
            'message': 'Access denied - insufficient permissions',
            'suggestions': [
                'Check IAM policies attached to your user/role',
            ]
        },
        'ClientException': {
            'message': 'ECS rejected the request',
            'suggestions': [
                'Verify the task definition ARN exists and is ACTIVE',
                'Check the container name and port match the task definition',
            ]
        },
        'InvalidParameterException': {
            'message': 'Invalid parameter value',
            'suggestions': [
                'Check subnets, security groups and target group ARNs in the configuration',
            ]
        },
        'ServiceNotActiveException': {
            'message': 'ECS service is not active',
            'suggestions': [
                'Confirm the service exists in the cluster and uses the EXTERNAL deployment controller',
            ]
        },
        'ServiceNotFoundException': {
            'message': 'ECS service not found',
            'suggestions': [
                'Check the service name and cluster in the configuration',
            ]
        },
        'PlatformTaskDefinitionIncompatibilityException': {
            'message': 'Task definition is incompatible with the launch type',
            'suggestions': [
                'Check requiresCompatibilities, cpu and memory of the task definition',
            ]
        },
        'TaskSetNotFoundException': {
            'message': 'TaskSet not found',
            'suggestions': [
                'The TaskSet may have been deleted outside of this tool',
            ]
        },
        'ConcurrentModification': {
            'message': 'Listener was modified concurrently',
            'suggestions': [
                'Make sure no other process is changing the listener during a deployment',
            ]
        },
        'ListenerNotFound': {
            'message': 'Listener not found',
            'suggestions': [
                'Check the listener ARN in the configuration',
            ]
        },
        'TargetGroupNotFound': {
            'message': 'Target group not found',
            'suggestions': [
                'Check the blue/green target group ARNs in the configuration',
            ]
        },
        'ThrottlingException': {
            'message': 'API rate limit exceeded',
            'suggestions': [
                'Increase poll_interval to reduce API call frequency',
            ]
        },
    }

    def __init__(self):
        """Initialize error handler."""
        self.logger = get_logger(__name__)

    def translate(
        self,
        error: Exception,
        error_class: Type[DeploymentError],
        message: str,
        context: Optional[ErrorContext] = None
    ) -> DeploymentError:
        """Convert an exception into ``error_class``.

        Args:
            error: The exception to translate
            error_class: Taxonomy class to produce
            message: Message describing the failed operation
            context: Additional context about where the error occurred

        Returns:
            DeploymentError instance of ``error_class`` (or ``error`` itself
            when it is already part of the taxonomy)
        """
        if isinstance(error, DeploymentError):
            return error

        context = context or ErrorContext()
        suggestions: List[str] = []

        if isinstance(error, ClientError):
            error_code = error.response.get('Error', {}).get('Code', 'Unknown')
            error_message = error.response.get('Error', {}).get('Message', str(error))
            context.aws_error_code = error_code
            context.request_id = error.response.get('ResponseMetadata', {}).get('RequestId')

            error_info = self.AWS_ERROR_MAPPING.get(error_code)
            if error_info:
                message = f"{message}: {error_info['message']}: {error_message}"
                suggestions = list(error_info['suggestions'])
            else:
                message = f"{message}: AWS Error ({error_code}): {error_message}"
                suggestions = [f"AWS Request ID: {context.request_id}"]

        elif isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            message = f"{message}: AWS credentials missing or incomplete"
            suggestions = [
                'Configure AWS credentials using: aws configure',
                'Specify a profile with --profile flag',
            ]

        elif isinstance(error, (BotoCoreError, ConnectionError)):
            message = f"{message}: network error: {error}"
            suggestions = ['Check network connectivity to the AWS endpoints']

        else:
            message = f"{message}: {error}"

        return error_class(message, context=context, cause=error, suggestions=suggestions)

    def log_error(self, error: DeploymentError):
        """Log an error with appropriate level.

        Args:
            error: The error to log
        """
        log_message = error.to_user_message()

        if error.severity in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR):
            self.logger.error(log_message)
        elif error.severity == ErrorSeverity.WARNING:
            self.logger.warning(log_message)
        else:
            self.logger.info(log_message)

        self.logger.debug(f"Error details: {error.to_dict()}")


error_handler = ErrorHandler()
