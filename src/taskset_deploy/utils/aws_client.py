"""AWS client management and session handling."""

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError, NoCredentialsError, PartialCredentialsError
from typing import Optional, Dict, Any
from dataclasses import dataclass
from taskset_deploy.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class AWSCredentials:
    """AWS credential information."""
    account_id: str
    user_arn: str
    region: str
    profile: Optional[str] = None


@dataclass
class AssumeRoleConfig:
    """Configuration for IAM role assumption."""
    role_arn: str
    session_name: str = "taskset-deploy"
    external_id: Optional[str] = None
    duration_seconds: int = 3600


class AWSClientManager:
    """Manages boto3 sessions and the ecs/elbv2/cloudwatch clients."""

    def __init__(
        self,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        assume_role_config: Optional[AssumeRoleConfig] = None,
        max_pool_connections: int = 20
    ):
        """Initialize AWS client manager.

        Args:
            profile: AWS profile name to use
            region: AWS region to use
            assume_role_config: Configuration for assuming an IAM role
            max_pool_connections: Maximum number of connections in the connection pool,
                sized for parallel health polling
        """
        self.profile = profile
        self.region = region
        self.assume_role_config = assume_role_config
        self._session: Optional[boto3.Session] = None
        self._clients: Dict[str, Any] = {}
        self._credentials: Optional[AWSCredentials] = None

        self._boto_config = Config(
            max_pool_connections=max_pool_connections,
            retries={
                'mode': 'adaptive',
                'max_attempts': 5
            },
            connect_timeout=10,
            read_timeout=60
        )

    @property
    def session(self) -> boto3.Session:
        """Get or create boto3 session, assuming the configured role if any."""
        if self._session is None:
            kwargs = {}
            if self.profile:
                kwargs['profile_name'] = self.profile
            if self.region:
                kwargs['region_name'] = self.region

            self._session = boto3.Session(**kwargs)
            logger.info(f"Created AWS session - Region: {self._session.region_name}, "
                        f"Profile: {self.profile or 'default'}")

            if self.assume_role_config:
                self._session = self._assume_role(self._session, self.assume_role_config)

        return self._session

    def get_client(self, service_name: str):
        """Get a cached boto3 client for a service.

        Args:
            service_name: AWS service name (e.g., 'ecs', 'elbv2')

        Returns:
            Boto3 client for the service
        """
        if service_name not in self._clients:
            self._clients[service_name] = self.session.client(service_name, config=self._boto_config)
            logger.debug(f"Created {service_name} client")
        return self._clients[service_name]

    def validate_credentials(self) -> AWSCredentials:
        """Validate AWS credentials and return credential information.

        Raises:
            NoCredentialsError: If no credentials are found
            PartialCredentialsError: If credentials are incomplete
            ClientError: If credentials are invalid
        """
        if self._credentials is not None:
            return self._credentials

        try:
            identity = self.get_client('sts').get_caller_identity()
        except (NoCredentialsError, PartialCredentialsError):
            logger.error("No usable AWS credentials found. Configure credentials using "
                         "AWS CLI, environment variables, or an IAM role.")
            raise
        except ClientError as e:
            logger.error(f"Failed to validate AWS credentials: {e}")
            raise

        self._credentials = AWSCredentials(
            account_id=identity['Account'],
            user_arn=identity['Arn'],
            region=self.session.region_name,
            profile=self.profile
        )
        logger.info(f"AWS credentials validated - Account: {self._credentials.account_id}, "
                    f"Region: {self._credentials.region}")
        return self._credentials

    def _assume_role(self, base_session: boto3.Session, config: AssumeRoleConfig) -> boto3.Session:
        """Return a session holding temporary credentials for ``config.role_arn``."""
        logger.info(f"Assuming IAM role: {config.role_arn}")

        params = {
            'RoleArn': config.role_arn,
            'RoleSessionName': config.session_name,
            'DurationSeconds': config.duration_seconds,
        }
        if config.external_id:
            params['ExternalId'] = config.external_id

        try:
            response = base_session.client('sts', config=self._boto_config).assume_role(**params)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == 'AccessDenied':
                logger.error(f"Access denied when assuming role {config.role_arn}. "
                             f"Check that the role exists and trusts your principal.")
            raise

        credentials = response['Credentials']
        return boto3.Session(
            aws_access_key_id=credentials['AccessKeyId'],
            aws_secret_access_key=credentials['SecretAccessKey'],
            aws_session_token=credentials['SessionToken'],
            region_name=base_session.region_name
        )
