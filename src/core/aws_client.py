"""Centralized AWS client management with session handling.

This module provides a centralized way to manage AWS clients across
accounts and regions. Clients are created either from the base session
(profile or environment credentials) or from short-lived credentials
obtained through role assumption, and are handed out wrapped in a
ProviderClient so that every failure is classified at one boundary.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional
import boto3
from botocore.config import Config
from botocore.exceptions import (
    NoCredentialsError,
    ClientError,
    ProfileNotFound,
)

from src.core.provider import ProviderClient


DEFAULT_REGION = "us-east-1"
SDK_MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class Credentials:
    """Short-lived credentials for a target account.

    Secrets are excluded from repr so they never reach log output.
    """

    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: str = field(repr=False)
    expiration: Optional[datetime] = None


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class AWSClientManager:
    """Centralized AWS client management with session handling.

    Clients are cached per service, region and credential identity;
    the cache is shared by orchestrator worker threads and guarded by
    a lock. Clients built from expired credentials are evicted when the
    next client is created.
    """

    def __init__(
        self,
        profile_name: Optional[str] = None,
        region_name: Optional[str] = None,
        solution_id: Optional[str] = None,
    ) -> None:
        """Initialize AWS client manager.

        Args:
            profile_name: Optional AWS profile name for credentials
            region_name: Optional default region for clients
            solution_id: Optional identifier appended to the user agent

        Raises:
            NoCredentialsError: When AWS credentials are not available
            ProfileNotFound: When specified profile doesn't exist
        """
        self._session: Optional[boto3.Session] = None
        self._clients: Dict[str, ProviderClient] = {}
        self._client_expirations: Dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._profile_name = profile_name
        self._region_name = region_name
        self._client_config = Config(
            retries={"max_attempts": SDK_MAX_ATTEMPTS, "mode": "standard"},
            user_agent_extra=solution_id,
        )
        self._validate_credentials()

    def _validate_credentials(self) -> None:
        """Validate AWS credentials are available and working.

        Raises:
            NoCredentialsError: When AWS credentials are not available
            ProfileNotFound: When specified profile doesn't exist
        """
        try:
            session = self._get_session()
            sts_client = session.client("sts")
            sts_client.get_caller_identity()
        except NoCredentialsError:
            raise NoCredentialsError()
        except ProfileNotFound:
            raise ProfileNotFound(profile=self._profile_name)
        except ClientError as e:
            if e.response["Error"]["Code"] == "InvalidUserID.NotFound":
                raise NoCredentialsError(
                    "AWS credentials are invalid or expired. "
                    "Please update your credentials."
                )
            raise

    def _get_session(self) -> boto3.Session:
        """Get or create boto3 session.

        Returns:
            Configured boto3 session
        """
        if self._session is None:
            if self._profile_name:
                self._session = boto3.Session(
                    profile_name=self._profile_name, region_name=self._region_name
                )
            else:
                self._session = boto3.Session(region_name=self._region_name)
        return self._session

    def get_client(
        self,
        service_name: str,
        region_name: Optional[str] = None,
        credentials: Optional[Credentials] = None,
    ) -> ProviderClient:
        """Get AWS service client for specified region and identity.

        Args:
            service_name: AWS service name (e.g., 'organizations', 'iam')
            region_name: AWS region name, defaults to the current region
            credentials: Assumed-role credentials; None uses the base session

        Returns:
            ProviderClient wrapping a boto3 client for the service and region
        """
        region_name = region_name or self.get_current_region()
        identity = credentials.access_key_id if credentials else "default"
        client_key = f"{service_name}_{region_name}_{identity}"

        with self._lock:
            if client_key not in self._clients:
                self._evict_expired()
                session = self._get_session()
                if credentials:
                    client = session.client(
                        service_name,
                        region_name=region_name,
                        aws_access_key_id=credentials.access_key_id,
                        aws_secret_access_key=credentials.secret_access_key,
                        aws_session_token=credentials.session_token,
                        config=self._client_config,
                    )
                else:
                    client = session.client(
                        service_name,
                        region_name=region_name,
                        config=self._client_config,
                    )
                self._clients[client_key] = ProviderClient(
                    client, service_name, region_name
                )
                if credentials and credentials.expiration:
                    self._client_expirations[client_key] = _as_utc(credentials.expiration)
            return self._clients[client_key]

    def _evict_expired(self) -> None:
        """Drop clients built from expired credentials; the caller holds the lock."""
        now = datetime.now(timezone.utc)
        for client_key, expiration in list(self._client_expirations.items()):
            if expiration <= now:
                del self._client_expirations[client_key]
                self._clients.pop(client_key, None)

    def get_current_region(self) -> str:
        """Get current AWS region from session.

        Returns:
            Current AWS region name
        """
        session = self._get_session()
        return session.region_name or DEFAULT_REGION

    def get_account_id(self) -> str:
        """Get current AWS account ID.

        Returns:
            Current AWS account ID

        Raises:
            ProviderError: When unable to get account information
        """
        sts_client = self.get_client("sts")
        response = sts_client.send("get_caller_identity")
        return response["Account"]

    def clear_cache(self) -> None:
        """Clear cached clients to force recreation."""
        with self._lock:
            self._clients.clear()
            self._client_expirations.clear()
