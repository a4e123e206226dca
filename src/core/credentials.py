"""Cross-account credential brokering.

CredentialBroker resolves credentials for a target account by assuming
a role in it, short-circuiting when the caller already is that role.
The broker itself keeps no state; CredentialCache is the time-boxed
cache callers layer on top of it when many tasks target one account.
"""

import re
import threading
import time
from dataclasses import dataclass
from datetime import timezone
from typing import Callable, Dict, Optional, Tuple

from src.core.aws_client import AWSClientManager, Credentials
from src.core.config import ConfigurationError
from src.core.logger import OperationLogger
from src.core.throttle import throttling_backoff


DEFAULT_SESSION_NAME = "GovernanceBaselineAssumeRole"
DEFAULT_CACHE_TTL_SECONDS = 30 * 60

GLOBAL_REGIONS = {
    'aws-us-gov': 'us-gov-west-1',
    'aws-iso': 'us-iso-east-1',
    'aws-iso-b': 'us-isob-east-1',
    'aws-iso-e': 'eu-isoe-west-1',
    'aws-iso-f': 'us-isof-south-1',
    'aws-cn': 'cn-northwest-1',
}

_ASSUMED_ROLE_ARN = re.compile(
    r'^arn:(?P<partition>[^:]+):sts::(?P<account>\d+):assumed-role/(?P<role>[^/]+)/.+$'
)


class CredentialBrokerError(Exception):
    """Raised when the provider returns an incomplete credential set."""
    pass


@dataclass(frozen=True)
class SessionDetails:
    """Identity of the invoking session."""

    invoking_account_id: str
    partition: str
    region: str
    global_region: str


def get_global_region(partition: str) -> str:
    """Region hosting global endpoints (IAM, Organizations) for a partition.

    Args:
        partition: AWS partition name (e.g. 'aws', 'aws-cn')

    Returns:
        Region name; us-east-1 for the commercial partition
    """
    return GLOBAL_REGIONS.get(partition, 'us-east-1')


def build_role_arn(partition: str, account_id: str, role_name: str) -> str:
    return f"arn:{partition}:iam::{account_id}:role/{role_name}"


def _normalize_caller_arn(arn: str) -> str:
    """Map an assumed-role session ARN onto the ARN of its role."""
    match = _ASSUMED_ROLE_ARN.match(arn)
    if not match:
        return arn
    return build_role_arn(match.group('partition'), match.group('account'), match.group('role'))


class CredentialBroker:
    """Resolves credentials for target accounts through role assumption.

    Args:
        aws_client: Client manager used to reach STS
        logger: Operation logger; defaults to a module logger
    """

    def __init__(
        self,
        aws_client: AWSClientManager,
        logger: Optional[OperationLogger] = None,
    ) -> None:
        self.aws_client = aws_client
        self.logger = logger or OperationLogger()

    def get_credentials(
        self,
        account_id: str,
        region: str,
        partition: Optional[str] = None,
        assume_role_name: Optional[str] = None,
        assume_role_arn: Optional[str] = None,
        session_name: Optional[str] = None,
        credentials: Optional[Credentials] = None,
        log_prefix: Optional[str] = None,
    ) -> Optional[Credentials]:
        """Obtain credentials for a role in the target account.

        Args:
            account_id: Target account ID
            region: Region of the STS endpoint to use
            partition: Partition; required with assume_role_name
            assume_role_name: Name of the role to assume
            assume_role_arn: Full ARN of the role to assume
            session_name: Role session name
            credentials: Credentials of the calling identity, if not the base session
            log_prefix: Log prefix of the calling task

        Returns:
            Credentials for the role, or None when the caller already
            is the target role

        Raises:
            ConfigurationError: When role inputs are inconsistent
            CredentialBrokerError: When AssumeRole returns incomplete credentials
            ProviderError: When STS calls fail
        """
        if assume_role_name and assume_role_arn:
            raise ConfigurationError(
                "Either assume_role_name or assume_role_arn can be provided, not both"
            )
        if not assume_role_name and not assume_role_arn:
            raise ConfigurationError(
                "Either assume_role_name or assume_role_arn must be provided"
            )
        if assume_role_name and not partition:
            raise ConfigurationError(
                "partition is required when assume_role_name is provided"
            )

        role_arn = assume_role_arn or build_role_arn(partition, account_id, assume_role_name)
        sts = self.aws_client.get_client('sts', region, credentials=credentials)

        identity = throttling_backoff(lambda: sts.send('get_caller_identity'))
        if _normalize_caller_arn(identity['Arn']) == role_arn:
            self.logger.info(
                "Already in target environment, assume role credentials not required",
                log_prefix,
            )
            return None

        response = throttling_backoff(lambda: sts.send(
            'assume_role',
            RoleArn=role_arn,
            RoleSessionName=session_name or DEFAULT_SESSION_NAME,
        ))

        issued = response.get('Credentials')
        if not issued:
            raise CredentialBrokerError("AssumeRole did not return Credentials")
        for key in ('AccessKeyId', 'SecretAccessKey', 'SessionToken'):
            if not issued.get(key):
                raise CredentialBrokerError(f"AssumeRole did not return {key}")

        self.logger.debug(f"Assumed role {role_arn}", log_prefix)
        return Credentials(
            access_key_id=issued['AccessKeyId'],
            secret_access_key=issued['SecretAccessKey'],
            session_token=issued['SessionToken'],
            expiration=issued.get('Expiration'),
        )

    def get_current_session_details(self, region: Optional[str] = None) -> SessionDetails:
        """Describe the invoking identity.

        Returns:
            SessionDetails with account, partition and regions
        """
        region = region or self.aws_client.get_current_region()
        sts = self.aws_client.get_client('sts', region)
        identity = throttling_backoff(lambda: sts.send('get_caller_identity'))
        partition = identity['Arn'].split(':')[1]
        return SessionDetails(
            invoking_account_id=identity['Account'],
            partition=partition,
            region=region,
            global_region=get_global_region(partition),
        )


class CredentialCache:
    """Lock-guarded credential cache keyed by target account ID.

    Entries expire after ttl_seconds, or earlier when the credentials
    themselves expire; expiry is checked on every read.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[Optional[Credentials], float]] = {}
        self._account_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def _expires_at(self, credentials: Optional[Credentials]) -> float:
        expires_at = self._clock() + self._ttl_seconds
        if credentials is not None and credentials.expiration is not None:
            expiration = credentials.expiration
            if expiration.tzinfo is None:
                expiration = expiration.replace(tzinfo=timezone.utc)
            expires_at = min(expires_at, expiration.timestamp())
        return expires_at

    def get(self, account_id: str) -> Tuple[bool, Optional[Credentials]]:
        """Look up cached credentials.

        Returns:
            Tuple of (hit, credentials); credentials is None on a hit for
            an account that needs no role assumption
        """
        with self._lock:
            entry = self._entries.get(account_id)
            if entry is None:
                return False, None
            credentials, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[account_id]
                return False, None
            return True, credentials

    def put(self, account_id: str, credentials: Optional[Credentials]) -> None:
        with self._lock:
            self._entries[account_id] = (credentials, self._expires_at(credentials))

    def get_or_create(
        self,
        account_id: str,
        factory: Callable[[], Optional[Credentials]],
    ) -> Optional[Credentials]:
        """Return cached credentials, calling factory on a miss.

        Concurrent misses for one account wait on a per-account lock so
        the factory runs once; other accounts are not blocked.
        """
        with self._account_lock(account_id):
            hit, credentials = self.get(account_id)
            if hit:
                return credentials
            credentials = factory()
            self.put(account_id, credentials)
            return credentials

    def _account_lock(self, account_id: str) -> threading.Lock:
        with self._lock:
            return self._account_locks.setdefault(account_id, threading.Lock())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
