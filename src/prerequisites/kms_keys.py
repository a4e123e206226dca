"""Customer managed KMS keys addressed by alias."""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from src.core.aws_client import AWSClientManager, Credentials
from src.core.logger import OperationLogger
from src.core.provider import ErrorKind, ProviderClient, ProviderError
from src.core.throttle import throttling_backoff
from src.prerequisites.provisioning import (
    ProvisioningError,
    ProvisioningResult,
    ResourceConflictError,
    RollbackOutcome,
    dry_run_failure,
    generate_dry_run_response,
)


MODULE_NAME = "create-kms-key"

ORPHAN_KEY_PENDING_WINDOW_DAYS = 7


class EncryptionKeyError(ProvisioningError):
    """Raised when a KMS key cannot be created."""
    pass


@dataclass(frozen=True)
class KeySpec:
    """Desired key.

    Attributes:
        alias: Alias name, with or without the 'alias/' prefix
        description: Key description
        key_id: Key the alias must point at; None accepts any existing key
        policy: Optional key policy document
    """

    alias: str
    description: str = ""
    key_id: Optional[str] = None
    policy: Optional[Dict[str, Any]] = None

    @property
    def alias_name(self) -> str:
        return self.alias if self.alias.startswith('alias/') else f"alias/{self.alias}"


class EncryptionKeyManager:
    """Creates KMS keys exactly once per alias.

    Args:
        aws_client: Configured AWS client manager
        region: Region holding the key
        credentials: Credentials of the target account
        logger: Operation logger
    """

    def __init__(
        self,
        aws_client: AWSClientManager,
        region: Optional[str] = None,
        credentials: Optional[Credentials] = None,
        logger: Optional[OperationLogger] = None,
    ) -> None:
        self.aws_client = aws_client
        self.region = region
        self.credentials = credentials
        self.logger = logger or OperationLogger()
        self._kms_client: Optional[ProviderClient] = None

    def _get_client(self) -> ProviderClient:
        if self._kms_client is None:
            self._kms_client = self.aws_client.get_client(
                'kms', self.region, credentials=self.credentials
            )
        return self._kms_client

    def get_alias_target(self, alias_name: str) -> Optional[str]:
        """Key ID an alias points at, or None when the alias is unused."""
        client = self._get_client()
        try:
            response = throttling_backoff(lambda: client.send('describe_key', KeyId=alias_name))
        except ProviderError as e:
            if e.kind is ErrorKind.NOT_FOUND:
                return None
            raise
        return response['KeyMetadata']['KeyId']

    def ensure_key(self, spec: KeySpec, dry_run: bool = False) -> ProvisioningResult:
        """Create a key and its alias unless the alias already exists.

        Args:
            spec: Desired key
            dry_run: Report what would happen without creating; a conflict
                is reported instead of raised

        Returns:
            ProvisioningResult with the key ID as resource_id

        Raises:
            ResourceConflictError: When the alias points at a different key
            EncryptionKeyError: When key or alias creation fails
        """
        alias_name = spec.alias_name
        current_key = self.get_alias_target(alias_name)

        if current_key:
            if spec.key_id and current_key != spec.key_id:
                error = ResourceConflictError(
                    f"Alias {alias_name} is already bound to key {current_key}, expected {spec.key_id}"
                )
                if dry_run:
                    return dry_run_failure(MODULE_NAME, "create", error, resource_id=current_key)
                raise error
            message = f"Alias {alias_name} already bound to key {current_key}"
            if dry_run:
                message = generate_dry_run_response(MODULE_NAME, "create", message)
            return ProvisioningResult(
                changed=False, message=message, resource_id=current_key, dry_run=dry_run
            )

        if dry_run:
            self.logger.dry_run("CreateKey", {"Description": spec.description, "Alias": alias_name})
            return ProvisioningResult(
                changed=False,
                message=generate_dry_run_response(
                    MODULE_NAME, "create", f"Will create key with alias {alias_name}"
                ),
                dry_run=True,
            )

        return self._create_key(spec, alias_name)

    def _create_key(self, spec: KeySpec, alias_name: str) -> ProvisioningResult:
        client = self._get_client()
        parameters: Dict[str, Any] = {'Description': spec.description}
        if spec.policy:
            parameters['Policy'] = json.dumps(spec.policy)

        try:
            self.logger.command_execution(f"CreateKey {alias_name}")
            response = throttling_backoff(lambda: client.send('create_key', **parameters))
        except ProviderError as e:
            raise EncryptionKeyError(f"Failed to create key for {alias_name}: {e}") from e
        key_id = response['KeyMetadata']['KeyId']

        try:
            throttling_backoff(lambda: client.send(
                'create_alias', AliasName=alias_name, TargetKeyId=key_id
            ))
        except ProviderError as e:
            outcome = self._schedule_orphan_deletion(key_id)
            if e.kind is ErrorKind.ALREADY_EXISTS:
                raise ResourceConflictError(
                    f"Alias {alias_name} was bound to another key while creating {key_id}",
                    rollback=outcome,
                ) from e
            raise EncryptionKeyError(f"Failed to create alias {alias_name}: {e}") from e

        self.logger.command_success(f"CreateKey {alias_name}")
        return ProvisioningResult(
            changed=True, message=f"Key {key_id} created with alias {alias_name}", resource_id=key_id
        )

    def _schedule_orphan_deletion(self, key_id: str) -> RollbackOutcome:
        client = self._get_client()
        try:
            throttling_backoff(lambda: client.send(
                'schedule_key_deletion',
                KeyId=key_id,
                PendingWindowInDays=ORPHAN_KEY_PENDING_WINDOW_DAYS,
            ))
        except ProviderError as e:
            self.logger.error(f"Failed to schedule deletion of orphan key {key_id}: {e}")
            return RollbackOutcome.FAILED
        return RollbackOutcome.RESTORED
