"""Account alias management.

Sets the IAM account alias of the calling account. An account holds
at most one alias, so replacing it means deleting the current alias
before creating the new one; when the create step fails the previous
alias is restored where possible.
"""

import re
from typing import List, Optional

from src.core.aws_client import AWSClientManager, Credentials
from src.core.config import ConfigurationError
from src.core.logger import OperationLogger
from src.core.provider import ErrorKind, ProviderClient, ProviderError
from src.core.throttle import throttling_backoff
from src.prerequisites.provisioning import (
    ProvisioningResult,
    ResourceConflictError,
    RollbackOutcome,
    dry_run_failure,
    generate_dry_run_response,
)


MODULE_NAME = "manage-account-alias"

ALIAS_PATTERN = re.compile(r'^[a-z0-9]([a-z0-9]|-(?!-)){1,61}[a-z0-9]$')


class InvalidAliasError(ConfigurationError):
    """Raised when an alias does not meet the IAM alias format."""
    pass


def validate_alias(alias: str) -> None:
    """Check alias format.

    Raises:
        InvalidAliasError: When the alias is not 3-63 lowercase
            alphanumerics and single hyphens
    """
    if not alias or not ALIAS_PATTERN.match(alias):
        raise InvalidAliasError(
            f'InvalidInput: Invalid alias format "{alias}" - must be 3-63 chars, '
            'lowercase alphanumeric with hyphens, no consecutive hyphens'
        )


class AccountAliasManager:
    """Idempotently sets the account alias of the calling account.

    Args:
        aws_client: Configured AWS client manager
        region: Region of the IAM endpoint
        credentials: Credentials of the target account, None for the base session
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
        self._iam_client: Optional[ProviderClient] = None

    def _get_client(self) -> ProviderClient:
        if self._iam_client is None:
            self._iam_client = self.aws_client.get_client(
                'iam', self.region, credentials=self.credentials
            )
        return self._iam_client

    def get_current_alias(self) -> Optional[str]:
        client = self._get_client()
        response = throttling_backoff(lambda: client.send('list_account_aliases'))
        aliases = response.get('AccountAliases') or []
        return aliases[0] if aliases else None

    def manage(self, alias: str, dry_run: bool = False) -> ProvisioningResult:
        """Ensure the account alias equals alias.

        Args:
            alias: Desired account alias
            dry_run: Report what would happen without mutating

        Returns:
            ProvisioningResult whose message lists each step taken

        Raises:
            InvalidAliasError: When alias is malformed (not in dry-run)
            ResourceConflictError: When another account owns alias
            ProviderError: When an IAM call fails terminally
        """
        if dry_run:
            return self._dry_run(alias)

        validate_alias(alias)
        current = self.get_current_alias()

        if current == alias:
            message = f'Account alias "{alias}" is already set for this account'
            self.logger.info(message)
            return ProvisioningResult(changed=False, message=message, resource_id=alias)

        statuses: List[str] = []
        client = self._get_client()

        if current:
            self.logger.command_execution(f"DeleteAccountAlias {current}")
            throttling_backoff(lambda: client.send('delete_account_alias', AccountAlias=current))
            statuses.append(f'Successfully deleted existing account alias "{current}"')

        try:
            self.logger.command_execution(f"CreateAccountAlias {alias}")
            throttling_backoff(lambda: client.send('create_account_alias', AccountAlias=alias))
        except ProviderError as e:
            if e.kind is ErrorKind.ALREADY_EXISTS:
                statuses.append(
                    f'Alias "{alias}" is already taken by another AWS account. '
                    'Aliases must be unique across all AWS accounts globally.'
                )
                outcome = self._rollback(current, statuses)
                raise ResourceConflictError('\n'.join(statuses), rollback=outcome) from e
            self._rollback(current, statuses)
            self.logger.error('\n'.join(statuses))
            raise

        statuses.append(f'Account alias "{alias}" successfully set.')
        message = '\n'.join(statuses)
        self.logger.info(message)
        return ProvisioningResult(changed=True, message=message, resource_id=alias)

    def _rollback(self, previous: Optional[str], statuses: List[str]) -> RollbackOutcome:
        if not previous:
            return RollbackOutcome.NOT_REQUIRED

        client = self._get_client()
        try:
            throttling_backoff(lambda: client.send('create_account_alias', AccountAlias=previous))
        except ProviderError as e:
            self.logger.error(f'Rollback of alias "{previous}" failed: {e}')
            statuses.append(
                f'Failed to revert to previous alias "{previous}". Account left without alias.'
            )
            return RollbackOutcome.FAILED

        statuses.append(f'Reverted to previous account alias "{previous}"')
        return RollbackOutcome.RESTORED

    def _dry_run(self, alias: str) -> ProvisioningResult:
        current = self.get_current_alias()
        try:
            validate_alias(alias)
        except InvalidAliasError as e:
            return dry_run_failure(MODULE_NAME, "set", e, resource_id=current)

        if current == alias:
            status = f'Account alias "{alias}" is already set for this account'
        elif current:
            status = f'Will delete existing account alias "{current}" and set new alias "{alias}"'
        else:
            status = f'Will set account alias "{alias}" (no existing alias)'

        self.logger.dry_run("CreateAccountAlias", {"AccountAlias": alias})
        return ProvisioningResult(
            changed=False,
            message=generate_dry_run_response(MODULE_NAME, "set", status),
            resource_id=current,
            dry_run=True,
        )
