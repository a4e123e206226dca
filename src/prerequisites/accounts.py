"""Account creation and management for the governed organization.

This module creates member accounts (e.g. Log Archive and Audit)
idempotently: accounts are looked up by email, the natural key before
an account ID exists, and a new account is created only when no
account holds that email. Creation is asynchronous and is polled until
the provider reports SUCCEEDED or FAILED.
"""

import re
from typing import Any, Dict, List, Optional

from src.core.aws_client import AWSClientManager
from src.core.logger import OperationLogger
from src.core.provider import ProviderClient, ProviderError
from src.core.throttle import throttling_backoff
from src.prerequisites.provisioning import (
    PollSettings,
    ProvisioningError,
    ProvisioningResult,
    ProvisioningState,
    ProvisioningStatus,
    ResourceConflictError,
    dry_run_failure,
    generate_dry_run_response,
    poll_until_terminal,
)


MODULE_NAME = "create-account"

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')

ACCOUNT_CREATION_POLL = PollSettings(interval_seconds=60, max_attempts=30, max_wait_seconds=1800)


class AccountCreationError(ProvisioningError):
    """Base exception for account creation operations."""
    pass


class InvalidEmailError(AccountCreationError):
    """Raised when email address is invalid."""
    pass


def validate_email_format(email: str) -> None:
    """Check email format.

    Raises:
        InvalidEmailError: When email format is invalid
    """
    if not email or not EMAIL_PATTERN.match(email):
        raise InvalidEmailError(f"Invalid email format: {email}")


class AccountManager:
    """Manages AWS account creation for the organization.

    Args:
        aws_client: Configured AWS client manager
        poll_settings: Bounds of the creation status poll
        logger: Operation logger
    """

    def __init__(
        self,
        aws_client: AWSClientManager,
        poll_settings: PollSettings = ACCOUNT_CREATION_POLL,
        logger: Optional[OperationLogger] = None,
    ) -> None:
        self.aws_client = aws_client
        self.poll_settings = poll_settings
        self.logger = logger or OperationLogger()
        self._org_client: Optional[ProviderClient] = None

    def _get_client(self) -> ProviderClient:
        """Get Organizations client with caching.

        Returns:
            Organizations ProviderClient
        """
        if self._org_client is None:
            self._org_client = self.aws_client.get_client(
                'organizations',
                self.aws_client.get_current_region()
            )
        return self._org_client

    def list_accounts(self) -> List[Dict[str, Any]]:
        """List all accounts in the organization.

        Returns:
            List of account details
        """
        client = self._get_client()
        return throttling_backoff(lambda: client.paginate('list_accounts', 'Accounts'))

    def find_account_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        """Find account by email address.

        Args:
            email: Email address to search for

        Returns:
            Account details if found, None otherwise
        """
        for account in self.list_accounts():
            if account.get('Email', '').lower() == email.lower():
                return account
        return None

    def ensure_account(self, name: str, email: str, dry_run: bool = False) -> ProvisioningResult:
        """Create an account unless one already uses email.

        Args:
            name: Account name
            email: Account email address
            dry_run: Report what would happen without creating; rejected
                input is reported instead of raised

        Returns:
            ProvisioningResult with the account ID as resource_id

        Raises:
            InvalidEmailError: When email format is invalid
            ResourceConflictError: When email belongs to an account with
                a different name
            ProvisioningFailedError: When creation reaches FAILED
            ProvisioningTimeoutError: When creation does not finish in time
        """
        if dry_run:
            return self._dry_run(name, email)

        validate_email_format(email)
        existing = self.find_account_by_email(email)

        if existing:
            self._check_existing(name, email, existing)
            message = f"Account \"{name}\" already exists with ID {existing['Id']}"
            self.logger.info(message)
            return ProvisioningResult(changed=False, message=message, resource_id=existing['Id'])

        client = self._get_client()
        self.logger.command_execution(f"CreateAccount {name}")
        response = throttling_backoff(
            lambda: client.send('create_account', AccountName=name, Email=email)
        )
        request_id = response['CreateAccountStatus']['Id']
        state = poll_until_terminal(
            lambda: self.get_creation_state(request_id),
            self.poll_settings,
            description=name,
        )

        message = f"Account \"{name}\" created with ID {state.resource_id}"
        self.logger.command_success(f"CreateAccount {name}")
        return ProvisioningResult(changed=True, message=message, resource_id=state.resource_id)

    @staticmethod
    def _check_existing(name: str, email: str, existing: Dict[str, Any]) -> None:
        if existing.get('Name') != name:
            raise ResourceConflictError(
                f"Email {email} already belongs to account {existing.get('Id')} "
                f"named \"{existing.get('Name')}\", expected \"{name}\""
            )

    def _dry_run(self, name: str, email: str) -> ProvisioningResult:
        existing = self.find_account_by_email(email)
        try:
            validate_email_format(email)
            if existing:
                self._check_existing(name, email, existing)
        except (InvalidEmailError, ResourceConflictError) as e:
            return dry_run_failure(MODULE_NAME, "create", e)

        if existing:
            message = generate_dry_run_response(
                MODULE_NAME, "create", f"Account \"{name}\" already exists with ID {existing['Id']}"
            )
            self.logger.info(message)
            return ProvisioningResult(
                changed=False, message=message, resource_id=existing['Id'], dry_run=True
            )

        self.logger.dry_run("CreateAccount", {"AccountName": name, "Email": email})
        return ProvisioningResult(
            changed=False,
            message=generate_dry_run_response(
                MODULE_NAME, "create", f"Will create account \"{name}\" with email {email}"
            ),
            dry_run=True,
        )

    def get_creation_state(self, request_id: str) -> ProvisioningState:
        """Query the status of an account creation request."""
        client = self._get_client()
        response = throttling_backoff(lambda: client.send(
            'describe_create_account_status', CreateAccountRequestId=request_id
        ))
        return self._to_state(response['CreateAccountStatus'])

    @staticmethod
    def _to_state(status: Dict[str, Any]) -> ProvisioningState:
        state = status.get('State')
        if state == 'SUCCEEDED':
            return ProvisioningState(ProvisioningStatus.SUCCEEDED, resource_id=status.get('AccountId'))
        if state == 'FAILED':
            return ProvisioningState.failed(status.get('FailureReason'), status.get('AccountId'))
        return ProvisioningState(ProvisioningStatus.IN_PROGRESS)

    def move_account_to_ou(self, account_id: str, ou_id: str, dry_run: bool = False) -> ProvisioningResult:
        """Move account under an organizational unit if not already there.

        Args:
            account_id: Account ID to move
            ou_id: Target organizational unit ID
            dry_run: Report what would happen without moving

        Returns:
            ProvisioningResult

        Raises:
            ProviderError: When the move fails
        """
        client = self._get_client()
        parents = throttling_backoff(lambda: client.send('list_parents', ChildId=account_id))
        source_id = parents['Parents'][0]['Id']

        if source_id == ou_id:
            return ProvisioningResult(
                changed=False, message=f"Account {account_id} is already in {ou_id}",
                resource_id=account_id, dry_run=dry_run,
            )

        if dry_run:
            self.logger.dry_run("MoveAccount", {"AccountId": account_id, "DestinationParentId": ou_id})
            return ProvisioningResult(
                changed=False,
                message=generate_dry_run_response(
                    MODULE_NAME, "move", f"Will move account {account_id} from {source_id} to {ou_id}"
                ),
                resource_id=account_id,
                dry_run=True,
            )

        try:
            throttling_backoff(lambda: client.send(
                'move_account',
                AccountId=account_id,
                SourceParentId=source_id,
                DestinationParentId=ou_id,
            ))
        except ProviderError as e:
            raise AccountCreationError(f"Failed to move account {account_id}: {e}") from e

        return ProvisioningResult(
            changed=True, message=f"Account {account_id} moved to {ou_id}", resource_id=account_id
        )
