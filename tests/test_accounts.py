"""Unit tests for Account Manager."""

import pytest
from unittest.mock import Mock
from botocore.exceptions import ClientError

from src.core.aws_client import AWSClientManager
from src.core.logger import OperationLogger
from src.core.provider import ProviderClient
from src.prerequisites.accounts import (
    AccountCreationError,
    AccountManager,
    InvalidEmailError,
    validate_email_format,
)
from src.prerequisites.provisioning import (
    PollSettings,
    ProvisioningFailedError,
    ProvisioningTimeoutError,
    ResourceConflictError,
)


EXISTING_ACCOUNTS = [
    {'Id': '111111111111', 'Name': 'Management', 'Email': 'mgmt@example.com'},
    {'Id': '222222222222', 'Name': 'Log Archive', 'Email': 'Logs@Example.com'},
]


@pytest.fixture
def organizations():
    """Raw boto3 Organizations mock."""
    client = Mock()
    client.get_paginator.return_value.paginate.return_value = [{'Accounts': EXISTING_ACCOUNTS}]
    client.create_account.return_value = {'CreateAccountStatus': {'Id': 'car-123', 'State': 'IN_PROGRESS'}}
    return client


@pytest.fixture
def account_manager(organizations):
    """Account manager with a zero-interval poll."""
    aws_client = Mock(spec=AWSClientManager)
    aws_client.get_current_region.return_value = 'us-east-1'
    aws_client.get_client.return_value = ProviderClient(organizations, 'organizations', 'us-east-1')
    return AccountManager(aws_client, PollSettings(0, 5, 100), Mock(spec=OperationLogger))


class TestEmailValidation:
    """Test cases for email validation."""

    def test_valid_email_formats(self):
        """Test valid email formats."""
        validate_email_format("test@example.com")
        validate_email_format("user.name+tag@example.co.uk")

    @pytest.mark.parametrize("email", ["", "invalid-email", "@example.com", "test@", "test@example"])
    def test_invalid_email_formats(self, email):
        """Test invalid email formats."""
        with pytest.raises(InvalidEmailError):
            validate_email_format(email)


class TestAccountManager:
    """Test cases for AccountManager class."""

    def test_find_account_by_email_case_insensitive(self, account_manager):
        """Test email lookups ignore case."""
        account = account_manager.find_account_by_email('logs@example.com')

        assert account['Id'] == '222222222222'
        assert account_manager.find_account_by_email('missing@example.com') is None

    def test_existing_account_is_noop(self, account_manager, organizations):
        """Test an account with the same name and email is left alone."""
        result = account_manager.ensure_account('Log Archive', 'logs@example.com')

        assert not result.changed
        assert result.resource_id == '222222222222'
        organizations.create_account.assert_not_called()

    def test_email_owned_by_other_name(self, account_manager, organizations):
        """Test a different name for an existing email is a conflict."""
        with pytest.raises(ResourceConflictError) as exc_info:
            account_manager.ensure_account('Audit', 'logs@example.com')

        assert '222222222222' in str(exc_info.value)
        organizations.create_account.assert_not_called()

    def test_create_and_poll(self, account_manager, organizations):
        """Test a new account is created and polled until SUCCEEDED."""
        organizations.describe_create_account_status.side_effect = [
            {'CreateAccountStatus': {'State': 'IN_PROGRESS'}},
            {'CreateAccountStatus': {'State': 'SUCCEEDED', 'AccountId': '333333333333'}},
        ]

        result = account_manager.ensure_account('Audit', 'audit@example.com')

        assert result.changed
        assert result.resource_id == '333333333333'
        organizations.create_account.assert_called_once_with(AccountName='Audit', Email='audit@example.com')
        assert organizations.describe_create_account_status.call_count == 2
        organizations.describe_create_account_status.assert_called_with(CreateAccountRequestId='car-123')

    def test_create_failed(self, account_manager, organizations):
        """Test a FAILED creation surfaces the failure reason."""
        organizations.describe_create_account_status.return_value = {
            'CreateAccountStatus': {'State': 'FAILED', 'FailureReason': 'EMAIL_ALREADY_EXISTS'}
        }

        with pytest.raises(ProvisioningFailedError) as exc_info:
            account_manager.ensure_account('Audit', 'audit@example.com')

        assert 'EMAIL_ALREADY_EXISTS' in str(exc_info.value)

    def test_create_timeout(self, account_manager, organizations):
        """Test polling gives up after the attempt ceiling."""
        organizations.describe_create_account_status.return_value = {
            'CreateAccountStatus': {'State': 'IN_PROGRESS'}
        }

        with pytest.raises(ProvisioningTimeoutError):
            account_manager.ensure_account('Audit', 'audit@example.com')

        assert organizations.describe_create_account_status.call_count == 5

    def test_dry_run_create(self, account_manager, organizations):
        """Test dry-run reports the account that would be created."""
        result = account_manager.ensure_account('Audit', 'audit@example.com', dry_run=True)

        assert result.dry_run
        assert 'Will create account "Audit" with email audit@example.com' in result.message
        organizations.create_account.assert_not_called()

    def test_invalid_email_rejected(self, account_manager, organizations):
        """Test invalid emails fail before any listing."""
        with pytest.raises(InvalidEmailError):
            account_manager.ensure_account('Audit', 'not-an-email')

        organizations.get_paginator.assert_not_called()

    def test_dry_run_invalid_email(self, account_manager, organizations):
        """Test dry-run reports an invalid email instead of raising."""
        result = account_manager.ensure_account('Audit', 'not-an-email', dry_run=True)

        assert result.dry_run
        assert not result.changed
        assert 'Will experience Invalid email format: not-an-email' in result.message
        organizations.create_account.assert_not_called()

    def test_dry_run_email_owned_by_other_name(self, account_manager, organizations):
        """Test dry-run reports an email conflict instead of raising."""
        result = account_manager.ensure_account('Audit', 'logs@example.com', dry_run=True)

        assert result.dry_run
        assert 'Will experience Email logs@example.com already belongs to account 222222222222' in result.message
        organizations.create_account.assert_not_called()

    def test_ensure_account_twice_creates_once(self, account_manager, organizations):
        """Test a second run finds the created account and makes no call."""
        accounts = list(EXISTING_ACCOUNTS)
        organizations.get_paginator.return_value.paginate.side_effect = (
            lambda **kwargs: [{'Accounts': list(accounts)}]
        )

        def create_account(AccountName, Email):
            accounts.append({'Id': '333333333333', 'Name': AccountName, 'Email': Email})
            return {'CreateAccountStatus': {'Id': 'car-123', 'State': 'IN_PROGRESS'}}

        organizations.create_account.side_effect = create_account
        organizations.describe_create_account_status.return_value = {
            'CreateAccountStatus': {'State': 'SUCCEEDED', 'AccountId': '333333333333'}
        }

        first = account_manager.ensure_account('Audit', 'audit@example.com')
        second = account_manager.ensure_account('Audit', 'audit@example.com')

        assert first.changed
        assert not second.changed
        assert second.resource_id == '333333333333'
        assert organizations.create_account.call_count == 1

    def test_move_account_already_in_ou(self, account_manager, organizations):
        """Test no move when the account is already in the OU."""
        organizations.list_parents.return_value = {'Parents': [{'Id': 'ou-sec'}]}

        result = account_manager.move_account_to_ou('333333333333', 'ou-sec')

        assert not result.changed
        organizations.move_account.assert_not_called()

    def test_move_account(self, account_manager, organizations):
        """Test moving from the root into the OU."""
        organizations.list_parents.return_value = {'Parents': [{'Id': 'r-root'}]}

        result = account_manager.move_account_to_ou('333333333333', 'ou-sec')

        assert result.changed
        organizations.move_account.assert_called_once_with(
            AccountId='333333333333', SourceParentId='r-root', DestinationParentId='ou-sec'
        )

    def test_move_account_failure(self, account_manager, organizations):
        """Test move failures are wrapped."""
        organizations.list_parents.return_value = {'Parents': [{'Id': 'r-root'}]}
        organizations.move_account.side_effect = ClientError(
            {'Error': {'Code': 'AccessDeniedException', 'Message': 'no'}}, 'MoveAccount'
        )

        with pytest.raises(AccountCreationError):
            account_manager.move_account_to_ou('333333333333', 'ou-sec')
