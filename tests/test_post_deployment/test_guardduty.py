"""Unit tests for GuardDuty organization setup."""

import pytest
from unittest.mock import Mock

from src.core.aws_client import AWSClientManager
from src.core.logger import OperationLogger
from src.core.provider import ProviderClient
from src.orchestration.models import AccountTarget
from src.post_deployment.guardduty import GuardDutyModule
from src.post_deployment.service_module import (
    AccountRole,
    EnvironmentContext,
    SecurityServiceSettings,
)
from src.prerequisites.organizations import OrganizationsManager
from src.prerequisites.provisioning import ResourceConflictError


ADMIN_ID = '222222222222'
ACCOUNTS = {
    AccountRole.MANAGEMENT: AccountTarget('111111111111', 'Management'),
    AccountRole.DELEGATED_ADMIN: AccountTarget(ADMIN_ID, 'Audit'),
    AccountRole.WORKLOAD: AccountTarget('333333333333', 'Workload'),
}


@pytest.fixture
def guardduty():
    """Raw boto3 GuardDuty mock for an account without a detector."""
    client = Mock()
    client.list_detectors.return_value = {'DetectorIds': []}
    client.create_detector.return_value = {'DetectorId': 'det-new'}
    client.list_organization_admin_accounts.return_value = {'AdminAccounts': []}
    client.describe_organization_configuration.return_value = {'AutoEnableOrganizationMembers': 'NEW'}
    return client


@pytest.fixture
def module(guardduty):
    aws_client = Mock(spec=AWSClientManager)
    aws_client.get_client.return_value = ProviderClient(guardduty, 'guardduty', 'us-east-1')
    return GuardDutyModule(
        aws_client,
        SecurityServiceSettings(enable=True, delegated_admin_account_id=ADMIN_ID),
        home_region='us-east-1',
        organizations=Mock(spec=OrganizationsManager),
        logger=Mock(spec=OperationLogger),
    )


def context(role, dry_run=False, **props):
    account = ACCOUNTS[role]
    return EnvironmentContext(
        management_account_id=ACCOUNTS[AccountRole.MANAGEMENT].id,
        account=account,
        region='us-east-1',
        role=role,
        dry_run=dry_run,
        log_prefix=f"{account.label}:us-east-1",
        props={'delegated_admin_account_id': ADMIN_ID, **props},
    )


def with_detector(client, status='ENABLED', frequency='SIX_HOURS'):
    client.list_detectors.return_value = {'DetectorIds': ['det-1']}
    client.get_detector.return_value = {'Status': status, 'FindingPublishingFrequency': frequency}


class TestGuardDutyEnable:
    """Test cases for enabling GuardDuty in one environment."""

    def test_workload_creates_detector(self, module, guardduty):
        """Test a detector is created where none exists."""
        status = module.enable_environment(context(AccountRole.WORKLOAD))

        guardduty.create_detector.assert_called_once_with(Enable=True, FindingPublishingFrequency='SIX_HOURS')
        assert status == "GuardDuty detector created"
        guardduty.enable_organization_admin_account.assert_not_called()

    def test_existing_detector_is_noop(self, module, guardduty):
        """Test an enabled detector with the desired frequency is left alone."""
        with_detector(guardduty)

        module.enable_environment(context(AccountRole.WORKLOAD))

        guardduty.create_detector.assert_not_called()
        guardduty.update_detector.assert_not_called()

    def test_detector_updated_on_drift(self, module, guardduty):
        """Test a detector with another frequency is updated."""
        with_detector(guardduty, frequency='SIX_HOURS')

        module.enable_environment(context(AccountRole.WORKLOAD, finding_publishing_frequency='ONE_HOUR'))

        guardduty.update_detector.assert_called_once_with(
            DetectorId='det-1', Enable=True, FindingPublishingFrequency='ONE_HOUR'
        )

    def test_management_registers_admin(self, module, guardduty):
        """Test the management account registers the delegated admin."""
        module.enable_environment(context(AccountRole.MANAGEMENT))

        guardduty.enable_organization_admin_account.assert_called_once_with(AdminAccountId=ADMIN_ID)

    def test_management_admin_already_set(self, module, guardduty):
        """Test an existing matching admin is not registered again."""
        guardduty.list_organization_admin_accounts.return_value = {
            'AdminAccounts': [{'AdminAccountId': ADMIN_ID, 'AdminStatus': 'ENABLED'}]
        }

        module.enable_environment(context(AccountRole.MANAGEMENT))

        guardduty.enable_organization_admin_account.assert_not_called()

    def test_management_admin_conflict(self, module, guardduty):
        """Test a different existing admin is a conflict."""
        guardduty.list_organization_admin_accounts.return_value = {
            'AdminAccounts': [{'AdminAccountId': '444444444444', 'AdminStatus': 'ENABLED'}]
        }

        with pytest.raises(ResourceConflictError) as exc_info:
            module.enable_environment(context(AccountRole.MANAGEMENT))

        assert 'already set to 444444444444' in str(exc_info.value)

    def test_admin_turns_on_auto_enable(self, module, guardduty):
        """Test the delegated admin auto-enables every member."""
        module.enable_environment(context(AccountRole.DELEGATED_ADMIN))

        guardduty.update_organization_configuration.assert_called_once_with(
            DetectorId='det-new', AutoEnableOrganizationMembers='ALL'
        )

    def test_admin_auto_enable_already_on(self, module, guardduty):
        """Test auto-enable is not updated when already ALL."""
        guardduty.describe_organization_configuration.return_value = {'AutoEnableOrganizationMembers': 'ALL'}

        module.enable_environment(context(AccountRole.DELEGATED_ADMIN))

        guardduty.update_organization_configuration.assert_not_called()

    def test_dry_run_makes_no_mutating_calls(self, module, guardduty):
        """Test dry-run only reads."""
        for role in AccountRole:
            module.enable_environment(context(role, dry_run=True))

        guardduty.create_detector.assert_not_called()
        guardduty.enable_organization_admin_account.assert_not_called()
        guardduty.update_organization_configuration.assert_not_called()
        assert module.logger.dry_run.call_count == 5


class TestGuardDutyDisable:
    """Test cases for disabling GuardDuty in one environment."""

    def test_workload_deletes_detector(self, module, guardduty):
        """Test workload detectors are deleted."""
        with_detector(guardduty)

        module.disable_environment(context(AccountRole.WORKLOAD))

        guardduty.delete_detector.assert_called_once_with(DetectorId='det-1')

    def test_workload_without_detector(self, module, guardduty):
        """Test a missing detector is already disabled."""
        status = module.disable_environment(context(AccountRole.WORKLOAD))

        assert status == "GuardDuty detector already absent"
        guardduty.delete_detector.assert_not_called()

    def test_admin_turns_off_auto_enable(self, module, guardduty):
        """Test the delegated admin stops auto-enabling members."""
        with_detector(guardduty)

        module.disable_environment(context(AccountRole.DELEGATED_ADMIN))

        guardduty.update_organization_configuration.assert_called_once_with(
            DetectorId='det-1', AutoEnableOrganizationMembers='NONE'
        )
        guardduty.delete_detector.assert_not_called()

    def test_management_removes_admin(self, module, guardduty):
        """Test the management account deregisters the admin."""
        guardduty.list_organization_admin_accounts.return_value = {
            'AdminAccounts': [{'AdminAccountId': ADMIN_ID, 'AdminStatus': 'ENABLED'}]
        }

        module.disable_environment(context(AccountRole.MANAGEMENT))

        guardduty.disable_organization_admin_account.assert_called_once_with(AdminAccountId=ADMIN_ID)

    def test_cleanup_deletes_detector(self, module, guardduty):
        """Test cleanup removes administrator detectors."""
        with_detector(guardduty)

        module.cleanup_environment(context(AccountRole.DELEGATED_ADMIN))

        guardduty.delete_detector.assert_called_once_with(DetectorId='det-1')
