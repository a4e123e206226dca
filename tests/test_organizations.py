"""Unit tests for Organizations Manager."""

import pytest
from unittest.mock import Mock
from botocore.exceptions import ClientError

from src.core.aws_client import AWSClientManager
from src.core.logger import OperationLogger
from src.core.provider import ProviderClient
from src.orchestration.models import AccountTarget
from src.prerequisites.organizations import OrganizationsError, OrganizationsManager


def paginated(pages_by_operation):
    def get_paginator(operation_name):
        paginator = Mock()
        paginator.paginate.return_value = pages_by_operation[operation_name]
        return paginator
    return get_paginator


@pytest.fixture
def organizations():
    client = Mock()
    client.describe_organization.return_value = {
        'Organization': {'Id': 'o-123', 'MasterAccountId': '111111111111'}
    }
    client.get_paginator.side_effect = paginated({
        'list_accounts': [
            {'Accounts': [{'Id': '111111111111', 'Name': 'Management', 'Email': 'm@example.com'}]},
            {'Accounts': [{'Id': '222222222222', 'Name': 'Audit', 'Email': 'a@example.com'}]},
        ],
        'list_roots': [{'Roots': [{'Id': 'r-abcd'}]}],
        'list_organizational_units_for_parent': [
            {'OrganizationalUnits': [{'Id': 'ou-sec', 'Name': 'Security'}]},
        ],
    })
    client.create_organizational_unit.return_value = {'OrganizationalUnit': {'Id': 'ou-new'}}
    return client


@pytest.fixture
def org_manager(organizations):
    aws_client = Mock(spec=AWSClientManager)
    aws_client.get_client.return_value = ProviderClient(organizations, 'organizations', 'us-east-1')
    return OrganizationsManager(aws_client, 'us-east-1', Mock(spec=OperationLogger))


class TestOrganizationsManager:
    """Test cases for OrganizationsManager class."""

    def test_is_management_account(self, org_manager):
        """Test management account detection."""
        assert org_manager.is_management_account('111111111111')
        assert not org_manager.is_management_account('222222222222')

    def test_organization_info_error(self, org_manager, organizations):
        """Test lookup failures are wrapped."""
        organizations.describe_organization.side_effect = ClientError(
            {'Error': {'Code': 'AWSOrganizationsNotInUseException', 'Message': 'no org'}},
            'DescribeOrganization',
        )

        with pytest.raises(OrganizationsError):
            org_manager.get_organization_info()

    def test_get_organization_accounts(self, org_manager):
        """Test accounts from every page become targets."""
        accounts = org_manager.get_organization_accounts()

        assert accounts == [
            AccountTarget('111111111111', 'Management', 'm@example.com'),
            AccountTarget('222222222222', 'Audit', 'a@example.com'),
        ]

    def test_get_root_id(self, org_manager):
        """Test getting the root ID."""
        assert org_manager.get_root_id() == 'r-abcd'

    def test_no_roots(self, org_manager, organizations):
        """Test an organization without roots is an error."""
        organizations.get_paginator.side_effect = paginated({'list_roots': [{'Roots': []}]})

        with pytest.raises(OrganizationsError):
            org_manager.get_root_id()

    def test_existing_ou(self, org_manager, organizations):
        """Test an OU with the same name is reused."""
        result = org_manager.ensure_organizational_unit('Security', 'r-abcd')

        assert not result.changed
        assert result.resource_id == 'ou-sec'
        organizations.create_organizational_unit.assert_not_called()

    def test_create_ou(self, org_manager, organizations):
        """Test a missing OU is created under the parent."""
        result = org_manager.ensure_organizational_unit('Sandbox', 'r-abcd')

        assert result.changed
        assert result.resource_id == 'ou-new'
        organizations.create_organizational_unit.assert_called_once_with(ParentId='r-abcd', Name='Sandbox')

    def test_create_ou_dry_run(self, org_manager, organizations):
        """Test dry-run creates no OU."""
        result = org_manager.ensure_organizational_unit('Sandbox', 'r-abcd', dry_run=True)

        assert result.dry_run
        assert result.resource_id is None
        organizations.create_organizational_unit.assert_not_called()

    def test_ensure_ou_twice_creates_once(self, org_manager, organizations):
        """Test a second run finds the OU created by the first."""
        units = [{'Id': 'ou-sec', 'Name': 'Security'}]

        def get_paginator(operation_name):
            paginator = Mock()
            paginator.paginate.side_effect = lambda **kwargs: [{'OrganizationalUnits': list(units)}]
            return paginator

        def create_organizational_unit(ParentId, Name):
            units.append({'Id': 'ou-new', 'Name': Name})
            return {'OrganizationalUnit': {'Id': 'ou-new'}}

        organizations.get_paginator.side_effect = get_paginator
        organizations.create_organizational_unit.side_effect = create_organizational_unit

        first = org_manager.ensure_organizational_unit('Sandbox', 'r-abcd')
        second = org_manager.ensure_organizational_unit('Sandbox', 'r-abcd')

        assert first.changed
        assert not second.changed
        assert second.resource_id == 'ou-new'
        assert organizations.create_organizational_unit.call_count == 1
