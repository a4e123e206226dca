"""AWS Organizations management for the governance baseline.

This module lists organization accounts for fan-out, verifies the
management account and creates organizational units idempotently.
"""

from typing import Any, Dict, List, Optional

from src.core.aws_client import AWSClientManager
from src.core.logger import OperationLogger
from src.core.provider import ProviderClient, ProviderError
from src.core.throttle import throttling_backoff
from src.orchestration.models import AccountTarget
from src.prerequisites.provisioning import ProvisioningResult, generate_dry_run_response


MODULE_NAME = "organizations"


class OrganizationsError(Exception):
    """Base exception for Organizations operations."""
    pass


class OrganizationsManager:
    """Manages AWS Organizations lookups and structure.

    Args:
        aws_client: Configured AWS client manager
        region: Region of the Organizations endpoint
        logger: Operation logger
    """

    def __init__(
        self,
        aws_client: AWSClientManager,
        region: Optional[str] = None,
        logger: Optional[OperationLogger] = None,
    ) -> None:
        self.aws_client = aws_client
        self.region = region
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
                self.region or self.aws_client.get_current_region()
            )
        return self._org_client

    def get_organization_info(self) -> Dict[str, Any]:
        """Get organization information.

        Returns:
            Dictionary containing organization details

        Raises:
            OrganizationsError: When unable to get organization info
        """
        client = self._get_client()
        try:
            response = throttling_backoff(lambda: client.send('describe_organization'))
        except ProviderError as e:
            raise OrganizationsError(f"Failed to get organization info: {e}") from e
        return response['Organization']

    def get_management_account_id(self) -> str:
        return self.get_organization_info()['MasterAccountId']

    def is_management_account(self, account_id: str) -> bool:
        """Check whether account_id is the organization management account."""
        return self.get_management_account_id() == account_id

    def get_organization_accounts(self) -> List[AccountTarget]:
        """List every account of the organization.

        Returns:
            AccountTarget list in provider order

        Raises:
            OrganizationsError: When listing fails
        """
        client = self._get_client()
        try:
            accounts = throttling_backoff(lambda: client.paginate('list_accounts', 'Accounts'))
        except ProviderError as e:
            raise OrganizationsError(f"Failed to list accounts: {e}") from e
        return [AccountTarget.from_organizations(account) for account in accounts]

    def get_root_id(self) -> str:
        """Get the root ID of the organization.

        Returns:
            Root ID string

        Raises:
            OrganizationsError: When unable to get root ID
        """
        client = self._get_client()
        try:
            roots = throttling_backoff(lambda: client.paginate('list_roots', 'Roots'))
        except ProviderError as e:
            raise OrganizationsError(f"Failed to get root ID: {e}") from e

        if not roots:
            raise OrganizationsError("No roots found in organization")
        return roots[0]['Id']

    def list_organizational_units(self, parent_id: str) -> List[Dict[str, Any]]:
        """List organizational units under a parent.

        Args:
            parent_id: ID of the parent (root or OU)

        Returns:
            List of organizational unit details
        """
        client = self._get_client()
        try:
            return throttling_backoff(lambda: client.paginate(
                'list_organizational_units_for_parent', 'OrganizationalUnits', ParentId=parent_id
            ))
        except ProviderError as e:
            raise OrganizationsError(f"Failed to list OUs: {e}") from e

    def ensure_organizational_unit(
        self,
        name: str,
        parent_id: str,
        dry_run: bool = False,
    ) -> ProvisioningResult:
        """Create an organizational unit unless one with the name exists.

        Args:
            name: Name of the organizational unit
            parent_id: ID of the parent (root or OU)
            dry_run: Report what would happen without creating

        Returns:
            ProvisioningResult with the OU ID as resource_id

        Raises:
            OrganizationsError: When creation fails
        """
        for ou in self.list_organizational_units(parent_id):
            if ou['Name'] == name:
                message = f"Organizational unit '{name}' already exists"
                if dry_run:
                    message = generate_dry_run_response(MODULE_NAME, "create-ou", message)
                return ProvisioningResult(
                    changed=False, message=message, resource_id=ou['Id'], dry_run=dry_run
                )

        if dry_run:
            self.logger.dry_run("CreateOrganizationalUnit", {"Name": name, "ParentId": parent_id})
            return ProvisioningResult(
                changed=False,
                message=generate_dry_run_response(
                    MODULE_NAME, "create-ou", f"Will create organizational unit '{name}'"
                ),
                dry_run=True,
            )

        client = self._get_client()
        try:
            response = throttling_backoff(lambda: client.send(
                'create_organizational_unit', ParentId=parent_id, Name=name
            ))
        except ProviderError as e:
            raise OrganizationsError(f"Failed to create OU '{name}': {e}") from e

        ou = response['OrganizationalUnit']
        return ProvisioningResult(
            changed=True, message=f"Organizational unit '{name}' created", resource_id=ou['Id']
        )
