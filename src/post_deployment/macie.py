"""Amazon Macie organization-wide setup.

This module enables the Macie session in every account and region,
registers the delegated administrator from the management account and
keeps the administrator's member list in step with the organization.
"""

from typing import Any, Dict, List, Optional

from src.core.provider import ErrorKind, ProviderClient, ProviderError
from src.core.throttle import throttling_backoff
from src.post_deployment.service_module import (
    AccountRole,
    EnvironmentContext,
    SecurityServiceModule,
)
from src.prerequisites.provisioning import ResourceConflictError


DEFAULT_FINDING_PUBLISHING_FREQUENCY = "FIFTEEN_MINUTES"


class MacieOrganizationError(Exception):
    """Raised when Macie organization setup fails."""
    pass


class MacieModule(SecurityServiceModule):
    """Enables or disables Amazon Macie across the organization."""

    module_name = "macie"
    service_name = "Amazon Macie"

    def get_session(self, client: ProviderClient) -> Optional[Dict[str, Any]]:
        """Macie session of the account, None when Macie is not enabled."""
        try:
            return throttling_backoff(lambda: client.send('get_macie_session'))
        except ProviderError as e:
            if e.kind in (ErrorKind.ACCESS_DENIED, ErrorKind.NOT_FOUND):
                return None
            raise

    def get_organization_admin(self, client: ProviderClient) -> Optional[str]:
        response = throttling_backoff(lambda: client.send('list_organization_admin_accounts'))
        for admin in response.get('adminAccounts') or []:
            if admin.get('status') == 'ENABLED':
                return admin['accountId']
        return None

    def enable_environment(self, context: EnvironmentContext) -> str:
        client = self.get_client('macie2', context)
        statuses: List[str] = []
        self._ensure_session(client, context, statuses)

        if context.role is AccountRole.MANAGEMENT:
            self._ensure_organization_admin(client, context, statuses)
        elif context.role is AccountRole.DELEGATED_ADMIN:
            self._add_members(client, context, statuses)

        return '\n'.join(statuses)

    def disable_environment(self, context: EnvironmentContext) -> str:
        client = self.get_client('macie2', context)
        statuses: List[str] = []

        if context.role is AccountRole.DELEGATED_ADMIN:
            if self.get_session(client) is None:
                statuses.append("Macie is not enabled, no members to remove")
            else:
                self._remove_members(client, context, statuses)
        elif context.role is AccountRole.MANAGEMENT:
            self._remove_organization_admin(client, context, statuses)
        else:
            self._disable_session(client, context, statuses)

        return '\n'.join(statuses)

    def cleanup_environment(self, context: EnvironmentContext) -> str:
        client = self.get_client('macie2', context)
        statuses: List[str] = []
        self._disable_session(client, context, statuses)
        return '\n'.join(statuses)

    def _ensure_session(self, client: ProviderClient, context: EnvironmentContext, statuses: List[str]) -> None:
        frequency = context.props.get('finding_publishing_frequency', DEFAULT_FINDING_PUBLISHING_FREQUENCY)
        session = self.get_session(client)

        if session is None:
            self.mutate(
                context, client, 'enable_macie',
                status='ENABLED', findingPublishingFrequency=frequency,
            )
            statuses.append(f"Macie enabled in {context.region}")
            return

        if session.get('status') == 'ENABLED' and session.get('findingPublishingFrequency') == frequency:
            statuses.append(f"Macie already enabled in {context.region}")
            return

        self.mutate(
            context, client, 'update_macie_session',
            status='ENABLED', findingPublishingFrequency=frequency,
        )
        statuses.append(f"Macie session updated in {context.region}")

    def _disable_session(self, client: ProviderClient, context: EnvironmentContext, statuses: List[str]) -> None:
        if self.get_session(client) is None:
            statuses.append(f"Macie is already disabled in {context.region}")
            return
        self.mutate(context, client, 'disable_macie')
        statuses.append(f"Macie disabled in {context.region}")

    def _ensure_organization_admin(self, client: ProviderClient, context: EnvironmentContext, statuses: List[str]) -> None:
        desired = context.delegated_admin_account_id
        current = self.get_organization_admin(client)

        if current == desired:
            statuses.append(f"Macie admin account is already set to {desired}")
            return
        if current is not None:
            raise ResourceConflictError(
                f"InvalidInput: Macie delegated admin is already set to {current} account, "
                f"cannot assign another delegated account {desired}. "
                "Please remove the existing delegated admin and retry."
            )

        try:
            self.mutate(context, client, 'enable_organization_admin_account', adminAccountId=desired)
        except ProviderError as e:
            if e.kind is not ErrorKind.ALREADY_EXISTS:
                raise MacieOrganizationError(f"Failed to set Macie admin account {desired}: {e}") from e
        statuses.append(f"Macie admin account set to {desired}")

    def _remove_organization_admin(self, client: ProviderClient, context: EnvironmentContext, statuses: List[str]) -> None:
        desired = context.delegated_admin_account_id
        current = self.get_organization_admin(client)

        if current is None:
            statuses.append("Macie admin account is not set")
            return
        if desired and current != desired:
            raise ResourceConflictError(
                f"InvalidInput: Macie delegated admin is set to {current} account, "
                f"cannot remove configured delegated account {desired}"
            )

        self.mutate(context, client, 'disable_organization_admin_account', adminAccountId=current)
        statuses.append(f"Macie admin account {current} removed")

    def _list_members(self, client: ProviderClient) -> List[Dict[str, Any]]:
        return throttling_backoff(lambda: client.paginate('list_members', 'members', onlyAssociated='false'))

    def _is_auto_enabled(self, client: ProviderClient) -> bool:
        response = throttling_backoff(lambda: client.send('describe_organization_configuration'))
        return bool(response.get('autoEnable'))

    def _add_members(self, client: ProviderClient, context: EnvironmentContext, statuses: List[str]) -> None:
        admin_id = context.account.id
        members = {member['accountId']: member for member in self._list_members(client)}
        added = 0

        for account in context.organization_accounts:
            if not account.id or account.id == admin_id:
                continue
            member = members.get(account.id)
            if member and member.get('relationshipStatus') != 'Removed':
                continue
            if member:
                self.mutate(context, client, 'delete_member', id=account.id)
            self.mutate(
                context, client, 'create_member',
                account={'accountId': account.id, 'email': account.email},
            )
            added += 1

        statuses.append(f"{added} Macie members added")

        if self._is_auto_enabled(client):
            statuses.append("Organization auto-enable already on")
        else:
            self.mutate(context, client, 'update_organization_configuration', autoEnable=True)
            statuses.append("Organization auto-enable turned on")

    def _remove_members(self, client: ProviderClient, context: EnvironmentContext, statuses: List[str]) -> None:
        admin_id = context.account.id
        removed = 0

        for member in self._list_members(client):
            member_id = member.get('accountId')
            if not member_id or member_id == admin_id:
                continue
            self.mutate(context, client, 'disassociate_member', id=member_id)
            self.mutate(context, client, 'delete_member', id=member_id)
            removed += 1

        statuses.append(f"{removed} Macie members removed")

        if self._is_auto_enabled(client):
            self.mutate(context, client, 'update_organization_configuration', autoEnable=False)
            statuses.append("Organization auto-enable turned off")
