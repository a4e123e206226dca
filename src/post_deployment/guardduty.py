"""GuardDuty organization-wide setup and centralized management.

This module handles GuardDuty detector lifecycle in every account and
region, delegated administrator registration from the management
account, and organization auto-enable from the delegated administrator.
"""

from typing import List, Optional

from src.core.provider import ErrorKind, ProviderClient, ProviderError
from src.core.throttle import throttling_backoff
from src.post_deployment.service_module import (
    AccountRole,
    EnvironmentContext,
    SecurityServiceModule,
)
from src.prerequisites.provisioning import ResourceConflictError


DEFAULT_FINDING_PUBLISHING_FREQUENCY = "SIX_HOURS"


class GuardDutyOrganizationError(Exception):
    """Raised when GuardDuty organization setup fails."""
    pass


class GuardDutyModule(SecurityServiceModule):
    """Enables or disables GuardDuty across the organization."""

    module_name = "guardduty"
    service_name = "Amazon GuardDuty"

    def _frequency(self, context: EnvironmentContext) -> str:
        return context.props.get('finding_publishing_frequency', DEFAULT_FINDING_PUBLISHING_FREQUENCY)

    def get_detector_id(self, client: ProviderClient) -> Optional[str]:
        response = throttling_backoff(lambda: client.send('list_detectors'))
        detector_ids = response.get('DetectorIds') or []
        return detector_ids[0] if detector_ids else None

    def get_organization_admin(self, client: ProviderClient) -> Optional[str]:
        """Currently enabled GuardDuty administrator of the organization."""
        response = throttling_backoff(lambda: client.send('list_organization_admin_accounts'))
        for admin in response.get('AdminAccounts') or []:
            if admin.get('AdminStatus') == 'ENABLED':
                return admin['AdminAccountId']
        return None

    def enable_environment(self, context: EnvironmentContext) -> str:
        client = self.get_client('guardduty', context)
        statuses: List[str] = []
        detector_id = self._ensure_detector(client, context, statuses)

        if context.role is AccountRole.MANAGEMENT:
            self._ensure_organization_admin(client, context, statuses)
        elif context.role is AccountRole.DELEGATED_ADMIN:
            self._ensure_auto_enable(client, context, detector_id, 'ALL', statuses)

        return '\n'.join(statuses)

    def disable_environment(self, context: EnvironmentContext) -> str:
        client = self.get_client('guardduty', context)
        statuses: List[str] = []

        if context.role is AccountRole.DELEGATED_ADMIN:
            detector_id = self.get_detector_id(client)
            if detector_id:
                self._ensure_auto_enable(client, context, detector_id, 'NONE', statuses)
            else:
                statuses.append("No detector, organization auto-enable already off")
        elif context.role is AccountRole.MANAGEMENT:
            self._remove_organization_admin(client, context, statuses)
        else:
            self._delete_detector(client, context, statuses)

        return '\n'.join(statuses)

    def cleanup_environment(self, context: EnvironmentContext) -> str:
        client = self.get_client('guardduty', context)
        statuses: List[str] = []
        self._delete_detector(client, context, statuses)
        return '\n'.join(statuses)

    def _ensure_detector(self, client: ProviderClient, context: EnvironmentContext, statuses: List[str]) -> Optional[str]:
        frequency = self._frequency(context)
        detector_id = self.get_detector_id(client)

        if detector_id is None:
            response = self.mutate(
                context, client, 'create_detector',
                Enable=True, FindingPublishingFrequency=frequency,
            )
            statuses.append("GuardDuty detector created")
            return response['DetectorId'] if response else None

        detector = throttling_backoff(lambda: client.send('get_detector', DetectorId=detector_id))
        if detector.get('Status') == 'ENABLED' and detector.get('FindingPublishingFrequency') == frequency:
            statuses.append(f"GuardDuty detector {detector_id} already enabled")
            return detector_id

        self.mutate(
            context, client, 'update_detector',
            DetectorId=detector_id, Enable=True, FindingPublishingFrequency=frequency,
        )
        statuses.append(f"GuardDuty detector {detector_id} updated")
        return detector_id

    def _delete_detector(self, client: ProviderClient, context: EnvironmentContext, statuses: List[str]) -> None:
        detector_id = self.get_detector_id(client)
        if detector_id is None:
            statuses.append("GuardDuty detector already absent")
            return
        self.mutate(context, client, 'delete_detector', DetectorId=detector_id)
        statuses.append(f"GuardDuty detector {detector_id} deleted")

    def _ensure_organization_admin(self, client: ProviderClient, context: EnvironmentContext, statuses: List[str]) -> None:
        desired = context.delegated_admin_account_id
        current = self.get_organization_admin(client)

        if current == desired:
            statuses.append(f"GuardDuty admin account is already set to {desired}")
            return
        if current is not None:
            raise ResourceConflictError(
                f"InvalidInput: GuardDuty delegated admin is already set to {current} account, "
                f"cannot assign another delegated account {desired}. "
                "Please remove the existing delegated admin and retry."
            )

        try:
            self.mutate(context, client, 'enable_organization_admin_account', AdminAccountId=desired)
        except ProviderError as e:
            if e.kind is not ErrorKind.ALREADY_EXISTS:
                raise GuardDutyOrganizationError(
                    f"Failed to set GuardDuty admin account {desired}: {e}"
                ) from e
        statuses.append(f"GuardDuty admin account set to {desired}")

    def _remove_organization_admin(self, client: ProviderClient, context: EnvironmentContext, statuses: List[str]) -> None:
        desired = context.delegated_admin_account_id
        current = self.get_organization_admin(client)

        if current is None:
            statuses.append("GuardDuty admin account is not set")
            return
        if desired and current != desired:
            raise ResourceConflictError(
                f"InvalidInput: GuardDuty delegated admin is set to {current} account, "
                f"cannot remove configured delegated account {desired}"
            )

        self.mutate(context, client, 'disable_organization_admin_account', AdminAccountId=current)
        statuses.append(f"GuardDuty admin account {current} removed")

    def _ensure_auto_enable(
        self,
        client: ProviderClient,
        context: EnvironmentContext,
        detector_id: Optional[str],
        auto_enable: str,
        statuses: List[str],
    ) -> None:
        if detector_id is None:
            # dry run only: the detector was not created
            self.logger.dry_run(
                'update_organization_configuration',
                {'AutoEnableOrganizationMembers': auto_enable},
                context.log_prefix,
            )
            statuses.append(f"Organization auto-enable set to {auto_enable}")
            return

        current = throttling_backoff(lambda: client.send(
            'describe_organization_configuration', DetectorId=detector_id
        ))
        if current.get('AutoEnableOrganizationMembers') == auto_enable:
            statuses.append(f"Organization auto-enable already {auto_enable}")
            return

        self.mutate(
            context, client, 'update_organization_configuration',
            DetectorId=detector_id, AutoEnableOrganizationMembers=auto_enable,
        )
        statuses.append(f"Organization auto-enable set to {auto_enable}")
