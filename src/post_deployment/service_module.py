"""Organization-wide security service enablement.

A security service module turns one service (GuardDuty, Macie) on or
off across every account and region of the organization. It resolves
the in-scope regions, orders the accounts so that the management
account registers the delegated administrator before the
administrator configures the organization, and fans the per-account,
per-region work out through the BatchOrchestrator.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from src.core.aws_client import AWSClientManager, Credentials
from src.core.boundaries import (
    BoundaryContext,
    BoundaryFilters,
    BoundaryResolver,
    BoundaryType,
    validate_region_filters,
)
from src.core.config import ConfigurationError
from src.core.credentials import CredentialBroker, CredentialCache
from src.core.logger import OperationLogger
from src.core.provider import ProviderClient
from src.core.throttle import throttling_backoff
from src.orchestration.batch_processor import BatchOrchestrator
from src.orchestration.models import AccountTarget, ConcurrencySettings, OrderedAccountBatch
from src.prerequisites.organizations import OrganizationsManager


DEFAULT_ACCOUNT_ACCESS_ROLE = "AWSControlTowerExecution"


class ServiceModuleError(Exception):
    """Raised when a security service module cannot run."""
    pass


class ModuleStatus(Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class AccountRole(Enum):
    """Part an account plays in a security service rollout."""

    MANAGEMENT = "Management"
    DELEGATED_ADMIN = "DelegatedAdmin"
    WORKLOAD = "WorkLoads"


ENABLE_ORDER = {AccountRole.MANAGEMENT: 1, AccountRole.DELEGATED_ADMIN: 2, AccountRole.WORKLOAD: 3}
DISABLE_ORDER = {AccountRole.DELEGATED_ADMIN: 1, AccountRole.MANAGEMENT: 2, AccountRole.WORKLOAD: 3}


@dataclass
class ModuleResponse:
    """Result of one module run."""

    module_name: str
    status: ModuleStatus
    summary: str
    dry_run: bool
    timestamp: float = field(default_factory=time.time)
    error_name: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'module_name': self.module_name,
            'status': self.status.value,
            'summary': self.summary,
            'dry_run': self.dry_run,
            'timestamp': self.timestamp,
        }
        if self.error_name:
            result['error'] = {'name': self.error_name, 'message': self.error_message}
        return result


@dataclass(frozen=True)
class SecurityServiceSettings:
    """Configuration of one security service module.

    Attributes:
        enable: Whether the service is enabled or disabled
        delegated_admin_account_id: Account administering the service
        account_access_role_name: Role assumed in member accounts
        region_filters: Ignore/disable region filters
        regions: Region universe override; None lists regions from EC2
        options: Service specific settings passed to handlers
    """

    enable: bool
    delegated_admin_account_id: Optional[str] = None
    account_access_role_name: str = DEFAULT_ACCOUNT_ACCESS_ROLE
    region_filters: BoundaryFilters = field(default_factory=BoundaryFilters)
    regions: Optional[Tuple[str, ...]] = None
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        account_access_role_name: Optional[str] = None,
    ) -> 'SecurityServiceSettings':
        """Build settings from a security_services.<name> section.

        Raises:
            ConfigurationError: When filters are inconsistent
        """
        known = {
            'enable', 'delegated_admin_account_id', 'account_access_role_name',
            'region_filters', 'regions',
        }
        regions = data.get('regions')
        return cls(
            enable=bool(data.get('enable', False)),
            delegated_admin_account_id=data.get('delegated_admin_account_id'),
            account_access_role_name=(
                data.get('account_access_role_name')
                or account_access_role_name
                or DEFAULT_ACCOUNT_ACCESS_ROLE
            ),
            region_filters=BoundaryFilters.from_dict(data.get('region_filters')),
            regions=tuple(regions) if regions is not None else None,
            options={key: value for key, value in data.items() if key not in known},
        )


@dataclass(frozen=True)
class EnvironmentContext:
    """Everything a handler needs for one (account, region) task."""

    management_account_id: str
    account: AccountTarget
    region: str
    role: AccountRole
    dry_run: bool
    log_prefix: str
    props: Dict[str, Any]
    organization_accounts: Tuple[AccountTarget, ...] = ()

    @property
    def credentials(self) -> Optional[Credentials]:
        return self.props.get('credentials')

    @property
    def delegated_admin_account_id(self) -> Optional[str]:
        return self.props.get('delegated_admin_account_id')


class SecurityServiceModule(ABC):
    """Base class for organization-wide security service modules.

    Subclasses set module_name and service_name and implement
    enable_environment, disable_environment and cleanup_environment.

    Args:
        aws_client: Client manager of the management account
        settings: Module settings
        partition: AWS partition
        home_region: Region for STS, EC2 and Organizations calls
        concurrency: Worker pool bounds
        orchestrator: Batch orchestrator; built when omitted
        broker: Credential broker; built when omitted
        credential_cache: Credential cache shared across tasks
        boundary_resolver: Region resolver; built when omitted
        organizations: Organizations manager; built when omitted
        logger: Operation logger
    """

    module_name = ""
    service_name = ""

    def __init__(
        self,
        aws_client: AWSClientManager,
        settings: SecurityServiceSettings,
        partition: str = "aws",
        home_region: Optional[str] = None,
        concurrency: Optional[ConcurrencySettings] = None,
        orchestrator: Optional[BatchOrchestrator] = None,
        broker: Optional[CredentialBroker] = None,
        credential_cache: Optional[CredentialCache] = None,
        boundary_resolver: Optional[BoundaryResolver] = None,
        organizations: Optional[OrganizationsManager] = None,
        logger: Optional[OperationLogger] = None,
    ) -> None:
        self.aws_client = aws_client
        self.settings = settings
        self.partition = partition
        self.home_region = home_region or aws_client.get_current_region()
        self.concurrency = concurrency or ConcurrencySettings()
        self.logger = logger or OperationLogger(logging.getLogger(f"{__name__}.{self.module_name}"))
        self.orchestrator = orchestrator or BatchOrchestrator(self.logger, self.concurrency)
        self.broker = broker or CredentialBroker(aws_client, self.logger)
        self.credential_cache = credential_cache or CredentialCache()
        self.boundary_resolver = boundary_resolver or BoundaryResolver(aws_client, self.logger)
        self.organizations = organizations or OrganizationsManager(aws_client, self.home_region, self.logger)

    def configure(self, invoking_account_id: str, dry_run: bool = False) -> ModuleResponse:
        """Apply the module settings across the organization.

        Args:
            invoking_account_id: Account the tool runs in; must be the
                organization management account
            dry_run: Avoid every mutating call

        Returns:
            ModuleResponse, FAILED when any step raised
        """
        self.logger.process_start(f"{self.service_name} configuration", self.module_name)
        try:
            summary = self._configure(invoking_account_id, dry_run)
        except Exception as e:
            self.logger.error(f"{self.service_name} configuration failed: {e}", self.module_name)
            return ModuleResponse(
                module_name=self.module_name,
                status=ModuleStatus.FAILED,
                summary=f"{self.service_name} configuration failed",
                dry_run=dry_run,
                error_name=type(e).__name__,
                error_message=str(e),
            )

        self.logger.process_end(f"{self.service_name} configuration", self.module_name)
        return ModuleResponse(
            module_name=self.module_name,
            status=ModuleStatus.COMPLETED,
            summary=summary,
            dry_run=dry_run,
        )

    def _configure(self, invoking_account_id: str, dry_run: bool) -> str:
        settings = self.settings
        validate_region_filters(settings.enable, settings.region_filters, self.logger, self.module_name)

        if not self.organizations.is_management_account(invoking_account_id):
            raise ServiceModuleError(
                f"{self.service_name} must be configured from the organization management account, "
                f"not {invoking_account_id}"
            )

        accounts = self.organizations.get_organization_accounts()
        admin_id = settings.delegated_admin_account_id
        if admin_id and admin_id not in {account.id for account in accounts}:
            raise ConfigurationError(
                f"Delegated administrator {admin_id} is not a member of the organization"
            )
        if settings.enable and admin_id == invoking_account_id:
            raise ConfigurationError(
                "The management account cannot be its own delegated administrator"
            )

        boundaries = self.boundary_resolver.resolve_enabled(
            BoundaryType.REGIONS,
            settings.enable,
            BoundaryContext(self.partition, self.home_region),
            all_boundaries=list(settings.regions) if settings.regions is not None else None,
            filters=settings.region_filters,
        )

        props = {
            **settings.options,
            'delegated_admin_account_id': admin_id,
            'partition': self.partition,
        }
        roles = self._account_roles(accounts, invoking_account_id)

        if boundaries.enabled:
            self.orchestrator.run_enable(
                self.service_name, invoking_account_id,
                self._build_batches(accounts, roles, ENABLE_ORDER),
                boundaries.enabled, props, dry_run,
                self._handler(roles, self.enable_environment),
                concurrency=self.concurrency,
                environment_setup=self._setup_environment,
                organization_accounts=accounts,
            )

        if boundaries.disabled:
            self.orchestrator.run_disable(
                self.service_name, invoking_account_id,
                self._build_batches(accounts, roles, DISABLE_ORDER),
                boundaries.disabled, props, dry_run,
                self._handler(roles, self.disable_environment),
                concurrency=self.concurrency,
                environment_setup=self._setup_environment,
                organization_accounts=accounts,
            )
            administrators = [
                account for account in accounts
                if roles[account.id] is not AccountRole.WORKLOAD
            ]
            self.orchestrator.run(
                self.service_name, 'cleanup', invoking_account_id,
                administrators, boundaries.disabled, props, dry_run,
                self._handler(roles, self.cleanup_environment),
                concurrency=self.concurrency,
                environment_setup=self._setup_environment,
                organization_accounts=accounts,
            )

        return (
            f"{self.service_name} enabled in {len(boundaries.enabled)} regions and "
            f"disabled in {len(boundaries.disabled)} regions across {len(accounts)} accounts"
        )

    def _account_roles(self, accounts: List[AccountTarget], management_id: str) -> Dict[str, AccountRole]:
        roles = {}
        for account in accounts:
            if account.id == management_id:
                roles[account.id] = AccountRole.MANAGEMENT
            elif account.id == self.settings.delegated_admin_account_id:
                roles[account.id] = AccountRole.DELEGATED_ADMIN
            else:
                roles[account.id] = AccountRole.WORKLOAD
        return roles

    @staticmethod
    def _build_batches(
        accounts: List[AccountTarget],
        roles: Dict[str, AccountRole],
        order: Dict[AccountRole, int],
    ) -> List[OrderedAccountBatch]:
        return [
            OrderedAccountBatch(
                name=role.value,
                order=position,
                accounts=tuple(account for account in accounts if roles[account.id] is role),
            )
            for role, position in order.items()
        ]

    def _setup_environment(
        self,
        account: AccountTarget,
        management_account_id: str,
        props: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """Attach credentials for member accounts; the management account runs as itself."""
        if account.id == management_account_id:
            return None

        credentials = self.credential_cache.get_or_create(
            account.id,
            lambda: self.broker.get_credentials(
                account.id,
                self.home_region,
                partition=self.partition,
                assume_role_name=self.settings.account_access_role_name,
                log_prefix=account.label,
            ),
        )
        return {'credentials': credentials}

    def _handler(self, roles: Dict[str, AccountRole], action):
        def handle(management_account_id, account, region, dry_run, log_prefix, props, organization_accounts):
            context = EnvironmentContext(
                management_account_id=management_account_id,
                account=account,
                region=region,
                role=roles[account.id],
                dry_run=dry_run,
                log_prefix=log_prefix,
                props=props,
                organization_accounts=tuple(organization_accounts or ()),
            )
            return action(context)
        return handle

    def get_client(self, service_name: str, context: EnvironmentContext) -> ProviderClient:
        return self.aws_client.get_client(service_name, context.region, credentials=context.credentials)

    def mutate(
        self,
        context: EnvironmentContext,
        client: ProviderClient,
        operation_name: str,
        **parameters: Any,
    ) -> Optional[Dict[str, Any]]:
        """Issue a mutating call, or only log it in dry-run mode."""
        if context.dry_run:
            self.logger.dry_run(operation_name, parameters, context.log_prefix)
            return None
        self.logger.command_execution(operation_name, context.log_prefix)
        response = throttling_backoff(lambda: client.send(operation_name, **parameters))
        self.logger.command_success(operation_name, context.log_prefix)
        return response

    @abstractmethod
    def enable_environment(self, context: EnvironmentContext) -> str:
        """Turn the service on in one account and region."""

    @abstractmethod
    def disable_environment(self, context: EnvironmentContext) -> str:
        """Turn the service off in one account and region."""

    @abstractmethod
    def cleanup_environment(self, context: EnvironmentContext) -> str:
        """Remove administrator leftovers once the service is off."""
