"""Post-deployment orchestration for security services coordination.

This module runs the configured security service modules one after
another from the management account and aggregates their responses.
"""

from typing import Any, Dict, List, Optional, Type
import logging

from ..core.aws_client import AWSClientManager
from ..core.config import Configuration
from ..core.credentials import CredentialBroker, CredentialCache
from ..core.logger import OperationLogger
from ..orchestration.models import ConcurrencySettings
from .guardduty import GuardDutyModule
from .macie import MacieModule
from .service_module import ModuleStatus, SecurityServiceModule, SecurityServiceSettings


logger = logging.getLogger(__name__)

SERVICE_MODULES: Dict[str, Type[SecurityServiceModule]] = {
    'guardduty': GuardDutyModule,
    'macie': MacieModule,
}


class PostDeploymentOrchestrationError(Exception):
    """Raised when post-deployment orchestration fails."""

    def __init__(self, message: str, results: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.results = results or {}


class PostDeploymentOrchestrator:
    """Orchestrates organization-wide security services setup."""

    def __init__(
        self,
        config: Configuration,
        aws_client: AWSClientManager,
        operation_logger: Optional[OperationLogger] = None,
    ):
        """Initialize post-deployment orchestrator.

        Args:
            config: Configuration instance
            aws_client: AWS client manager instance
            operation_logger: Operation logger shared by the modules
        """
        self.config = config
        self.aws_client = aws_client
        self.operation_logger = operation_logger or OperationLogger(logger)
        self.concurrency = ConcurrencySettings.from_dict(config.get_orchestration_config())
        self.broker = CredentialBroker(aws_client, self.operation_logger)
        self.credential_cache = CredentialCache()

    def build_modules(self, services: Optional[List[str]] = None) -> List[SecurityServiceModule]:
        """Instantiate modules for the configured services.

        Args:
            services: Service keys to run; defaults to every configured one

        Returns:
            Modules in configuration order

        Raises:
            PostDeploymentOrchestrationError: When a service is unknown
        """
        names = services or self.config.get_configured_security_services()
        role_name = self.config.get('accounts.account_access_role_name')
        governed_regions = self.config.get_governed_regions()
        modules = []

        for name in names:
            module_class = SERVICE_MODULES.get(name)
            if module_class is None:
                raise PostDeploymentOrchestrationError(
                    f"Unknown security service '{name}'. Supported: {', '.join(SERVICE_MODULES)}"
                )
            service_config = self.config.get_security_service_config(name)
            if governed_regions and 'regions' not in service_config:
                service_config['regions'] = governed_regions
            settings = SecurityServiceSettings.from_dict(service_config, role_name)
            modules.append(module_class(
                self.aws_client,
                settings,
                partition=self.config.get_partition(),
                home_region=self.config.get_home_region(),
                concurrency=self.concurrency,
                broker=self.broker,
                credential_cache=self.credential_cache,
                logger=self.operation_logger,
            ))

        return modules

    def orchestrate_security_baseline(
        self,
        invoking_account_id: str,
        dry_run: bool = False,
        services: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Run every configured security service module.

        Args:
            invoking_account_id: Management account ID
            dry_run: Avoid every mutating call
            services: Service keys to run; defaults to every configured one

        Returns:
            Dict of module responses keyed by module name, plus overall_status

        Raises:
            PostDeploymentOrchestrationError: When any module fails
        """
        results: Dict[str, Any] = {'overall_status': 'in_progress'}
        logger.info("Starting security baseline orchestration")

        failed = []
        for module in self.build_modules(services):
            logger.info(f"Configuring {module.service_name}")
            response = module.configure(invoking_account_id, dry_run=dry_run)
            results[module.module_name] = response.to_dict()
            if response.status is ModuleStatus.FAILED:
                failed.append(f"{module.module_name}: {response.error_message}")

        if failed:
            results['overall_status'] = 'failed'
            logger.error(f"Security baseline orchestration failed: {'; '.join(failed)}")
            raise PostDeploymentOrchestrationError(
                f"Orchestration failed: {'; '.join(failed)}", results
            )

        results['overall_status'] = 'success'
        logger.info("Security baseline orchestration completed successfully")
        return results
