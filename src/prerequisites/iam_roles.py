"""IAM roles management for the governance baseline.

This module creates service roles idempotently: a role is looked up by
name, left alone when its trust policy already names the expected
service principal and its policies are in place, repaired when
policies are missing, rejected when it trusts something else, and
otherwise created and confirmed with the role_exists waiter before
its policies are attached.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from botocore.exceptions import WaiterError

from src.core.aws_client import AWSClientManager
from src.core.logger import OperationLogger
from src.core.provider import ErrorKind, ProviderClient, ProviderError
from src.core.throttle import throttling_backoff
from src.prerequisites.provisioning import (
    ProvisioningError,
    ProvisioningResult,
    ResourceConflictError,
    dry_run_failure,
    generate_dry_run_response,
)


MODULE_NAME = "create-iam-role"

SERVICE_ROLE_PATH = "/service-role/"
ROLE_WAITER_DELAY_SECONDS = 5
ROLE_WAITER_MAX_ATTEMPTS = 60


class IAMRoleError(ProvisioningError):
    """Base exception for IAM role operations."""
    pass


@dataclass(frozen=True)
class RoleSpec:
    """Desired state of a service role.

    Attributes:
        name: Role name, the natural key
        trust_service: Service principal allowed to assume the role
        description: Role description
        inline_policies: Tuples of (policy name, policy document)
        managed_policy_arns: Managed policies to attach
        path: IAM path of the role
    """

    name: str
    trust_service: str
    description: str = ""
    inline_policies: Tuple[Tuple[str, Dict[str, Any]], ...] = ()
    managed_policy_arns: Tuple[str, ...] = ()
    path: str = SERVICE_ROLE_PATH

    def trust_policy(self) -> Dict[str, Any]:
        return {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"Service": self.trust_service},
                    "Action": "sts:AssumeRole",
                }
            ],
        }


def control_tower_roles(partition: str) -> List[RoleSpec]:
    """Roles a Control Tower landing zone expects before setup.

    Args:
        partition: AWS partition used to build policy ARNs

    Returns:
        RoleSpec list in creation order
    """
    return [
        RoleSpec(
            name='AWSControlTowerAdmin',
            trust_service='controltower.amazonaws.com',
            description='Administrative role for Control Tower operations',
            inline_policies=((
                'AWSControlTowerAdminPolicy',
                {
                    "Version": "2012-10-17",
                    "Statement": [
                        {"Effect": "Allow", "Action": "ec2:DescribeAvailabilityZones", "Resource": "*"}
                    ],
                },
            ),),
            managed_policy_arns=(
                f"arn:{partition}:iam::aws:policy/service-role/AWSControlTowerServiceRolePolicy",
            ),
        ),
        RoleSpec(
            name='AWSControlTowerCloudTrailRole',
            trust_service='cloudtrail.amazonaws.com',
            description='CloudTrail logging role',
            inline_policies=((
                'AWSControlTowerCloudTrailRolePolicy',
                {
                    "Version": "2012-10-17",
                    "Statement": [
                        {
                            "Effect": "Allow",
                            "Action": ["logs:CreateLogStream", "logs:PutLogEvents"],
                            "Resource": f"arn:{partition}:logs:*:*:log-group:aws-controltower/CloudTrailLogs:*",
                        }
                    ],
                },
            ),),
        ),
        RoleSpec(
            name='AWSControlTowerStackSetRole',
            trust_service='cloudformation.amazonaws.com',
            description='CloudFormation StackSet operations role',
            inline_policies=((
                'AWSControlTowerStackSetRolePolicy',
                {
                    "Version": "2012-10-17",
                    "Statement": [
                        {
                            "Effect": "Allow",
                            "Action": "sts:AssumeRole",
                            "Resource": f"arn:{partition}:iam::*:role/AWSControlTowerExecution",
                        }
                    ],
                },
            ),),
        ),
        RoleSpec(
            name='AWSControlTowerConfigAggregatorRoleForOrganizations',
            trust_service='config.amazonaws.com',
            description='AWS Config organization aggregator role',
            managed_policy_arns=(
                f"arn:{partition}:iam::aws:policy/service-role/AWSConfigRoleForOrganizations",
            ),
        ),
    ]


def _trusted_services(role: Dict[str, Any]) -> List[str]:
    document = role.get('AssumeRolePolicyDocument') or {}
    if isinstance(document, str):
        document = json.loads(document)
    services: List[str] = []
    for statement in document.get('Statement', []):
        principal = statement.get('Principal', {})
        if not isinstance(principal, dict):
            continue
        service = principal.get('Service')
        if isinstance(service, str):
            services.append(service)
        elif isinstance(service, list):
            services.extend(service)
    return services


class IAMRolesManager:
    """Manages IAM service roles.

    Args:
        aws_client: Configured AWS client manager
        region: Region of the IAM endpoint
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
        self._iam_client: Optional[ProviderClient] = None

    def _get_client(self) -> ProviderClient:
        """Get IAM client with caching.

        Returns:
            IAM ProviderClient
        """
        if self._iam_client is None:
            self._iam_client = self.aws_client.get_client(
                'iam',
                self.region or self.aws_client.get_current_region()
            )
        return self._iam_client

    def get_role(self, role_name: str) -> Optional[Dict[str, Any]]:
        """Get IAM role details.

        Args:
            role_name: Name of the role

        Returns:
            Role details dictionary or None if not found
        """
        client = self._get_client()
        try:
            response = throttling_backoff(lambda: client.send('get_role', RoleName=role_name))
        except ProviderError as e:
            if e.kind is ErrorKind.NOT_FOUND:
                return None
            raise IAMRoleError(f"Failed to check role {role_name}: {e}") from e
        return response['Role']

    def role_exists(self, role_name: str) -> bool:
        return self.get_role(role_name) is not None

    def ensure_role(self, spec: RoleSpec, dry_run: bool = False) -> ProvisioningResult:
        """Create a role unless an equivalent one exists.

        An existing role is equivalent when it trusts the expected
        service and carries every inline and managed policy of spec;
        missing policies are restored on it.

        Args:
            spec: Desired role
            dry_run: Report what would happen without creating; a conflict
                is reported instead of raised

        Returns:
            ProvisioningResult with the role ARN as resource_id

        Raises:
            ResourceConflictError: When the role exists with another trust principal
            IAMRoleError: When creation, confirmation or policy restore fails
        """
        existing = self.get_role(spec.name)
        if existing:
            trusted = _trusted_services(existing)
            if spec.trust_service not in trusted:
                error = ResourceConflictError(
                    f"Role {spec.name} already exists and trusts {', '.join(trusted) or 'no service'}, "
                    f"expected {spec.trust_service}"
                )
                if dry_run:
                    return dry_run_failure(MODULE_NAME, "create", error, resource_id=existing.get('Arn'))
                raise error
            return self._reconcile_policies(spec, existing.get('Arn'), dry_run)

        if dry_run:
            self.logger.dry_run("CreateRole", {"RoleName": spec.name, "Path": spec.path})
            return ProvisioningResult(
                changed=False,
                message=generate_dry_run_response(
                    MODULE_NAME, "create",
                    f"Will create role {spec.name} trusted by {spec.trust_service}",
                ),
                dry_run=True,
            )

        return self._create_role(spec)

    def get_missing_policies(self, spec: RoleSpec) -> Tuple[List[Tuple[str, Dict[str, Any]]], List[str]]:
        """Policies of spec not present on the existing role.

        Returns:
            Tuple of (missing inline policies, missing managed policy ARNs)

        Raises:
            IAMRoleError: When the policies cannot be listed
        """
        client = self._get_client()
        try:
            inline_names = set()
            if spec.inline_policies:
                inline_names = set(throttling_backoff(lambda: client.paginate(
                    'list_role_policies', 'PolicyNames', RoleName=spec.name
                )))
            attached_arns = set()
            if spec.managed_policy_arns:
                attached = throttling_backoff(lambda: client.paginate(
                    'list_attached_role_policies', 'AttachedPolicies', RoleName=spec.name
                ))
                attached_arns = {policy['PolicyArn'] for policy in attached}
        except ProviderError as e:
            raise IAMRoleError(f"Failed to list policies of role {spec.name}: {e}") from e

        return (
            [policy for policy in spec.inline_policies if policy[0] not in inline_names],
            [arn for arn in spec.managed_policy_arns if arn not in attached_arns],
        )

    def _reconcile_policies(self, spec: RoleSpec, role_arn: Optional[str], dry_run: bool) -> ProvisioningResult:
        inline, managed = self.get_missing_policies(spec)
        if not inline and not managed:
            message = f"Role {spec.name} already exists"
            if dry_run:
                message = generate_dry_run_response(MODULE_NAME, "create", message)
            self.logger.info(message)
            return ProvisioningResult(
                changed=False, message=message, resource_id=role_arn, dry_run=dry_run
            )

        missing = ', '.join([name for name, _ in inline] + managed)
        if dry_run:
            self.logger.dry_run("PutRolePolicy", {"RoleName": spec.name, "Policies": missing})
            return ProvisioningResult(
                changed=False,
                message=generate_dry_run_response(
                    MODULE_NAME, "create", f"Will restore policies of role {spec.name}: {missing}"
                ),
                resource_id=role_arn,
                dry_run=True,
            )

        self.logger.command_execution(f"RestoreRolePolicies {spec.name}")
        try:
            self._apply_policies(spec.name, inline, managed)
        except ProviderError as e:
            raise IAMRoleError(f"Failed to restore policies of role {spec.name}: {e}") from e
        self.logger.command_success(f"RestoreRolePolicies {spec.name}")
        return ProvisioningResult(
            changed=True,
            message=f"Role {spec.name} policies restored: {missing}",
            resource_id=role_arn,
        )

    def _apply_policies(
        self,
        role_name: str,
        inline_policies: Sequence[Tuple[str, Dict[str, Any]]],
        managed_policy_arns: Sequence[str],
    ) -> None:
        client = self._get_client()
        for policy_name, document in inline_policies:
            throttling_backoff(lambda: client.send(
                'put_role_policy',
                RoleName=role_name,
                PolicyName=policy_name,
                PolicyDocument=json.dumps(document),
            ))
        for policy_arn in managed_policy_arns:
            throttling_backoff(lambda: client.send(
                'attach_role_policy', RoleName=role_name, PolicyArn=policy_arn
            ))

    def _create_role(self, spec: RoleSpec) -> ProvisioningResult:
        client = self._get_client()
        try:
            self.logger.command_execution(f"CreateRole {spec.name}")
            response = throttling_backoff(lambda: client.send(
                'create_role',
                RoleName=spec.name,
                Path=spec.path,
                Description=spec.description,
                AssumeRolePolicyDocument=json.dumps(spec.trust_policy()),
            ))
            client.wait(
                'role_exists',
                delay=ROLE_WAITER_DELAY_SECONDS,
                max_attempts=ROLE_WAITER_MAX_ATTEMPTS,
                RoleName=spec.name,
            )
            self._apply_policies(spec.name, spec.inline_policies, spec.managed_policy_arns)
        except WaiterError as e:
            raise IAMRoleError(f"Role {spec.name} was not confirmed after creation: {e}") from e
        except ProviderError as e:
            raise IAMRoleError(f"Failed to create role {spec.name}: {e}") from e

        self.logger.command_success(f"CreateRole {spec.name}")
        return ProvisioningResult(
            changed=True,
            message=f"Role {spec.name} created",
            resource_id=response['Role']['Arn'],
        )

    def create_control_tower_roles(self, partition: str, dry_run: bool = False) -> List[ProvisioningResult]:
        """Create the Control Tower prerequisite roles.

        The set is created when none of the roles exist and left alone
        when all of them do; a partial set points at a previous landing
        zone and is refused.

        Args:
            partition: AWS partition used for policy ARNs
            dry_run: Report what would happen without creating

        Returns:
            One ProvisioningResult per role

        Raises:
            ResourceConflictError: When only some of the roles exist
        """
        specs = control_tower_roles(partition)
        existing = [spec.name for spec in specs if self.role_exists(spec.name)]
        if existing and len(existing) < len(specs):
            raise ResourceConflictError(
                f"Control Tower roles partially exist: {', '.join(existing)}. "
                "Remove them or skip role creation."
            )
        return [self.ensure_role(spec, dry_run=dry_run) for spec in specs]
