#!/usr/bin/env python3
"""AWS Governance Baseline - Main Entry Point.

This is the single entry point for bootstrapping and maintaining the
governed multi-account environment: shared accounts, prerequisite
roles and keys, the account alias and organization-wide security
services.
"""

import argparse
import os
import sys
from pathlib import Path
from typing import List, Optional

from src import __version__
from src.core.aws_client import AWSClientManager
from src.core.config import Configuration, ConfigurationError
from src.core.logger import OperationLogger, configure_logging
from src.post_deployment.orchestrator import (
    PostDeploymentOrchestrationError,
    PostDeploymentOrchestrator,
)
from src.prerequisites.account_alias import AccountAliasManager
from src.prerequisites.accounts import AccountManager
from src.prerequisites.iam_roles import IAMRolesManager
from src.prerequisites.kms_keys import EncryptionKeyManager, KeySpec
from src.prerequisites.organizations import OrganizationsManager
from src.prerequisites.provisioning import ProvisioningError, ProvisioningResult


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments.

    Args:
        argv: Argument list; defaults to sys.argv

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description="AWS Governance Baseline Tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s services                       # Apply configured security services
  %(prog)s services --only guardduty      # Apply a single service
  %(prog)s --dry-run accounts             # Show which shared accounts would be created
  %(prog)s alias my-org-management        # Set the management account alias
  %(prog)s roles                          # Create Control Tower prerequisite roles
  %(prog)s keys                           # Create configured KMS keys
        """,
    )

    parser.add_argument(
        "--config",
        dest="config_file",
        help="Path to configuration file (default: auto-detect config.yaml)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"AWS Governance Baseline v{__version__}",
    )
    parser.add_argument("--profile", help="AWS profile name to use for credentials")
    parser.add_argument("--region", help="AWS region to use (overrides configuration file)")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report intended changes without making them",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: LOG_LEVEL env var or INFO)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    services = subparsers.add_parser("services", help="Enable or disable security services")
    services.add_argument(
        "--only",
        action="append",
        dest="services",
        help="Service to apply (repeatable); defaults to every configured service",
    )

    alias = subparsers.add_parser("alias", help="Set the account alias")
    alias.add_argument("alias", nargs="?", help="Alias to set (default: accounts.alias)")

    subparsers.add_parser("accounts", help="Create the shared Log Archive and Audit accounts")
    subparsers.add_parser("roles", help="Create Control Tower prerequisite IAM roles")
    subparsers.add_parser("keys", help="Create configured KMS keys")

    return parser.parse_args(argv)


def auto_detect_config() -> Optional[str]:
    """Auto-detect configuration file in current directory.

    Returns:
        Path to configuration file if found, None otherwise
    """
    if Path("config.yaml").exists():
        return "config.yaml"

    if Path("config/settings.yaml").exists():
        return "config/settings.yaml"

    return None


def print_result(result: ProvisioningResult) -> None:
    symbol = "✅" if result.changed else "⏭️"
    if result.dry_run:
        symbol = "🔍"
    for index, line in enumerate(result.message.splitlines()):
        print(f"{symbol if index == 0 else ' '} {line}")


def run_services(args: argparse.Namespace, config: Configuration, aws_client: AWSClientManager) -> int:
    orchestrator = PostDeploymentOrchestrator(config, aws_client)
    account_id = aws_client.get_account_id()

    try:
        results = orchestrator.orchestrate_security_baseline(
            account_id, dry_run=args.dry_run, services=args.services
        )
    except PostDeploymentOrchestrationError as e:
        for name, response in e.results.items():
            if isinstance(response, dict):
                symbol = "✅" if response['status'] == 'COMPLETED' else "❌"
                print(f"{symbol} {name}: {response['summary']}")
        print(f"❌ {e}")
        return 1

    for name, response in results.items():
        if isinstance(response, dict):
            print(f"✅ {name}: {response['summary']}")
    return 0


def run_alias(args: argparse.Namespace, config: Configuration, aws_client: AWSClientManager) -> int:
    alias = args.alias or config.get("accounts.alias")
    if not alias:
        print("❌ No alias given and 'accounts.alias' is not configured.")
        return 1

    manager = AccountAliasManager(aws_client, config.get_home_region())
    print_result(manager.manage(alias, dry_run=args.dry_run))
    return 0


def run_accounts(args: argparse.Namespace, config: Configuration, aws_client: AWSClientManager) -> int:
    organizations = OrganizationsManager(aws_client, config.get_home_region())
    accounts = AccountManager(aws_client)

    root_id = organizations.get_root_id()
    ou_result = organizations.ensure_organizational_unit(
        config.get("organization.security_ou_name", "Security"), root_id, dry_run=args.dry_run
    )
    print_result(ou_result)

    for key, default_name in (("log_archive", "Log Archive"), ("audit", "Audit")):
        settings = config.get(f"accounts.{key}") or {}
        email = settings.get("email")
        if not email:
            print(f"⚠️ accounts.{key}.email is not configured, skipping {default_name}")
            continue

        result = accounts.ensure_account(settings.get("name", default_name), email, dry_run=args.dry_run)
        print_result(result)
        if result.resource_id and ou_result.resource_id:
            print_result(accounts.move_account_to_ou(
                result.resource_id, ou_result.resource_id, dry_run=args.dry_run
            ))
    return 0


def run_roles(args: argparse.Namespace, config: Configuration, aws_client: AWSClientManager) -> int:
    manager = IAMRolesManager(aws_client, config.get_home_region())
    for result in manager.create_control_tower_roles(config.get_partition(), dry_run=args.dry_run):
        print_result(result)
    return 0


def run_keys(args: argparse.Namespace, config: Configuration, aws_client: AWSClientManager) -> int:
    keys = config.get("encryption_keys") or []
    if not keys:
        print("⏭️ No encryption_keys configured.")
        return 0

    manager = EncryptionKeyManager(aws_client, config.get_home_region())
    for key in keys:
        spec = KeySpec(
            alias=key["alias"],
            description=key.get("description", ""),
            key_id=key.get("key_id"),
        )
        print_result(manager.ensure_key(spec, dry_run=args.dry_run))
    return 0


COMMANDS = {
    "services": run_services,
    "alias": run_alias,
    "accounts": run_accounts,
    "roles": run_roles,
    "keys": run_keys,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main application entry point.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    try:
        args = parse_arguments(argv)
        configure_logging(args.log_level)

        config_path = args.config_file or auto_detect_config()
        if not config_path:
            print("❌ No configuration file found.")
            print("   Please create config.yaml or specify a configuration file.")
            print("   Use --help for more information.")
            return 1

        print(f"📄 Using configuration file: {config_path}")

        if args.region:
            os.environ["AWS_REGION"] = args.region

        try:
            config = Configuration(config_path)
        except ConfigurationError as e:
            print(f"❌ Configuration error: {e}")
            return 1

        try:
            aws_client = AWSClientManager(
                profile_name=args.profile or config.get("aws.profile_name"),
                region_name=config.get_home_region(),
                solution_id=config.get_solution_id(),
            )
        except Exception as e:
            print(f"❌ AWS client initialization failed: {e}")
            return 1

        if args.dry_run:
            OperationLogger().info("Dry run enabled, no changes will be made")

        return COMMANDS[args.command](args, config, aws_client)

    except KeyboardInterrupt:
        print("\n\n👋 Operation cancelled by user.")
        return 130

    except (ConfigurationError, ProvisioningError) as e:
        print(f"\n❌ {e}")
        return 1

    except Exception as e:
        print(f"\n❌ Unexpected error: {e}")
        print("   Please check your configuration and try again.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
