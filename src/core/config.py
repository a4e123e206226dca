"""Configuration management for the governance baseline.

This module handles YAML configuration loading, validation, and
environment variable override support for the orchestration engine
and the security service modules it drives.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional
import yaml


SUPPORTED_PARTITIONS = ('aws', 'aws-cn', 'aws-us-gov', 'aws-iso', 'aws-iso-b', 'aws-iso-e', 'aws-iso-f')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class Configuration:
    """Configuration management with YAML loading and validation.

    This class handles loading configuration from YAML files,
    validating the structure, and supporting environment variable
    overrides.
    """

    def __init__(self, config_path: Optional[str] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_path: Optional path to configuration file.
                        If None, auto-detects config.yaml in current directory.

        Raises:
            ConfigurationError: When configuration file is invalid
        """
        self._config: Dict[str, Any] = {}
        self._config_path = self._resolve_config_path(config_path)
        self._load_configuration()
        self._apply_environment_overrides()
        self._validate_configuration()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        """Resolve configuration file path.

        Args:
            config_path: Optional path to configuration file

        Returns:
            Resolved Path object to configuration file

        Raises:
            ConfigurationError: When configuration file not found
        """
        if config_path:
            path = Path(config_path)
        else:
            path = Path("config.yaml")
            if not path.exists():
                path = Path("config/settings.yaml")

        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}. "
                "Please create a configuration file or specify a valid path."
            )

        return path

    def _load_configuration(self) -> None:
        """Load configuration from YAML file.

        Raises:
            ConfigurationError: When YAML file is invalid
        """
        try:
            with open(self._config_path, "r", encoding="utf-8") as f:
                self._config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file {self._config_path}: {e}"
            )
        except IOError as e:
            raise ConfigurationError(
                f"Unable to read configuration file {self._config_path}: {e}"
            )

        if not isinstance(self._config, dict):
            raise ConfigurationError(
                f"Configuration file {self._config_path} must contain a mapping"
            )

    def _validate_configuration(self) -> None:
        """Validate configuration has required fields.

        Raises:
            ConfigurationError: When required fields are missing or invalid
        """
        if 'aws' not in self._config:
            raise ConfigurationError("Required configuration section 'aws' is missing")

        aws_config = self._config['aws']

        if 'home_region' not in aws_config:
            raise ConfigurationError("Required field 'aws.home_region' is missing")

        home_region = aws_config["home_region"]
        if not isinstance(home_region, str) or not home_region:
            raise ConfigurationError("Field 'aws.home_region' must be a non-empty string")

        partition = aws_config.get('partition', 'aws')
        if partition not in SUPPORTED_PARTITIONS:
            raise ConfigurationError(
                f"Field 'aws.partition' must be one of: {', '.join(SUPPORTED_PARTITIONS)}"
            )

        if 'governed_regions' in aws_config:
            governed_regions = aws_config["governed_regions"]
            if not isinstance(governed_regions, list):
                raise ConfigurationError("Field 'aws.governed_regions' must be a list")

            if home_region not in governed_regions:
                governed_regions.insert(0, home_region)
                self._config["aws"]["governed_regions"] = governed_regions

        self._validate_orchestration()
        self._validate_security_services()

    def _validate_orchestration(self) -> None:
        """Validate worker pool settings before any work starts."""
        orchestration = self._config.get('orchestration') or {}
        for field in ('max_concurrent_environments', 'operation_timeout_ms'):
            if field not in orchestration:
                continue
            value = orchestration[field]
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(
                    f"Field 'orchestration.{field}' must be a positive integer"
                )

    def _validate_security_services(self) -> None:
        services = self._config.get('security_services') or {}
        if not isinstance(services, dict):
            raise ConfigurationError("Section 'security_services' must be a mapping")

        for name, settings in services.items():
            if not isinstance(settings, dict):
                raise ConfigurationError(f"Section 'security_services.{name}' must be a mapping")
            if settings.get('enable') and not settings.get('delegated_admin_account_id'):
                raise ConfigurationError(
                    f"Field 'security_services.{name}.delegated_admin_account_id' "
                    "is required when the service is enabled"
                )
            regions = settings.get('regions')
            if regions is not None and not isinstance(regions, list):
                raise ConfigurationError(f"Field 'security_services.{name}.regions' must be a list")

    def _apply_environment_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        if "AWS_REGION" in os.environ:
            self._set_nested_value("aws.home_region", os.environ["AWS_REGION"])

        if "AWS_PROFILE" in os.environ:
            self._set_nested_value(
                "aws.profile_name", os.environ["AWS_PROFILE"]
            )

        if "GOVERNANCE_MAX_CONCURRENCY" in os.environ:
            raw = os.environ["GOVERNANCE_MAX_CONCURRENCY"]
            try:
                value = int(raw)
            except ValueError:
                raise ConfigurationError(
                    f"GOVERNANCE_MAX_CONCURRENCY must be an integer, got {raw!r}"
                )
            self._set_nested_value("orchestration.max_concurrent_environments", value)

    def _set_nested_value(self, key_path: str, value: Any) -> None:
        """Set nested configuration value using dot notation.

        Args:
            key_path: Dot-separated key path (e.g., 'aws.home_region')
            value: Value to set
        """
        keys = key_path.split(".")
        current = self._config

        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def get(self, key_path: str, default: Any = None) -> Any:
        """Get configuration value using dot notation.

        Args:
            key_path: Dot-separated key path (e.g., 'aws.home_region')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key_path.split(".")
        current = self._config

        try:
            for key in keys:
                current = current[key]
            return current
        except (KeyError, TypeError):
            return default

    def get_home_region(self) -> str:
        """Get AWS home region.

        Returns:
            AWS home region string
        """
        return self.get("aws.home_region")

    def get_partition(self) -> str:
        return self.get("aws.partition", "aws")

    def get_solution_id(self) -> Optional[str]:
        return self.get("aws.solution_id")

    def get_governed_regions(self) -> Optional[List[str]]:
        """Get list of governed regions.

        Returns:
            Region universe for security services, home region first;
            None when every enabled region is governed
        """
        return self.get("aws.governed_regions") or None

    def get_orchestration_config(self) -> Dict[str, Any]:
        """Get worker pool settings for the batch orchestrator.

        Returns:
            Dictionary with max_concurrent_environments and
            operation_timeout_ms when configured
        """
        return dict(self._config.get("orchestration") or {})

    def get_security_service_config(self, service: str) -> Dict[str, Any]:
        """Get settings for one security service module.

        Args:
            service: Service key under security_services (e.g. 'guardduty')

        Returns:
            Service settings dictionary, empty when not configured
        """
        return dict(self.get(f"security_services.{service}") or {})

    def get_configured_security_services(self) -> List[str]:
        return list((self._config.get("security_services") or {}).keys())

    def to_dict(self) -> Dict[str, Any]:
        """Get complete configuration as dictionary.

        Returns:
            Complete configuration dictionary
        """
        return self._config.copy()
