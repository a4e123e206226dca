"""Unit tests for Configuration Management."""

import os
import tempfile
import pytest
import yaml

from src.core.config import Configuration, ConfigurationError


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep ambient overrides out of the tests."""
    for name in ("AWS_REGION", "AWS_PROFILE", "GOVERNANCE_MAX_CONCURRENCY"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def write_config():
    """Write configuration data to a temporary YAML file."""
    paths = []

    def _write(config_data):
        with tempfile.NamedTemporaryFile(
            mode="w", suffix=".yaml", delete=False
        ) as f:
            yaml.dump(config_data, f)
            paths.append(f.name)
            return f.name

    yield _write

    for path in paths:
        os.unlink(path)


class TestConfiguration:
    """Test cases for Configuration class."""

    def test_load_valid_config(self, write_config):
        """Test loading valid configuration."""
        config_path = write_config({
            "aws": {
                "home_region": "us-east-1",
                "governed_regions": ["us-east-1", "us-west-2"],
                "partition": "aws-us-gov",
                "solution_id": "SO0000",
            },
        })

        config = Configuration(config_path)

        assert config.get_home_region() == "us-east-1"
        assert config.get_governed_regions() == ["us-east-1", "us-west-2"]
        assert config.get_partition() == "aws-us-gov"
        assert config.get_solution_id() == "SO0000"

    def test_defaults(self, write_config):
        """Test defaults for optional fields."""
        config = Configuration(write_config({"aws": {"home_region": "us-east-1"}}))

        assert config.get_partition() == "aws"
        assert config.get_solution_id() is None
        assert config.get_governed_regions() is None
        assert config.get_orchestration_config() == {}
        assert config.get_configured_security_services() == []

    def test_missing_config_file(self):
        """Test handling of missing configuration file."""
        with pytest.raises(ConfigurationError) as exc_info:
            Configuration("/nonexistent/config.yaml")

        assert "Configuration file not found" in str(exc_info.value)

    def test_invalid_yaml(self):
        """Test handling of invalid YAML."""
        with tempfile.NamedTemporaryFile(
            mode="w", suffix=".yaml", delete=False
        ) as f:
            f.write("invalid: yaml: content: [")
            config_path = f.name

        try:
            with pytest.raises(ConfigurationError) as exc_info:
                Configuration(config_path)

            assert "Invalid YAML" in str(exc_info.value)
        finally:
            os.unlink(config_path)

    def test_non_mapping_document(self, write_config):
        """Test a YAML list is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            Configuration(write_config(["a", "b"]))

        assert "must contain a mapping" in str(exc_info.value)

    def test_missing_required_section(self, write_config):
        """Test validation of missing required sections."""
        with pytest.raises(ConfigurationError) as exc_info:
            Configuration(write_config({"other": "value"}))

        assert "Required configuration section 'aws' is missing" in str(exc_info.value)

    def test_missing_home_region(self, write_config):
        """Test validation of missing home region."""
        with pytest.raises(ConfigurationError) as exc_info:
            Configuration(write_config({"aws": {}}))

        assert "Required field 'aws.home_region' is missing" in str(exc_info.value)

    def test_invalid_home_region(self, write_config):
        """Test validation of invalid home region."""
        with pytest.raises(ConfigurationError) as exc_info:
            Configuration(write_config({"aws": {"home_region": ""}}))

        assert "must be a non-empty string" in str(exc_info.value)

    def test_invalid_partition(self, write_config):
        """Test unsupported partitions are rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            Configuration(write_config({"aws": {"home_region": "us-east-1", "partition": "mars"}}))

        assert "aws.partition" in str(exc_info.value)

    def test_environment_override_region(self, write_config, monkeypatch):
        """Test environment variable override for region."""
        config_path = write_config({"aws": {"home_region": "us-east-1"}})
        monkeypatch.setenv("AWS_REGION", "eu-west-1")

        config = Configuration(config_path)

        assert config.get_home_region() == "eu-west-1"

    def test_environment_override_profile(self, write_config, monkeypatch):
        """Test environment variable override for profile."""
        config_path = write_config({"aws": {"home_region": "us-east-1"}})
        monkeypatch.setenv("AWS_PROFILE", "test-profile")

        config = Configuration(config_path)

        assert config.get("aws.profile_name") == "test-profile"

    def test_environment_override_concurrency(self, write_config, monkeypatch):
        """Test GOVERNANCE_MAX_CONCURRENCY overrides the worker pool size."""
        config_path = write_config({
            "aws": {"home_region": "us-east-1"},
            "orchestration": {"max_concurrent_environments": 4, "operation_timeout_ms": 1000},
        })
        monkeypatch.setenv("GOVERNANCE_MAX_CONCURRENCY", "25")

        config = Configuration(config_path)

        assert config.get_orchestration_config() == {
            "max_concurrent_environments": 25,
            "operation_timeout_ms": 1000,
        }

    def test_environment_override_concurrency_invalid(self, write_config, monkeypatch):
        """Test a non-numeric concurrency override is rejected."""
        config_path = write_config({"aws": {"home_region": "us-east-1"}})
        monkeypatch.setenv("GOVERNANCE_MAX_CONCURRENCY", "lots")

        with pytest.raises(ConfigurationError) as exc_info:
            Configuration(config_path)

        assert "GOVERNANCE_MAX_CONCURRENCY" in str(exc_info.value)

    @pytest.mark.parametrize("field,value", [
        ("max_concurrent_environments", 0),
        ("max_concurrent_environments", -3),
        ("max_concurrent_environments", "10"),
        ("operation_timeout_ms", 0),
        ("operation_timeout_ms", True),
    ])
    def test_invalid_orchestration_settings(self, write_config, field, value):
        """Test worker pool settings must be positive integers."""
        config_path = write_config({
            "aws": {"home_region": "us-east-1"},
            "orchestration": {field: value},
        })

        with pytest.raises(ConfigurationError) as exc_info:
            Configuration(config_path)

        assert f"orchestration.{field}" in str(exc_info.value)

    def test_security_service_config(self, write_config):
        """Test security service sections are exposed per service."""
        config_path = write_config({
            "aws": {"home_region": "us-east-1"},
            "security_services": {
                "guardduty": {
                    "enable": True,
                    "delegated_admin_account_id": "222222222222",
                    "region_filters": {"ignored_regions": ["ap-east-1"]},
                },
                "macie": {"enable": False},
            },
        })

        config = Configuration(config_path)

        assert config.get_configured_security_services() == ["guardduty", "macie"]
        assert config.get_security_service_config("guardduty")["region_filters"] == {
            "ignored_regions": ["ap-east-1"]
        }
        assert config.get_security_service_config("inspector") == {}

    def test_enabled_service_requires_admin(self, write_config):
        """Test enabling a service requires a delegated admin."""
        config_path = write_config({
            "aws": {"home_region": "us-east-1"},
            "security_services": {"guardduty": {"enable": True}},
        })

        with pytest.raises(ConfigurationError) as exc_info:
            Configuration(config_path)

        assert "delegated_admin_account_id" in str(exc_info.value)

    def test_service_regions_must_be_list(self, write_config):
        """Test service region lists are validated."""
        config_path = write_config({
            "aws": {"home_region": "us-east-1"},
            "security_services": {"macie": {"regions": "us-east-1"}},
        })

        with pytest.raises(ConfigurationError):
            Configuration(config_path)

    def test_home_region_added_to_governed_regions(self, write_config):
        """Test that home region is automatically added to governed regions."""
        config = Configuration(write_config({
            "aws": {
                "home_region": "us-east-1",
                "governed_regions": ["us-west-2", "eu-west-1"],
            }
        }))

        governed_regions = config.get_governed_regions()
        assert "us-east-1" in governed_regions
        assert governed_regions[0] == "us-east-1"  # Should be first

    def test_get_nested_value(self, write_config):
        """Test getting nested configuration values."""
        config = Configuration(write_config({
            "aws": {
                "home_region": "us-east-1",
                "nested": {"deep": {"value": "test"}},
            }
        }))

        assert config.get("aws.nested.deep.value") == "test"
        assert config.get("aws.nonexistent", "default") == "default"

    def test_to_dict(self, write_config):
        """Test converting configuration to dictionary."""
        config = Configuration(write_config({
            "aws": {"home_region": "us-east-1"},
            "accounts": {"alias": "my-org"},
        }))

        config_dict = config.to_dict()
        assert config_dict["aws"]["home_region"] == "us-east-1"
        assert config_dict["accounts"]["alias"] == "my-org"
