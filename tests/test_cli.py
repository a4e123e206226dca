"""Unit tests for the command line entry point."""

import pytest
import yaml
from unittest.mock import patch

from src.governance_baseline import main, parse_arguments
from src.post_deployment.orchestrator import PostDeploymentOrchestrationError
from src.prerequisites.provisioning import ProvisioningResult, ResourceConflictError


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ("AWS_REGION", "AWS_PROFILE", "GOVERNANCE_MAX_CONCURRENCY"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({
        "aws": {"home_region": "us-east-1", "solution_id": "SO0000"},
        "accounts": {
            "alias": "configured-alias",
            "log_archive": {"name": "Log Archive", "email": "logs@example.com"},
        },
        "encryption_keys": [{"alias": "baseline", "description": "Baseline key"}],
    }))
    return str(path)


@pytest.fixture
def mock_aws_client():
    with patch("src.governance_baseline.AWSClientManager") as manager_class:
        client = manager_class.return_value
        client.get_account_id.return_value = "111111111111"
        yield manager_class


class TestParseArguments:
    """Test cases for argument parsing."""

    def test_services_with_only(self):
        """Test repeated --only collects services."""
        args = parse_arguments(["--dry-run", "services", "--only", "guardduty", "--only", "macie"])

        assert args.dry_run
        assert args.command == "services"
        assert args.services == ["guardduty", "macie"]

    def test_command_required(self):
        """Test a subcommand is required."""
        with pytest.raises(SystemExit):
            parse_arguments([])


class TestMain:
    """Test cases for main."""

    def test_missing_config(self, tmp_path, monkeypatch, capsys):
        """Test a missing configuration file exits with 1."""
        monkeypatch.chdir(tmp_path)

        assert main(["services"]) == 1
        assert "No configuration file found" in capsys.readouterr().out

    def test_invalid_config(self, tmp_path, capsys):
        """Test configuration errors exit with 1."""
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.dump({"aws": {}}))

        assert main(["--config", str(path), "services"]) == 1
        assert "Configuration error" in capsys.readouterr().out

    def test_client_manager_built_from_config(self, config_file, mock_aws_client):
        """Test the client manager uses profile, home region and solution id."""
        with patch("src.governance_baseline.PostDeploymentOrchestrator") as orchestrator_class:
            orchestrator_class.return_value.orchestrate_security_baseline.return_value = {
                "overall_status": "success"
            }
            assert main(["--config", config_file, "--profile", "mgmt", "services"]) == 0

        mock_aws_client.assert_called_once_with(
            profile_name="mgmt", region_name="us-east-1", solution_id="SO0000"
        )

    def test_region_override(self, config_file, mock_aws_client, monkeypatch):
        """Test --region overrides the home region."""
        monkeypatch.setenv("AWS_REGION", "us-east-1")
        with patch("src.governance_baseline.PostDeploymentOrchestrator") as orchestrator_class:
            orchestrator_class.return_value.orchestrate_security_baseline.return_value = {}
            main(["--config", config_file, "--region", "eu-west-1", "services"])

        assert mock_aws_client.call_args.kwargs["region_name"] == "eu-west-1"

    def test_services_failure(self, config_file, mock_aws_client, capsys):
        """Test a failed module run exits with 1 and reports each module."""
        error = PostDeploymentOrchestrationError(
            "Orchestration failed: guardduty: boom",
            {"overall_status": "failed", "guardduty": {"status": "FAILED", "summary": "failed"}},
        )
        with patch("src.governance_baseline.PostDeploymentOrchestrator") as orchestrator_class:
            orchestrator_class.return_value.orchestrate_security_baseline.side_effect = error
            assert main(["--config", config_file, "services", "--only", "guardduty"]) == 1

        orchestrator_class.return_value.orchestrate_security_baseline.assert_called_once_with(
            "111111111111", dry_run=False, services=["guardduty"]
        )
        assert "guardduty: failed" in capsys.readouterr().out

    def test_alias_from_config(self, config_file, mock_aws_client):
        """Test the configured alias is used when none is given."""
        with patch("src.governance_baseline.AccountAliasManager") as manager_class:
            manager_class.return_value.manage.return_value = ProvisioningResult(True, "set")
            assert main(["--config", config_file, "--dry-run", "alias"]) == 0

        manager_class.return_value.manage.assert_called_once_with("configured-alias", dry_run=True)

    def test_alias_conflict(self, config_file, mock_aws_client, capsys):
        """Test provisioning conflicts exit with 1."""
        with patch("src.governance_baseline.AccountAliasManager") as manager_class:
            manager_class.return_value.manage.side_effect = ResourceConflictError("alias taken")
            assert main(["--config", config_file, "alias", "other-alias"]) == 1

        assert "alias taken" in capsys.readouterr().out

    def test_accounts(self, config_file, mock_aws_client, capsys):
        """Test configured shared accounts are ensured and moved to the OU."""
        with patch("src.governance_baseline.OrganizationsManager") as org_class, \
                patch("src.governance_baseline.AccountManager") as account_class:
            org_class.return_value.get_root_id.return_value = "r-root"
            org_class.return_value.ensure_organizational_unit.return_value = ProvisioningResult(
                False, "exists", resource_id="ou-sec"
            )
            accounts = account_class.return_value
            accounts.ensure_account.return_value = ProvisioningResult(True, "created", resource_id="333333333333")
            accounts.move_account_to_ou.return_value = ProvisioningResult(True, "moved")

            assert main(["--config", config_file, "accounts"]) == 0

        accounts.ensure_account.assert_called_once_with("Log Archive", "logs@example.com", dry_run=False)
        accounts.move_account_to_ou.assert_called_once_with("333333333333", "ou-sec", dry_run=False)
        assert "accounts.audit.email is not configured" in capsys.readouterr().out

    def test_keys(self, config_file, mock_aws_client):
        """Test configured keys are ensured."""
        with patch("src.governance_baseline.EncryptionKeyManager") as manager_class:
            manager_class.return_value.ensure_key.return_value = ProvisioningResult(True, "created")
            assert main(["--config", config_file, "keys"]) == 0

        spec = manager_class.return_value.ensure_key.call_args.args[0]
        assert spec.alias_name == "alias/baseline"
        assert spec.description == "Baseline key"

    def test_keyboard_interrupt(self, config_file, mock_aws_client):
        """Test interruption exits with 130."""
        with patch("src.governance_baseline.IAMRolesManager") as manager_class:
            manager_class.return_value.create_control_tower_roles.side_effect = KeyboardInterrupt
            assert main(["--config", config_file, "roles"]) == 130
