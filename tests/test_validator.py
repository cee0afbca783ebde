"""Tests for installation validation and auto-fix."""

import json
import sys
from unittest.mock import MagicMock

import pytest

from conftest import make_definition
from mcp_orchestrator.schemas import (
    BackendInstallation,
    BackendStatus,
    CommandResult,
    PatchOrchestratorPath,
    RunBuildStep,
    RuntimeKind,
    ValidationResult,
    ValidationSuggestion,
    WriteClientConfig,
)
from mcp_orchestrator.validator import RemediationError, Validator


def installation_for(definition, path):
    return BackendInstallation(
        id=definition.id,
        definition=definition,
        install_path=str(path),
        status=BackendStatus.INSTALLED,
    )


def ok_result(argv, **kwargs):
    return CommandResult(argv=list(argv), stdout="", exit_code=0)


def issue_types(result):
    return [issue.type for issue in result.issues]


@pytest.fixture
def install_dir(tmp_path):
    path = tmp_path / "install"
    path.mkdir()
    (path / ".env").write_text("")
    return path


@pytest.fixture
def validator(settings, client_config):
    return Validator(settings.client_config_path, environ={}, runner=MagicMock(side_effect=ok_result))


class TestValidateInstallation:
    """Test install path and runtime checks."""

    def test_valid_command_backend(self, validator, install_dir):
        """A resolvable command with config and env in place is valid."""
        result = validator.validate(installation_for(make_definition(), install_dir))
        assert result.is_valid is True
        assert result.issues == []

    def test_missing_directory(self, validator, tmp_path):
        """A vanished install directory is an error with a reinstall hint."""
        result = validator.validate(installation_for(make_definition(), tmp_path / "gone"))
        assert result.is_valid is False
        assert issue_types(result) == ["missing_directory"]
        assert result.suggestions[0].action == "reinstall_server"
        assert result.suggestions[0].auto_fix is False

    def test_python_missing_venv(self, validator, install_dir):
        """Interpreted backends need their private virtualenv."""
        definition = make_definition(runtime=RuntimeKind.PYTHON, command="python", args=("server.py",))
        (install_dir / "requirements.txt").write_text("")

        result = validator.validate(installation_for(definition, install_dir))

        assert issue_types(result) == ["missing_venv"]
        suggestion = result.suggestions[0]
        assert suggestion.auto_fix is True
        assert suggestion.remedy == RunBuildStep(argv=["python3", "-m", "venv", "venv"], cwd=str(install_dir))

    def test_python_missing_requirements_is_warning(self, validator, install_dir):
        """No project file is only a warning."""
        definition = make_definition(runtime=RuntimeKind.PYTHON, command="python", args=("server.py",))
        python = install_dir / "venv" / "bin" / "python"
        python.parent.mkdir(parents=True)
        python.write_text("")

        result = validator.validate(installation_for(definition, install_dir))

        assert issue_types(result) == ["missing_requirements"]
        assert result.is_valid is True

    def test_node_missing_build_artifacts(self, validator, install_dir):
        """Compiled node backends need dependencies and their entrypoint."""
        definition = make_definition(command="node", args=("dist/server.js",), entrypoint="dist/server.js")
        (install_dir / "package.json").write_text("{}")

        result = validator.validate(installation_for(definition, install_dir))

        assert issue_types(result) == ["missing_dependencies", "missing_build"]
        assert [s.remedy.argv for s in result.suggestions] == [["npm", "install"], ["npm", "run", "build"]]

    def test_node_missing_package_json(self, validator, install_dir):
        """Without package.json only a reinstall helps."""
        definition = make_definition(command="node", entrypoint="dist/server.js")
        result = validator.validate(installation_for(definition, install_dir))
        assert issue_types(result) == ["missing_package_json"]

    def test_unresolvable_command(self, validator, install_dir):
        """A launch command missing from PATH is reported."""
        definition = make_definition(command="definitely-not-a-real-binary-xyz")
        result = validator.validate(installation_for(definition, install_dir))
        assert issue_types(result) == ["missing_command"]


class TestValidateEnvironment:
    """Test env file and required variable checks."""

    def test_missing_env_file_warning(self, validator, tmp_path):
        """No .env is a warning only."""
        path = tmp_path / "noenv"
        path.mkdir()
        result = validator.validate(installation_for(make_definition(), path))
        assert issue_types(result) == ["missing_env_file"]
        assert result.is_valid is True

    def test_missing_required_var(self, validator, install_dir):
        """A required variable in neither place is an error with its field."""
        definition = make_definition(required_env=("API_KEY",))
        result = validator.validate(installation_for(definition, install_dir))

        assert result.is_valid is False
        issue = result.issues[0]
        assert issue.type == "missing_env_var"
        assert issue.field == "API_KEY"
        assert result.suggestions[0].auto_fix is False

    def test_required_var_in_env_file(self, validator, install_dir):
        """The backend's .env satisfies a requirement."""
        (install_dir / ".env").write_text("API_KEY=secret\n")
        definition = make_definition(required_env=("API_KEY",))
        assert validator.validate(installation_for(definition, install_dir)).is_valid is True

    def test_required_var_in_environment(self, settings, client_config, install_dir):
        """The orchestrator's own environment satisfies a requirement."""
        validator = Validator(settings.client_config_path, environ={"API_KEY": "secret"})
        definition = make_definition(required_env=("API_KEY",))
        assert validator.validate(installation_for(definition, install_dir)).is_valid is True


class TestValidateClientConfig:
    """Test the downstream client config checks."""

    def test_missing_config(self, settings, install_dir):
        """A missing client config can be created automatically."""
        validator = Validator(settings.client_config_path, environ={})
        result = validator.validate(installation_for(make_definition(), install_dir))

        assert issue_types(result) == ["missing_client_config"]
        assert result.suggestions[0].action == "create_client_config"
        assert isinstance(result.suggestions[0].remedy, WriteClientConfig)

    def test_invalid_json(self, settings, install_dir):
        """Broken JSON needs a manual repair."""
        settings.client_config_path.parent.mkdir(parents=True)
        settings.client_config_path.write_text("{nope")
        validator = Validator(settings.client_config_path, environ={})

        result = validator.validate(installation_for(make_definition(), install_dir))

        assert issue_types(result) == ["invalid_client_config"]
        assert result.suggestions[0].auto_fix is False

    def test_entry_missing(self, settings, install_dir):
        """A config without the orchestrator entry is fixable."""
        settings.client_config_path.parent.mkdir(parents=True)
        settings.client_config_path.write_text(json.dumps({"mcpServers": {}}))
        validator = Validator(settings.client_config_path, environ={})

        result = validator.validate(installation_for(make_definition(), install_dir))

        assert issue_types(result) == ["missing_orchestrator_config"]
        assert result.suggestions[0].auto_fix is True

    def test_stale_binary_path(self, settings, install_dir):
        """An entry pointing at a missing executable can be patched."""
        settings.client_config_path.parent.mkdir(parents=True)
        settings.client_config_path.write_text(json.dumps({
            "mcpServers": {"mcp-orchestrator": {"command": "/nowhere/mcp-orchestrator", "args": ["stdio"]}},
        }))
        validator = Validator(settings.client_config_path, environ={})

        result = validator.validate(installation_for(make_definition(), install_dir))

        assert issue_types(result) == ["orchestrator_binary_missing"]
        assert isinstance(result.suggestions[0].remedy, PatchOrchestratorPath)


class TestAutoFix:
    """Test remediation execution."""

    def test_fixes_client_config(self, settings, install_dir):
        """Auto-fix writes a config that then validates."""
        validator = Validator(settings.client_config_path, gateway_command=sys.executable, environ={})
        installation = installation_for(make_definition(), install_dir)

        applied = validator.auto_fix(validator.validate(installation))

        assert applied == ["create_client_config"]
        assert validator.validate(installation).is_valid is True

    def test_patches_stale_path(self, settings, install_dir):
        """A stale entry is rewritten to a resolvable command."""
        settings.client_config_path.parent.mkdir(parents=True)
        settings.client_config_path.write_text(json.dumps({
            "mcpServers": {"mcp-orchestrator": {"command": "/nowhere/mcp-orchestrator", "args": ["stdio"]}},
        }))
        validator = Validator(settings.client_config_path, gateway_command=sys.executable, environ={})
        installation = installation_for(make_definition(), install_dir)

        validator.auto_fix(validator.validate(installation))

        entry = json.loads(settings.client_config_path.read_text())["mcpServers"]["mcp-orchestrator"]
        assert entry["command"] == sys.executable

    def test_runs_build_steps(self, validator, install_dir):
        """Build-step remedies run through the runner in order."""
        definition = make_definition(command="node", entrypoint="dist/server.js")
        (install_dir / "package.json").write_text("{}")
        result = validator.validate(installation_for(definition, install_dir))

        applied = validator.auto_fix(result)

        assert applied == ["install_dependencies", "build_server"]
        calls = [call.args[0] for call in validator._run.call_args_list]
        assert calls == [["npm", "install"], ["npm", "run", "build"]]
        assert validator._run.call_args_list[0].kwargs["cwd"] == str(install_dir)

    def test_stops_at_first_failure(self, settings, client_config, install_dir):
        """A failing step aborts the rest."""
        runner = MagicMock(return_value=CommandResult(argv=[], stdout="", stderr="ERESOLVE", exit_code=1))
        validator = Validator(settings.client_config_path, environ={}, runner=runner)
        definition = make_definition(command="node", entrypoint="dist/server.js")
        (install_dir / "package.json").write_text("{}")
        result = validator.validate(installation_for(definition, install_dir))

        with pytest.raises(RemediationError, match="install_dependencies"):
            validator.auto_fix(result)
        assert runner.call_count == 1

    def test_blocked_command(self, validator, install_dir):
        """Commands outside the allowlist never run."""
        result = ValidationResult(server_id="alpha", is_valid=False, suggestions=[
            ValidationSuggestion(
                action="wipe",
                description="Bad idea",
                auto_fix=True,
                remedy=RunBuildStep(argv=["rm", "-rf", str(install_dir)], cwd=str(install_dir)),
            ),
        ])
        with pytest.raises(RemediationError, match="blocked"):
            validator.auto_fix(result)
        validator._run.assert_not_called()

    def test_plain_command_string(self, validator, install_dir):
        """A bare "cd DIR && CMD" suggestion is parsed into a build step."""
        result = ValidationResult(server_id="alpha", is_valid=False, suggestions=[
            ValidationSuggestion(
                action="install_dependencies",
                description="Install",
                command=f"cd {install_dir} && npm install",
                auto_fix=True,
            ),
        ])
        validator.auto_fix(result)
        call = validator._run.call_args
        assert call.args[0] == ["npm", "install"]
        assert call.kwargs["cwd"] == str(install_dir)

    def test_manual_suggestions_skipped(self, validator, install_dir):
        """Suggestions without auto_fix are not applied."""
        definition = make_definition(required_env=("API_KEY",))
        result = validator.validate(installation_for(definition, install_dir))
        assert validator.auto_fix(result) == []
