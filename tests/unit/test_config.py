"""Unit tests for CLI configuration loading."""

import json
from pathlib import Path

import pytest
import yaml

from pbi_capture.capture.browser_factory import BrowserMode
from pbi_capture.capture.errors import ConfigurationInvalidError
from pbi_capture.capture.policy import CyclicPolicy, FixedWindowPolicy
from pbi_capture.cli.config import (
    CaptureConfiguration,
    ConfigurationLoader,
    deep_merge,
    print_configuration,
    read_config_file,
    validate_configuration,
)
from pbi_capture.models.capture import DEFAULT_ANALYTICS_URL, DEFAULT_PORTAL_URL


@pytest.fixture
def loader(tmp_path):
    """Loader reading .env from an isolated directory."""
    return ConfigurationLoader(dotenv_path=tmp_path / ".env")


def load(loader, tmp_path, **kwargs):
    return loader.load_configuration(search_paths=[tmp_path], **kwargs)


class TestDefaults:
    """Tests for default values."""

    def test_defaults(self, clean_env, loader, tmp_path):
        config = load(loader, tmp_path)

        assert config.credentials.portal_url == DEFAULT_PORTAL_URL
        assert config.credentials.analytics_url == DEFAULT_ANALYTICS_URL
        assert config.capture.policy == "cyclic"
        assert config.capture.fixed_window_ms == 120000
        assert config.capture.max_cycles == 10
        assert config.capture.cycle_delay_ms == 15000
        assert config.login.element_timeout_ms == 20000
        assert config.login.confirm_timeout_ms == 120000
        assert config.login.max_attempts == 3
        assert config.discovery.max_attempts == 10
        assert config.discovery.delay_ms == 3000
        assert config.output.output_file == Path("powerbi-queries.json")
        assert config.loaded_from == ["defaults"]


class TestPrecedence:
    """Tests for source precedence."""

    def test_environment_variables(self, clean_env, loader, tmp_path):
        clean_env.setenv("PBI_CAPTURE_ENTITY_ID", "ACME01")
        clean_env.setenv("PBI_CAPTURE_USERNAME", "operator")
        clean_env.setenv("PBI_CAPTURE_PASSWORD", "s3cret")
        clean_env.setenv("PBI_CAPTURE_WAIT_WINDOW_MS", "60000")
        clean_env.setenv("PBI_CAPTURE_HEADFUL", "true")
        clean_env.setenv("PBI_CAPTURE_POLICY", "fixed")
        clean_env.setenv("PBI_CAPTURE_OUTPUT_FILE", "out/queries.json")

        config = load(loader, tmp_path)

        assert config.credentials.entity_id == "ACME01"
        assert config.credentials.password.get_secret_value() == "s3cret"
        assert config.capture.wait_window_ms == 60000
        assert config.browser.headful is True
        assert config.capture.policy == "fixed"
        assert config.output.output_file == Path("out/queries.json")
        assert "environment variables" in config.loaded_from

    def test_legacy_names_lose_to_prefixed(self, clean_env, loader, tmp_path):
        clean_env.setenv("COMPANY_ID", "LEGACY")
        clean_env.setenv("USERNAME", "legacy-user")
        clean_env.setenv("PBI_CAPTURE_USERNAME", "new-user")
        clean_env.setenv("ANALYTICS_URL", "https://legacy.example.test")

        config = load(loader, tmp_path)

        assert config.credentials.entity_id == "LEGACY"
        assert config.credentials.username == "new-user"
        assert config.credentials.analytics_url == "https://legacy.example.test"

    def test_dotenv_fills_unset_variables(self, clean_env, loader, tmp_path):
        (tmp_path / ".env").write_text(
            "PBI_CAPTURE_ENTITY_ID=FROM_DOTENV\nPBI_CAPTURE_USERNAME=dotenv-user\n",
            encoding="utf-8",
        )
        clean_env.setenv("PBI_CAPTURE_USERNAME", "process-user")

        config = load(loader, tmp_path)

        assert config.credentials.entity_id == "FROM_DOTENV"
        assert config.credentials.username == "process-user"
        assert ".env file" in config.loaded_from

    def test_auto_discovered_yaml(self, clean_env, loader, tmp_path):
        (tmp_path / "pbi-capture.yaml").write_text(yaml.safe_dump({
            "credentials": {"entity_id": "FROM_FILE", "username": "file-user"},
            "capture": {"max_cycles": 4, "backend": "cdp"},
        }), encoding="utf-8")
        clean_env.setenv("PBI_CAPTURE_USERNAME", "env-user")

        config = load(loader, tmp_path)

        assert config.credentials.entity_id == "FROM_FILE"
        assert config.credentials.username == "env-user"
        assert config.capture.max_cycles == 4
        assert config.capture.backend == "cdp"
        assert config.loaded_from[1].startswith("auto-discovered:")

    def test_explicit_json_file(self, clean_env, loader, tmp_path):
        config_file = tmp_path / "custom.json"
        config_file.write_text(json.dumps({"discovery": {"max_attempts": 2}}), encoding="utf-8")

        config = load(loader, tmp_path, config_file=config_file)

        assert config.discovery.max_attempts == 2
        assert config.config_file_path == config_file

    def test_missing_explicit_file(self, clean_env, loader, tmp_path):
        with pytest.raises(FileNotFoundError):
            load(loader, tmp_path, config_file=tmp_path / "absent.yaml")

    def test_cli_overrides_win(self, clean_env, loader, tmp_path):
        clean_env.setenv("PBI_CAPTURE_POLICY", "fixed")

        config = load(loader, tmp_path, cli_overrides={"capture": {"policy": "cyclic"}})

        assert config.capture.policy == "cyclic"
        assert config.loaded_from[-1] == "CLI flags"

    def test_invalid_integer_env(self, clean_env, loader, tmp_path):
        clean_env.setenv("PBI_CAPTURE_WAIT_WINDOW_MS", "soon")

        with pytest.raises(ConfigurationInvalidError):
            load(loader, tmp_path)

    def test_invalid_policy_rejected(self, clean_env, loader, tmp_path):
        with pytest.raises(ValueError):
            load(loader, tmp_path, cli_overrides={"capture": {"policy": "adaptive"}})


class TestConfigSources:
    """Tests for the file and merge helpers behind the loader."""

    def test_deep_merge_keeps_sibling_keys(self):
        base = {"capture": {"policy": "fixed", "max_cycles": 4}, "login": {"max_attempts": 2}}

        merged = deep_merge(base, {"capture": {"policy": "cyclic"}})

        assert merged == {"capture": {"policy": "cyclic", "max_cycles": 4}, "login": {"max_attempts": 2}}
        assert base["capture"]["policy"] == "fixed"

    def test_unsupported_suffix(self, tmp_path):
        config_file = tmp_path / "settings.toml"
        config_file.write_text("[capture]\n", encoding="utf-8")

        with pytest.raises(ValueError, match="Unsupported"):
            read_config_file(config_file)

    def test_non_mapping_rejected(self, tmp_path):
        config_file = tmp_path / "pbi-capture.yaml"
        config_file.write_text("- one\n- two\n", encoding="utf-8")

        with pytest.raises(ValueError, match="mapping"):
            read_config_file(config_file)

    def test_empty_yaml_is_empty_mapping(self, tmp_path):
        config_file = tmp_path / "pbi-capture.yaml"
        config_file.write_text("", encoding="utf-8")

        assert read_config_file(config_file) == {}

    def test_list_and_path_env_values(self, clean_env, loader, tmp_path):
        clean_env.setenv("PBI_CAPTURE_CAPTURE_PATTERNS", "querydata, modelsAndExploration ,")
        clean_env.setenv("PBI_CAPTURE_OUTPUT_FILE", "out/q.json")
        clean_env.setenv("PBI_CAPTURE_ESCALATE", "no")

        config = load(loader, tmp_path)

        assert config.capture.patterns == ["querydata", "modelsAndExploration"]
        assert config.output.output_file == Path("out/q.json")
        assert config.capture.escalate is False
        assert config.loaded_from == ["defaults", "environment variables"]

    def test_invalid_integer_names_variable(self, clean_env, loader, tmp_path):
        clean_env.setenv("PBI_CAPTURE_MAX_CYCLES", "many")

        with pytest.raises(ConfigurationInvalidError) as exc_info:
            load(loader, tmp_path)

        assert exc_info.value.problems == ["PBI_CAPTURE_MAX_CYCLES: cannot use 'many' for capture.max_cycles"]


class TestValidation:
    """Tests for validate_configuration."""

    def test_all_missing_keys_reported_together(self):
        with pytest.raises(ConfigurationInvalidError) as exc_info:
            validate_configuration(CaptureConfiguration())

        message = str(exc_info.value)
        assert len(exc_info.value.problems) == 3
        for key in ("entityId", "username", "password"):
            assert key in message

    def test_only_missing_key_reported(self):
        config = CaptureConfiguration(credentials={"entity_id": "A", "username": "u"})

        with pytest.raises(ConfigurationInvalidError) as exc_info:
            validate_configuration(config)

        assert len(exc_info.value.problems) == 1
        assert "password" in exc_info.value.problems[0]

    def test_valid_configuration(self):
        config = CaptureConfiguration(credentials={"entity_id": "A", "username": "u", "password": "p"})
        validate_configuration(config)

    @pytest.mark.parametrize("engine", ["firefox", "webkit"])
    def test_cdp_backend_requires_chromium(self, engine):
        config = CaptureConfiguration(
            credentials={"entity_id": "A", "username": "u", "password": "p"},
            browser={"engine": engine},
            capture={"backend": "cdp"},
        )

        with pytest.raises(ConfigurationInvalidError) as exc_info:
            validate_configuration(config)

        assert exc_info.value.problems == [f"the cdp capture backend requires chromium, not {engine}"]

    def test_cdp_backend_with_chromium(self):
        config = CaptureConfiguration(
            credentials={"entity_id": "A", "username": "u", "password": "p"},
            capture={"backend": "cdp"},
        )
        validate_configuration(config)

    def test_non_http_url_rejected(self):
        config = CaptureConfiguration(credentials={
            "entity_id": "A", "username": "u", "password": "p", "analytics_url": "analytics.local",
        })

        with pytest.raises(ConfigurationInvalidError):
            validate_configuration(config)


class TestTranslation:
    """Tests for building runtime objects from configuration."""

    def test_engine_config(self):
        config = CaptureConfiguration(
            browser={"headful": True},
            login={"max_attempts": 5},
            capture={"policy": "fixed", "wait_window_ms": 30000, "backend": "cdp"},
            output={"output_file": "q.json"},
        )

        engine_config = config.to_engine_config()

        assert engine_config.initial_mode == BrowserMode.HEADFUL
        assert engine_config.login_config.max_attempts == 5
        assert engine_config.listener_backend == "cdp"
        assert engine_config.output_file == Path("q.json")
        policy = engine_config.create_policy()
        assert isinstance(policy, FixedWindowPolicy)
        assert policy.window_ms == 30000

    def test_cyclic_window_split(self):
        config = CaptureConfiguration(capture={"wait_window_ms": 50000, "max_cycles": 5})
        policy = config.to_engine_config().create_policy()

        assert isinstance(policy, CyclicPolicy)
        assert policy.cycle_delay_ms == 10000

    def test_credentials(self):
        config = CaptureConfiguration(credentials={"entity_id": "A", "username": "u", "password": "p"})
        credentials = config.to_credentials()

        assert credentials.password.get_secret_value() == "p"
        assert repr(credentials) == "Credentials(entity_id='A', username='u')"


class TestPrintConfiguration:
    """Tests for print_configuration."""

    def test_password_masked(self):
        config = CaptureConfiguration(credentials={"entity_id": "A", "username": "u", "password": "hunter2"})

        rendered = print_configuration(config)

        assert "hunter2" not in rendered
        assert "**********" in rendered

    def test_yaml_round_trips(self):
        rendered = print_configuration(CaptureConfiguration())
        data = yaml.safe_load(rendered)

        assert data["credentials"]["password"] is None
        assert data["capture"]["policy"] == "cyclic"
