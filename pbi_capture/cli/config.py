"""Configuration system for the pbi-capture CLI with precedence handling.

Sources, highest precedence first:
CLI flags > environment variables > .env file > config file > defaults

Values from a ``.env`` file in the working directory are loaded into the
process environment without overriding variables that are already set, so
real environment variables win over the file.
"""

import json
import os
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator

from ..capture.browser_factory import BrowserConfig, BrowserEngineType, BrowserMode
from ..capture.discovery import DEFAULT_REPORT_PATTERNS
from ..capture.engine import CaptureEngineConfig
from ..capture.errors import ConfigurationInvalidError
from ..capture.login import LoginConfig
from ..capture.network_observer import DEFAULT_CAPTURE_PATTERNS, LISTENER_BACKENDS, CdpListener
from ..capture.policy import (
    DEFAULT_CYCLE_DELAY_MS,
    DEFAULT_FIXED_WINDOW_MS,
    DEFAULT_MAX_CYCLES,
    PolicyKind,
)
from ..capture.sink import DEFAULT_OUTPUT_FILE
from ..models.capture import DEFAULT_ANALYTICS_URL, DEFAULT_PORTAL_URL, Credentials


class CredentialsConfig(BaseModel):
    """Portal login values and destinations."""
    entity_id: Optional[str] = Field(default=None, description="Company / tenant identifier")
    username: Optional[str] = Field(default=None, description="Portal user name")
    password: Optional[SecretStr] = Field(default=None, description="Portal password")
    portal_url: str = Field(default=DEFAULT_PORTAL_URL, description="Login page URL")
    analytics_url: str = Field(default=DEFAULT_ANALYTICS_URL, description="Analytics page URL")


class BrowserSection(BaseModel):
    """Browser launch options."""
    headful: bool = Field(default=False, description="Start with a visible browser window")
    engine: str = Field(default=BrowserEngineType.CHROMIUM, description="Browser engine")
    slow_mo: int = Field(default=0, ge=0, description="Delay between browser operations (ms)")
    devtools: bool = Field(default=False, description="Open developer tools when headful")
    user_agent: Optional[str] = Field(default=None, description="Custom User-Agent")
    ignore_https_errors: bool = Field(default=False, description="Ignore TLS errors")

    @field_validator('engine')
    @classmethod
    def validate_engine(cls, v):
        if v not in (BrowserEngineType.CHROMIUM, BrowserEngineType.FIREFOX, BrowserEngineType.WEBKIT):
            raise ValueError("engine must be one of: chromium, firefox, webkit")
        return v


class LoginSection(BaseModel):
    """Login flow bounds."""
    element_timeout_ms: int = Field(default=20000, ge=1, description="Per-element wait bound")
    navigation_timeout_ms: int = Field(default=60000, ge=1, description="Login page load bound")
    confirm_timeout_ms: int = Field(default=120000, ge=1, description="Post-submit confirmation bound")
    max_attempts: int = Field(default=3, ge=1, le=10, description="Whole-flow login attempts")
    retry_delay_ms: int = Field(default=2000, ge=0, description="Pause between attempts")


class DiscoverySection(BaseModel):
    """Report surface discovery options."""
    max_attempts: int = Field(default=10, ge=1, description="Discovery attempt budget")
    delay_ms: int = Field(default=3000, ge=0, description="Pause between attempts")
    report_patterns: List[str] = Field(
        default_factory=lambda: list(DEFAULT_REPORT_PATTERNS),
        description="URL substrings (or /regex/) identifying report surfaces"
    )


class CaptureSection(BaseModel):
    """Capture policy and listener options."""
    policy: str = Field(default=PolicyKind.CYCLIC, description="fixed or cyclic")
    wait_window_ms: Optional[int] = Field(default=None, ge=0, description="Monitoring window override")
    fixed_window_ms: int = Field(default=DEFAULT_FIXED_WINDOW_MS, ge=0, description="Fixed policy window")
    max_cycles: int = Field(default=DEFAULT_MAX_CYCLES, ge=1, description="Cyclic policy cycle budget")
    cycle_delay_ms: int = Field(default=DEFAULT_CYCLE_DELAY_MS, ge=0, description="Cyclic policy cycle length")
    escalate: bool = Field(default=True, description="Relaunch headful once after an empty headless run")
    backend: str = Field(default="page", description="Listener backend: page or cdp")
    patterns: List[str] = Field(
        default_factory=lambda: list(DEFAULT_CAPTURE_PATTERNS),
        description="URL substrings of traffic to capture"
    )
    capture_response_bodies: bool = Field(default=True, description="Buffer textual response bodies")
    max_body_bytes: int = Field(default=5_000_000, ge=0, description="Largest response body kept")

    @field_validator('policy')
    @classmethod
    def validate_policy(cls, v):
        v = v.lower()
        if v not in (PolicyKind.FIXED, PolicyKind.CYCLIC):
            raise ValueError("policy must be one of: fixed, cyclic")
        return v

    @field_validator('backend')
    @classmethod
    def validate_backend(cls, v):
        v = v.lower()
        if v not in LISTENER_BACKENDS:
            raise ValueError(f"backend must be one of: {', '.join(sorted(LISTENER_BACKENDS))}")
        return v


class OutputSection(BaseModel):
    """Artifact and console output options."""
    output_file: Path = Field(default=Path(DEFAULT_OUTPUT_FILE), description="Artifact path")
    write_empty: bool = Field(default=True, description="Write an empty array when nothing was captured")
    verbose: bool = Field(default=False, description="Debug logging")
    quiet: bool = Field(default=False, description="Warnings and errors only")


class CaptureConfiguration(BaseModel):
    """Complete configuration with all sections."""

    credentials: CredentialsConfig = Field(default_factory=CredentialsConfig)
    browser: BrowserSection = Field(default_factory=BrowserSection)
    login: LoginSection = Field(default_factory=LoginSection)
    discovery: DiscoverySection = Field(default_factory=DiscoverySection)
    capture: CaptureSection = Field(default_factory=CaptureSection)
    output: OutputSection = Field(default_factory=OutputSection)

    # Metadata
    config_file_path: Optional[Path] = Field(default=None, description="Source config file")
    loaded_from: List[str] = Field(default_factory=list, description="Configuration sources")

    def to_credentials(self) -> Credentials:
        """Build run credentials. Call validate_configuration first."""
        return Credentials(
            entity_id=self.credentials.entity_id,
            username=self.credentials.username,
            password=self.credentials.password,
            portal_url=self.credentials.portal_url,
            analytics_url=self.credentials.analytics_url,
        )

    def to_engine_config(self) -> CaptureEngineConfig:
        """Translate the sections into engine, browser and login configuration."""
        browser_config = BrowserConfig(
            engine=self.browser.engine,
            slow_mo=self.browser.slow_mo,
            devtools=self.browser.devtools,
            user_agent=self.browser.user_agent,
            ignore_https_errors=self.browser.ignore_https_errors,
        )
        login_config = LoginConfig(
            element_timeout_ms=self.login.element_timeout_ms,
            navigation_timeout_ms=self.login.navigation_timeout_ms,
            confirm_timeout_ms=self.login.confirm_timeout_ms,
            max_attempts=self.login.max_attempts,
            retry_delay_ms=self.login.retry_delay_ms,
        )
        return CaptureEngineConfig(
            browser_config=browser_config,
            initial_mode=BrowserMode.HEADFUL if self.browser.headful else BrowserMode.HEADLESS,
            login_config=login_config,
            discovery_max_attempts=self.discovery.max_attempts,
            discovery_delay_ms=self.discovery.delay_ms,
            report_patterns=self.discovery.report_patterns,
            capture_patterns=self.capture.patterns,
            listener_backend=self.capture.backend,
            capture_response_bodies=self.capture.capture_response_bodies,
            max_body_bytes=self.capture.max_body_bytes,
            policy=self.capture.policy,
            wait_window_ms=self.capture.wait_window_ms,
            fixed_window_ms=self.capture.fixed_window_ms,
            max_cycles=self.capture.max_cycles,
            cycle_delay_ms=self.capture.cycle_delay_ms,
            escalate=self.capture.escalate,
            output_file=self.output.output_file,
            write_empty_artifact=self.output.write_empty,
        )


def as_bool(value: str) -> bool:
    return value.strip().lower() in ('true', '1', 'yes', 'on')


def as_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


# Environment suffix -> (dotted configuration path, converter)
ENV_VARIABLES: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "ENTITY_ID": ("credentials.entity_id", str),
    "USERNAME": ("credentials.username", str),
    "PASSWORD": ("credentials.password", str),
    "PORTAL_URL": ("credentials.portal_url", str),
    "ANALYTICS_URL": ("credentials.analytics_url", str),
    "HEADFUL": ("browser.headful", as_bool),
    "DEVTOOLS": ("browser.devtools", as_bool),
    "BROWSER": ("browser.engine", str),
    "LOGIN_ATTEMPTS": ("login.max_attempts", int),
    "DISCOVERY_ATTEMPTS": ("discovery.max_attempts", int),
    "REPORT_PATTERNS": ("discovery.report_patterns", as_list),
    "POLICY": ("capture.policy", str),
    "WAIT_WINDOW_MS": ("capture.wait_window_ms", int),
    "MAX_CYCLES": ("capture.max_cycles", int),
    "CYCLE_DELAY_MS": ("capture.cycle_delay_ms", int),
    "ESCALATE": ("capture.escalate", as_bool),
    "BACKEND": ("capture.backend", str),
    "CAPTURE_PATTERNS": ("capture.patterns", as_list),
    "OUTPUT_FILE": ("output.output_file", Path),
    "VERBOSE": ("output.verbose", as_bool),
    "QUIET": ("output.quiet", as_bool),
}

# Unprefixed names read by earlier versions of the tool
LEGACY_ENV_NAMES = {
    "COMPANY_ID": "ENTITY_ID",
    "USERNAME": "USERNAME",
    "PASSWORD": "PASSWORD",
    "PORTAL_URL": "PORTAL_URL",
    "ANALYTICS_URL": "ANALYTICS_URL",
}


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Return base updated with override, merging nested sections."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def read_config_file(path: Path) -> Dict[str, Any]:
    """Parse a YAML or JSON configuration file into a mapping."""
    if not path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    suffix = path.suffix.lower()
    try:
        content = path.read_text(encoding='utf-8')
        if suffix in ('.yaml', '.yml'):
            data = yaml.safe_load(content) or {}
        elif suffix == '.json':
            data = json.loads(content)
        else:
            raise ValueError(f"Unsupported config file format: {suffix}")
    except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
        raise ValueError(f"Cannot read config file {path}: {e}")

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return data


class ConfigurationLoader:
    """Builds a CaptureConfiguration from layered sources."""

    ENV_PREFIX = "PBI_CAPTURE_"

    # Searched in order in each search path
    DEFAULT_CONFIG_FILES = [
        "pbi-capture.yaml",
        "pbi-capture.yml",
        ".pbi-capture.yaml",
        "pbi-capture.json",
    ]

    def __init__(self, dotenv_path: Optional[Path] = None):
        self.dotenv_path = dotenv_path
        self.loaded_sources: List[str] = []

    def load_configuration(
        self,
        config_file: Optional[Path] = None,
        cli_overrides: Optional[Dict[str, Any]] = None,
        search_paths: Optional[List[Path]] = None
    ) -> CaptureConfiguration:
        """Merge every source, lowest precedence first.

        Precedence (highest to lowest): CLI overrides, prefixed environment
        variables, legacy environment variables, .env file, config file
        (explicit or auto-discovered), defaults.

        Raises:
            FileNotFoundError: If an explicit config file does not exist
            ConfigurationInvalidError: If an environment value has the wrong type
            ValueError: If a config file or merged value is invalid
        """
        self.loaded_sources = ["defaults"]
        values: Dict[str, Any] = {}

        for label, layer in self._layers(config_file, cli_overrides, search_paths or [Path.cwd()]):
            values = deep_merge(values, layer)
            self.loaded_sources.append(label)

        return CaptureConfiguration(
            **values,
            loaded_from=self.loaded_sources,
            config_file_path=config_file,
        )

    def _layers(
        self,
        config_file: Optional[Path],
        cli_overrides: Optional[Dict[str, Any]],
        search_paths: List[Path],
    ) -> Iterator[Tuple[str, Dict[str, Any]]]:
        if config_file is not None:
            yield f"config file: {config_file}", read_config_file(config_file)
        else:
            found = self._find_config_file(search_paths)
            if found is not None:
                yield f"auto-discovered: {found}", read_config_file(found)

        # Must run before the environment layer reads os.environ
        if self._load_dotenv():
            yield ".env file", {}

        environment = self._environment_layer()
        if environment:
            yield "environment variables", environment

        if cli_overrides:
            yield "CLI flags", cli_overrides

    def _find_config_file(self, search_paths: List[Path]) -> Optional[Path]:
        for search_path in search_paths:
            for name in self.DEFAULT_CONFIG_FILES:
                candidate = search_path / name
                if candidate.is_file():
                    return candidate
        return None

    def _load_dotenv(self) -> bool:
        dotenv_path = self.dotenv_path or Path.cwd() / ".env"
        if not dotenv_path.is_file():
            return False
        return load_dotenv(dotenv_path, override=False)

    def _environment_layer(self) -> Dict[str, Any]:
        """Collect environment values; prefixed names override legacy ones."""
        names = list(LEGACY_ENV_NAMES.items())
        names += [(self.ENV_PREFIX + suffix, suffix) for suffix in ENV_VARIABLES]

        layer: Dict[str, Any] = {}
        for env_var, suffix in names:
            raw = os.getenv(env_var)
            if not raw:
                continue
            path, convert = ENV_VARIABLES[suffix]
            try:
                value = convert(raw)
            except ValueError:
                raise ConfigurationInvalidError([f"{env_var}: cannot use {raw!r} for {path}"])
            section, key = path.split('.')
            layer.setdefault(section, {})[key] = value
        return layer


def load_configuration(
    config_file: Optional[Path] = None,
    cli_overrides: Optional[Dict[str, Any]] = None,
    search_paths: Optional[List[Path]] = None
) -> CaptureConfiguration:
    """Load configuration from the working directory's sources."""
    return ConfigurationLoader().load_configuration(config_file, cli_overrides, search_paths)


def print_configuration(config: CaptureConfiguration) -> str:
    """Render the effective configuration as YAML with the password masked."""
    config_dict = config.model_dump(mode="json", exclude={'loaded_from', 'config_file_path'})
    if config.credentials.password is not None:
        config_dict['credentials']['password'] = "**********"
    return yaml.safe_dump(config_dict, default_flow_style=False, sort_keys=True)


def validate_configuration(config: CaptureConfiguration) -> None:
    """Check required keys before a run starts.

    Raises:
        ConfigurationInvalidError: Naming every missing or invalid key
    """
    problems = []

    if not config.credentials.entity_id:
        problems.append("entityId is required (PBI_CAPTURE_ENTITY_ID or COMPANY_ID)")
    if not config.credentials.username:
        problems.append("username is required (PBI_CAPTURE_USERNAME or USERNAME)")
    if config.credentials.password is None or not config.credentials.password.get_secret_value():
        problems.append("password is required (PBI_CAPTURE_PASSWORD or PASSWORD)")

    for name in ('portal_url', 'analytics_url'):
        url = getattr(config.credentials, name)
        if not url.startswith(("http://", "https://")):
            problems.append(f"{name} must be an http(s) URL, got {url!r}")

    if config.capture.backend == CdpListener.backend and config.browser.engine != BrowserEngineType.CHROMIUM:
        problems.append(f"the cdp capture backend requires chromium, not {config.browser.engine}")

    if config.output.verbose and config.output.quiet:
        problems.append("verbose and quiet cannot both be set")

    if problems:
        raise ConfigurationInvalidError(problems)
