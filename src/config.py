"""Engine configuration management.

Configuration is loaded from a YAML file:
- engine: scheduling and retry settings (concurrency, backoff, deadline)
- state: where per-instance state records are kept
- provider: which ResourceProvider to construct (memory, http)

Resolution order for the config file:
1. Explicit path (--config)
2. $PROVISION_CONFIG environment variable
3. ./engine.yaml in the working directory
4. Built-in defaults

Environment overrides (PROVISION_STATE_DIR, PROVISION_CONCURRENCY,
PROVISION_API_TOKEN) are applied last.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

# Default scheduling settings
DEFAULT_CONCURRENCY = 10
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_STATE_DIR = '.state'


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class ProviderConfig:
    """Settings for the ResourceProvider the CLI constructs.

    Attributes:
        type: Provider kind ('memory' or 'http')
        endpoint: Base URL for the http provider
        timeout: Per-request timeout in seconds (http provider)
        schemas: Per-resource-type schema overrides, e.g.
            {'subnet': {'immutable': ['cidr_block']}}
        data: Static data source values for the memory provider
        path: JSON file the memory provider keeps its objects in
    """
    type: str = 'memory'
    endpoint: str = ''
    timeout: float = 30.0
    schemas: dict = field(default_factory=dict)
    data: dict = field(default_factory=dict)
    path: Optional[Path] = None

    # API token (resolved from environment at load time)
    _api_token: str = field(default='', init=False, repr=False)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'ProviderConfig':
        """Create ProviderConfig from dictionary."""
        if not data:
            return cls()
        provider_type = data.get('type', 'memory')
        if provider_type not in ('memory', 'http'):
            raise ConfigError(
                f"Unknown provider type: {provider_type}. Supported: memory, http"
            )
        if provider_type == 'http' and not data.get('endpoint'):
            raise ConfigError("Provider type 'http' requires an endpoint")
        return cls(
            type=provider_type,
            endpoint=data.get('endpoint', ''),
            timeout=float(data.get('timeout', 30.0)),
            schemas=data.get('schemas') or {},
            data=data.get('data') or {},
            path=Path(data['path']) if data.get('path') else None,
        )

    def get_api_token(self) -> str:
        """Get resolved API token (from PROVISION_API_TOKEN)."""
        return self._api_token

    def set_api_token(self, token: str) -> None:
        self._api_token = token


@dataclass
class EngineConfig:
    """Settings for planning and applying.

    Attributes:
        concurrency: Maximum provider operations in flight at once
        max_attempts: Attempts per operation for transient provider errors
        backoff_base: First retry delay in seconds
        backoff_max: Upper bound for a single retry delay
        poll_interval: How often the scheduler checks for cancellation
        deadline_seconds: Stop scheduling new work after this many seconds
        state_dir: Directory holding one state record per instance
        report_dir: Optional directory for JSON/Markdown apply reports
        provider: ResourceProvider settings
        config_file: Path the settings were loaded from (for debugging)
    """
    concurrency: int = DEFAULT_CONCURRENCY
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    poll_interval: float = 0.5
    deadline_seconds: Optional[float] = None
    state_dir: Path = field(default_factory=lambda: Path(DEFAULT_STATE_DIR))
    report_dir: Optional[Path] = None
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    config_file: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.state_dir, str):
            self.state_dir = Path(self.state_dir)
        if isinstance(self.report_dir, str):
            self.report_dir = Path(self.report_dir)
        if self.concurrency < 1:
            raise ConfigError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be >= 1, got {self.max_attempts}")

    @classmethod
    def from_dict(cls, data: Optional[dict], config_file: Optional[Path] = None) -> 'EngineConfig':
        """Create EngineConfig from the parsed YAML document."""
        if not data:
            return cls(config_file=config_file)

        engine = data.get('engine') or {}
        state = data.get('state') or {}
        base_dir = config_file.parent if config_file else Path.cwd()

        state_dir = Path(state.get('dir', DEFAULT_STATE_DIR))
        if not state_dir.is_absolute():
            state_dir = base_dir / state_dir

        report_dir = engine.get('report_dir')
        if report_dir is not None:
            report_dir = Path(report_dir)
            if not report_dir.is_absolute():
                report_dir = base_dir / report_dir

        provider = ProviderConfig.from_dict(data.get('provider'))
        if provider.path is not None and not provider.path.is_absolute():
            provider.path = base_dir / provider.path

        try:
            return cls(
                concurrency=int(engine.get('concurrency', DEFAULT_CONCURRENCY)),
                max_attempts=int(engine.get('max_attempts', DEFAULT_MAX_ATTEMPTS)),
                backoff_base=float(engine.get('backoff_base', 1.0)),
                backoff_max=float(engine.get('backoff_max', 30.0)),
                poll_interval=float(engine.get('poll_interval', 0.5)),
                deadline_seconds=engine.get('deadline_seconds'),
                state_dir=state_dir,
                report_dir=report_dir,
                provider=provider,
                config_file=config_file,
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid engine settings in {config_file or 'config'}: {e}")


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def discover_config_file() -> Optional[Path]:
    """Discover the engine config file.

    Resolution order:
    1. $PROVISION_CONFIG environment variable
    2. ./engine.yaml in the working directory
    """
    # 1. Environment variable (highest priority)
    if env_path := os.environ.get('PROVISION_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"PROVISION_CONFIG={env_path} does not exist")

    # 2. Working directory
    local = Path.cwd() / 'engine.yaml'
    if local.exists():
        return local

    return None


def load_engine_config(path: Optional[str] = None) -> EngineConfig:
    """Load engine configuration.

    Args:
        path: Explicit config file path. If None, uses auto-discovery.

    Returns:
        EngineConfig with environment overrides applied

    Raises:
        ConfigError: If the file is missing or invalid
    """
    if path:
        config_file: Optional[Path] = Path(path)
        if not config_file.exists():
            raise ConfigError(f"Config file not found: {config_file}")
    else:
        config_file = discover_config_file()

    data = _parse_yaml(config_file) if config_file else {}
    config = EngineConfig.from_dict(data, config_file=config_file)

    if state_dir := os.environ.get('PROVISION_STATE_DIR'):
        config.state_dir = Path(state_dir)

    if concurrency := os.environ.get('PROVISION_CONCURRENCY'):
        try:
            config.concurrency = int(concurrency)
        except ValueError:
            raise ConfigError(f"PROVISION_CONCURRENCY must be an integer, got '{concurrency}'")
        if config.concurrency < 1:
            raise ConfigError(f"PROVISION_CONCURRENCY must be >= 1, got {config.concurrency}")

    if token := os.environ.get('PROVISION_API_TOKEN'):
        config.provider.set_api_token(token)

    return config
