"""ResourceProvider implementations.

- memory: in-process simulated cloud (tests, dry runs, demos)
- http: generic REST adapter
"""

from config import ConfigError, ProviderConfig
from engine.provider import ResourceProvider


def build_provider(config: ProviderConfig) -> ResourceProvider:
    """Construct the provider named by the configuration."""
    if config.type == 'memory':
        from providers.memory import InMemoryProvider
        return InMemoryProvider(schemas={
            resource_type: (schema or {}).get('immutable', [])
            for resource_type, schema in config.schemas.items()
        }, data=config.data, path=config.path)
    if config.type == 'http':
        from providers.http import HttpProvider
        return HttpProvider(config.endpoint, api_token=config.get_api_token(), timeout=config.timeout)
    raise ConfigError(f"Unknown provider type: {config.type}")
