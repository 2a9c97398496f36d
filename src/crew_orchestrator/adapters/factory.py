"""Pick the adapter for an agent's provider."""

from crew_orchestrator.adapters.cli_process import PROVIDER_COMMANDS, CliProcessAdapter
from crew_orchestrator.adapters.hosted import HostedAdapter
from crew_orchestrator.config import Config
from crew_orchestrator.core.errors import ProviderUnavailable

HOSTED_PROVIDERS = ("copilot", "antigravity")


def build_adapter(provider: str, config: Config):
    if provider in config.provider_commands:
        return CliProcessAdapter(config.provider_commands[provider])
    if provider in PROVIDER_COMMANDS:
        return CliProcessAdapter(PROVIDER_COMMANDS[provider])
    if provider in HOSTED_PROVIDERS:
        if not config.hosted_base_url:
            raise ProviderUnavailable(f"{provider} requires CREW_HOSTED_BASE_URL to be configured")
        return HostedAdapter(
            config.hosted_base_url,
            api_key=config.hosted_api_key,
            model=config.hosted_model,
        )
    raise ProviderUnavailable(f"Unsupported provider: {provider}")
