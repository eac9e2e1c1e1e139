"""
Provider registry: maps a model identifier to its upstream configuration.

All model-specific branching lives here. The rest of the request path only
looks at the resolved ProviderConfig.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from gateway_errors import UnsupportedModel
from settings import GatewaySettings


class ApiStyle(str, Enum):
    CHAT = "chat"  # list of role/content turns
    SINGLE_PROMPT = "single_prompt"  # one rendered prompt string


class SystemPreamble(str, Enum):
    DEFAULT = "default"  # upstream's own behaviour, nothing injected
    CUSTOM = "custom"  # gateway injects its generic system turn
    NONE = "none"  # model does not accept a system turn


class ProviderHost(str, Enum):
    OPENAI = "openai"
    OPENROUTER = "openrouter"


@dataclass(frozen=True)
class ModelEntry:
    """Static catalog entry, without secrets."""

    host: ProviderHost
    api_style: ApiStyle
    system_preamble: SystemPreamble = SystemPreamble.DEFAULT
    stop_sequence: Optional[str] = None
    requires_auth: bool = False
    streaming: bool = True


@dataclass(frozen=True)
class ProviderConfig:
    model: str
    provider_name: str
    api_style: ApiStyle
    system_preamble: SystemPreamble
    endpoint: str
    credential: str
    stop_sequence: Optional[str]
    requires_auth: bool
    streaming: bool

    def __repr__(self) -> str:
        return (
            f"ProviderConfig(model={self.model!r}, provider={self.provider_name!r}, "
            f"api_style={self.api_style.value}, endpoint={self.endpoint!r}, "
            f"requires_auth={self.requires_auth}, streaming={self.streaming})"
        )


# Stop token appended by the legacy completion prompt format
LEGACY_STOP_SEQUENCE = "END_OF_STREAM"

MODEL_CATALOG: dict[str, ModelEntry] = {
    "text-davinci-002": ModelEntry(
        ProviderHost.OPENAI, ApiStyle.SINGLE_PROMPT,
        system_preamble=SystemPreamble.NONE, stop_sequence=LEGACY_STOP_SEQUENCE,
    ),
    "text-davinci-003": ModelEntry(
        ProviderHost.OPENAI, ApiStyle.SINGLE_PROMPT,
        system_preamble=SystemPreamble.NONE, stop_sequence=LEGACY_STOP_SEQUENCE,
    ),
    "gpt-3.5-turbo": ModelEntry(ProviderHost.OPENAI, ApiStyle.CHAT),
    "gpt-4": ModelEntry(
        ProviderHost.OPENAI, ApiStyle.CHAT,
        system_preamble=SystemPreamble.CUSTOM, requires_auth=True,
    ),
    # o1 models reject system turns and streaming
    "o1-mini": ModelEntry(
        ProviderHost.OPENAI, ApiStyle.CHAT,
        system_preamble=SystemPreamble.NONE, streaming=False,
    ),
    "o1-preview": ModelEntry(
        ProviderHost.OPENAI, ApiStyle.CHAT,
        system_preamble=SystemPreamble.NONE, requires_auth=True, streaming=False,
    ),
    "anthropic/claude-2": ModelEntry(
        ProviderHost.OPENROUTER, ApiStyle.CHAT, system_preamble=SystemPreamble.CUSTOM,
    ),
    "meta-llama/llama-2-70b-chat": ModelEntry(
        ProviderHost.OPENROUTER, ApiStyle.CHAT, system_preamble=SystemPreamble.CUSTOM,
    ),
}

_ENDPOINT_PATHS = {
    ApiStyle.CHAT: "/chat/completions",
    ApiStyle.SINGLE_PROMPT: "/completions",
}


class ProviderRegistry:
    """Resolves model identifiers against MODEL_CATALOG and the configured secrets."""

    def __init__(self, settings: GatewaySettings, catalog: Optional[dict[str, ModelEntry]] = None):
        self._catalog = dict(MODEL_CATALOG if catalog is None else catalog)
        self._hosts = {
            ProviderHost.OPENAI: (settings.openai_base_url, settings.openai_api_key),
            ProviderHost.OPENROUTER: (settings.openrouter_base_url, settings.openrouter_api_key),
        }

    def resolve(self, model: str) -> ProviderConfig:
        entry = self._catalog.get(model)
        if entry is None:
            raise UnsupportedModel(model)
        base_url, credential = self._hosts[entry.host]
        return ProviderConfig(
            model=model,
            provider_name=entry.host.value,
            api_style=entry.api_style,
            system_preamble=entry.system_preamble,
            endpoint=f"{base_url}{_ENDPOINT_PATHS[entry.api_style]}",
            credential=credential,
            stop_sequence=entry.stop_sequence,
            requires_auth=entry.requires_auth,
            streaming=entry.streaming,
        )

    def models(self) -> list[dict]:
        """Catalog listing for the /models endpoint (no secrets)."""
        return [
            {
                "id": model,
                "provider": entry.host.value,
                "apiStyle": entry.api_style.value,
                "streaming": entry.streaming,
                "requiresAuth": entry.requires_auth,
            }
            for model, entry in self._catalog.items()
        ]

    def configured_hosts(self) -> dict[str, bool]:
        return {host.value: bool(credential) for host, (_, credential) in self._hosts.items()}
