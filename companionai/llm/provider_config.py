"""Chat-completion endpoints and credential lookup.

Every provider except `anthropic` speaks the OpenAI-compatible streaming
chat-completions protocol. `local` points at a self-hosted server (llama.cpp,
vLLM, text-generation-webui) and needs no key.

Credentials are read from `<NAME>_API_KEY` first, then from `config/<name>.key`.
"""

import os
from dataclasses import dataclass
from typing import Optional


ANTHROPIC_VERSION = "2023-06-01"
KEY_DIR = "config"


@dataclass(frozen=True)
class ProviderEndpoint:
    name: str
    url: str
    requires_key: bool = True

    @property
    def key_env_var(self) -> str:
        return f"{self.name.upper()}_API_KEY"

    @property
    def key_file(self) -> str:
        return os.path.join(KEY_DIR, f"{self.name}.key")


PROVIDERS = {
    endpoint.name: endpoint
    for endpoint in (
        ProviderEndpoint("local", "http://127.0.0.1:8080/v1/chat/completions", requires_key=False),
        ProviderEndpoint("openai", "https://api.openai.com/v1/chat/completions"),
        ProviderEndpoint("groq", "https://api.groq.com/openai/v1/chat/completions"),
        ProviderEndpoint("together", "https://api.together.xyz/v1/chat/completions"),
        ProviderEndpoint("openrouter", "https://openrouter.ai/api/v1/chat/completions"),
        ProviderEndpoint("deepinfra", "https://api.deepinfra.com/v1/openai/chat/completions"),
        ProviderEndpoint("fireworks", "https://api.fireworks.ai/inference/v1/chat/completions"),
        ProviderEndpoint("anthropic", "https://api.anthropic.com/v1/messages"),
    )
}


def load_key(endpoint: ProviderEndpoint) -> Optional[str]:
    """Return the API key for `endpoint`, or `None` when none is configured."""
    if not endpoint.requires_key:
        return None

    env_value = os.getenv(endpoint.key_env_var)
    if env_value:
        return env_value.strip()

    if not os.path.exists(endpoint.key_file):
        return None
    with open(endpoint.key_file, "r", encoding="utf-8") as f:
        return f.read().strip() or None
