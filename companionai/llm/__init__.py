"""LLM access package.

Architectural role:
    Provides provider configuration, request-payload construction, and transport
    adapters used by the chat pipeline to invoke text-generation backends.

Module split:
    - `provider_config`: provider endpoint map and key resolution.
    - `service`: canonical prompt-to-payload adapter.
    - `client`: provider-specific HTTP transport and stream parsing.
"""
