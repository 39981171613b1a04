"""CompanionAI API adapter package.

Architectural role:
- Defines the external interaction boundary for HTTP and CLI interfaces.
- Performs transport-level identity extraction and response shaping.
- Delegates chat orchestration to `companionai.core.pipeline`.
"""
