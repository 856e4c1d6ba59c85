# songjobs/providers/registry.py
from typing import List

from songjobs.config import Settings
from songjobs.providers.base import MusicProvider

SUNO_ALIASES = ("suno", "sunoapi", "sunoapi_org", "sunoapi-org")


def list_providers() -> List[str]:
    return ["sunoapi_org", "mock"]


def resolve_provider_name(raw: str) -> str:
    n = (raw or "").strip().lower()
    if n in SUNO_ALIASES:
        return "sunoapi_org"
    if n in ("mock", "stub"):
        return "mock"
    raise ValueError(f"Unknown music provider: {raw!r}. Available: {', '.join(list_providers())}")


def get_provider(settings: Settings) -> MusicProvider:
    """Build the single provider this process talks to."""
    name = resolve_provider_name(settings.music_provider)

    if name == "sunoapi_org":
        from songjobs.providers.sunoapi_org import SunoApiOrgProvider

        return SunoApiOrgProvider(settings)

    from songjobs.providers.mock import MockProvider

    return MockProvider()
