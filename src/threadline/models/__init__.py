from .providers import (
    PROVIDER_TABLE,
    Provider,
    ProviderFamily,
    ProviderSpec,
    get_provider_spec,
    normalize_reasoning_block,
    resolve_provider,
)

__all__ = [
    "Provider",
    "ProviderFamily",
    "ProviderSpec",
    "PROVIDER_TABLE",
    "get_provider_spec",
    "normalize_reasoning_block",
    "resolve_provider",
]
