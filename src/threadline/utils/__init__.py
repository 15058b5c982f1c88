from .tokens import DefaultTokenCounter, TokenCounter, estimate_tokens

__all__ = ["DefaultTokenCounter", "TokenCounter", "estimate_tokens"]
