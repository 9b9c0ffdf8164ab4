"""BaaS access for the ContaFlix worker."""

from contaflix.tools.baas_api import (
    AuthenticationError,
    BaaSClient,
    BaaSError,
    RateLimitError,
    between,
    eq,
    gt,
    gte,
    in_,
    is_,
    like,
    lt,
    lte,
    neq,
    within,
)

__all__ = [
    # API Client
    "BaaSClient",
    "BaaSError",
    "AuthenticationError",
    "RateLimitError",
    # Filters
    "between",
    "eq",
    "gt",
    "gte",
    "in_",
    "is_",
    "like",
    "lt",
    "lte",
    "neq",
    "within",
]
