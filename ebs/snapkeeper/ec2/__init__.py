"""
EC2 resource API abstraction for SnapKeeper.

This module provides a pluggable resource API interface supporting:
- AWS EC2 through aiobotocore (production)
- In-memory (for testing)

Invariants:
    - Listings are consumed page by page through paginate()
    - Throttled snapshot creation is reported as RateLimitedError
    - All other provider failures are ResourceApiError

How to change safely:
    - New backends must implement the ResourceApi protocol
    - Keep the tag dict representation, the policy layer depends on it
"""

from .aws import Ec2ResourceApi
from .base import (
    Page,
    RateLimitedError,
    ResourceApi,
    ResourceApiConnectionError,
    ResourceApiError,
    RetryExhaustedError,
    Snapshot,
    SnapKeeperError,
    Volume,
    paginate,
)
from .memory import InMemoryResourceApi

__all__ = [
    # Protocol and types
    "ResourceApi",
    "Volume",
    "Snapshot",
    "Page",
    "paginate",
    # Errors
    "SnapKeeperError",
    "ResourceApiError",
    "ResourceApiConnectionError",
    "RateLimitedError",
    "RetryExhaustedError",
    # Implementations
    "Ec2ResourceApi",
    "InMemoryResourceApi",
]
