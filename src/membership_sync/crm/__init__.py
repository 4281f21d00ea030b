"""Remote CRM transport layer.

- SyncClient: Rate-limited, retrying async HTTP client for the CRM API
- SlidingWindowRateLimiter: Process-wide call budget per rolling window
- ReferenceCache: TTL read-through cache for funds, levels and campaigns
"""

from src.membership_sync.crm.cache import ReferenceCache
from src.membership_sync.crm.client import SyncClient
from src.membership_sync.crm.rate_limiter import SlidingWindowRateLimiter

__all__ = [
    "SyncClient",
    "SlidingWindowRateLimiter",
    "ReferenceCache",
]
