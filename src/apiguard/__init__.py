"""apiguard - resilience layer for rate-limited, quota-bound external APIs.

Token bucket rate limiting, quota cooldowns, circuit breaking, durable token
ledgers and a batch orchestrator that degrades to estimates instead of failing.
"""

__version__ = "0.1.0"
