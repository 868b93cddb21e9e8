"""Infrastructure layer for apiguard: configuration, logging and resilience."""
