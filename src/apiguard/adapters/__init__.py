"""Adapters for apiguard (implementations of application ports)."""
