"""Interfaces for apiguard."""
