"""Reward job exports."""

from .expiration import run_reward_expiry  # noqa: F401

__all__ = ["run_reward_expiry"]
