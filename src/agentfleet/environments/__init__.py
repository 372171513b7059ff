"""Isolated workspaces for agents."""

from agentfleet.environments.backends import fingerprint_tree
from agentfleet.environments.provider import EnvironmentProvider

__all__ = ["EnvironmentProvider", "fingerprint_tree"]
