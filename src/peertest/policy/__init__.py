"""Policy module — runtime configuration resolver."""

from peertest.policy.resolver import AssignmentPolicy, PolicyResolver

__all__ = ["AssignmentPolicy", "PolicyResolver"]
