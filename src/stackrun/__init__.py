"""stackrun — ephemeral, port-safe container runs for agent task checkouts."""

__version__ = "0.1.0"
