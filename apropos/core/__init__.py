"""Core of the terminal session bridge: executor, registry, bridge and detector."""
