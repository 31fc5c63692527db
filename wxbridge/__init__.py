"""wxbridge: relays chat messages between a messaging account and an AI gateway."""

__version__ = "1.0.0"
