"""easel: a conversational assistant with a companion drawing workspace."""

__version__ = "0.1.0"
