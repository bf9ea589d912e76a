"""clickcredit: revenue attribution core for creator link tracking."""

__version__ = "0.1.0"
