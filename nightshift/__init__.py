"""nightshift — budget-aware unattended AI coding agent runner."""

__version__ = "0.1.0"
