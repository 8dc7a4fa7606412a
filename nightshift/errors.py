"""Exception types raised across nightshift."""

from __future__ import annotations


class NightshiftError(Exception):
    """Base class for all nightshift errors."""


class ConfigError(NightshiftError, ValueError):
    """Invalid or inconsistent configuration."""


class BudgetError(NightshiftError):
    """Allowance could not be computed for one provider."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class RegistryError(NightshiftError):
    """Unknown task type or conflicting task registration."""


class OrchestrationError(NightshiftError):
    """Task could not be started (no agent, agent unavailable, malformed task)."""


class ScrapeError(NightshiftError):
    """Provider usage screen could not be captured or parsed."""
