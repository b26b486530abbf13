"""opsflow: event bus, task offers, SLA escalation and workflow triggers."""

__version__ = "1.0.0"
