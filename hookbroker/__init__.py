"""HTTP API controllers, routing and a threaded server for a webhook message broker."""

__version__ = "0.1.0"

__all__ = ["web", "stakeholders", "channels", "messages", "server"]