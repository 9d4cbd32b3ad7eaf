"""AppStack: local service, port and application-install orchestration."""

__version__ = "1.0.0"
