"""multiauth: multi-provider authentication and session orchestration."""

__version__ = "1.0.0"
