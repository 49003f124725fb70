"""Dependency injection providers."""
from .providers import active_settings, configure, get_job_runner, get_job_store, get_settings

__all__ = ["active_settings", "configure", "get_job_runner", "get_job_store", "get_settings"]
