"""Plugin registry, target channels, status rebuilding and job running for test orchestration."""

__version__ = "0.1.0"
__all__ = ["channels", "jobrunner", "model", "pluginregistry", "status"]