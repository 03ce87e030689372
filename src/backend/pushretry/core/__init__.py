"""Core configuration, dependencies, logging and metrics."""
