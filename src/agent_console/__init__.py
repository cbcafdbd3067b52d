"""Agent console chat backend."""
