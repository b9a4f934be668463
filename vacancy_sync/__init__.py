"""Vacancy sync package.

The package is structured around the import pipeline:
- `models.py` defines the stable schema (what the local store owns).
- `providers/` contains per-source connectors and the registry.
- `client.py` is the shared paginated HTTP client.
- `mapping.py` applies task field mappings and user transforms.
- `orchestrator.py` runs imports and reconciles them against the store.
- `scheduler.py` decides when tasks are due.
"""

__version__ = "0.1.0"
