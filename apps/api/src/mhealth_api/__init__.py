"""HTTP API for Modular Health (FastAPI)."""
