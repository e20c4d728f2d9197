"""Optional integrations (FastAPI, Prometheus)."""
