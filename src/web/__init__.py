"""HTTP surface for the lodge security core (FastAPI routers, dependencies, middleware)."""
