"""FastAPI application and routers for the routing service."""
