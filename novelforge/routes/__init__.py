"""HTTP routers. Each one reads the service container from app state."""

from fastapi import Request

from novelforge.container import ServiceContainer


def get_services(request: Request) -> ServiceContainer:
    """FastAPI dependency: the container built by the app lifespan."""
    return request.app.state.services
