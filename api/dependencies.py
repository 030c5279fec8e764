from fastapi import Request

from fleetadmin.fleet import FleetManager


def get_fleet(request: Request) -> FleetManager:
    """FleetManager built by the application lifespan."""
    return request.app.state.fleet
