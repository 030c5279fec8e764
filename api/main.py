"""
Main FastAPI Application
=======================

FastAPI entry point for the device fleet administration system. It replaces
the desktop front end's bindings with REST endpoints over the fleetadmin
package.

Features:
- FastAPI app with CORS configuration
- FleetManager lifecycle (registry load at startup, HTTP session close at shutdown)
- Route registration for devices, firmware, backups and cameras
- Error mapping from fleet errors to HTTP status codes
- Logging configuration and health check
"""

import logging
from datetime import datetime, timezone
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from fleetadmin import __version__
from fleetadmin.config import settings
from fleetadmin.error_handling import (
	FleetError, PreconditionError, DeviceNotFoundError, PersistenceError,
	DeviceUnreachableError, DeviceLoginError
)
from fleetadmin.fleet import FleetManager
from api.routers import device_router, firmware_router, backup_router, camera_router

# Configure logging
logging.basicConfig(
	level=getattr(logging, settings.log_level.upper(), logging.INFO),
	format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

ERROR_STATUS = [
	(PreconditionError, status.HTTP_400_BAD_REQUEST),
	(DeviceNotFoundError, status.HTTP_404_NOT_FOUND),
	(DeviceLoginError, status.HTTP_502_BAD_GATEWAY),
	(DeviceUnreachableError, status.HTTP_502_BAD_GATEWAY),
	(PersistenceError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
	"""Application lifecycle management - startup and shutdown events."""
	logger.info("Starting up device fleet administration...")
	
	fleet = getattr(app.state, "fleet", None)
	if fleet is None:
		fleet = FleetManager(settings)
		app.state.fleet = fleet
	
	try:
		fleet.start()
	except Exception as e:
		logger.error(f"Fleet manager initialization failed: {e}")
		raise
	
	logger.info("Device fleet administration startup completed")
	
	yield
	
	logger.info("Shutting down device fleet administration...")
	fleet.close()


def create_app(fleet: Optional[FleetManager] = None) -> FastAPI:
	"""Build the application; ``fleet`` replaces the settings-built FleetManager."""
	app = FastAPI(
		title="Device Fleet Administration",
		description="Discovery, firmware updates, database backup/restore and camera "
					"configuration for a fleet of embedded network devices.",
		version=__version__,
		docs_url="/api/docs",
		openapi_url="/api/openapi.json",
		lifespan=lifespan
	)
	if fleet is not None:
		app.state.fleet = fleet
	
	app.add_middleware(
		CORSMiddleware,
		allow_origins=settings.cors_origins.split(","),
		allow_credentials=True,
		allow_methods=["*"],
		allow_headers=["*"],
	)
	
	@app.exception_handler(RequestValidationError)
	async def validation_exception_handler(request: Request, exc: RequestValidationError):
		"""Handle request validation errors."""
		return JSONResponse(
			status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
			content={
				"message": "Validation error",
				"details": exc.errors(),
				"success": False
			}
		)
	
	@app.exception_handler(HTTPException)
	async def http_exception_handler(request: Request, exc: HTTPException):
		"""Handle HTTP exceptions."""
		return JSONResponse(
			status_code=exc.status_code,
			content={
				"message": exc.detail,
				"success": False
			}
		)
	
	@app.exception_handler(FleetError)
	async def fleet_exception_handler(request: Request, exc: FleetError):
		"""Map fleet errors to HTTP status codes."""
		status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
		for error_type, code in ERROR_STATUS:
			if isinstance(exc, error_type):
				status_code = code
				break
		logger.warning(f"{request.method} {request.url.path} failed: {exc}")
		return JSONResponse(
			status_code=status_code,
			content={
				"message": str(exc),
				"category": exc.category.value,
				"success": False
			}
		)
	
	@app.get("/api/health", tags=["Health"])
	def health_check():
		"""Health check endpoint."""
		fleet_manager = getattr(app.state, "fleet", None)
		return {
			"status": "healthy" if fleet_manager is not None else "starting",
			"timestamp": datetime.now(timezone.utc).isoformat(),
			"version": __version__,
			"devices": len(fleet_manager.registry) if fleet_manager is not None else 0
		}
	
	app.include_router(device_router.router, prefix="/api/devices", tags=["Devices"])
	app.include_router(firmware_router.router, prefix="/api/firmware", tags=["Firmware"])
	app.include_router(backup_router.router, prefix="/api/backups", tags=["Backups"])
	app.include_router(camera_router.router, prefix="/api/cameras", tags=["Cameras"])
	
	return app


app = create_app()


if __name__ == "__main__":
	import uvicorn
	
	uvicorn.run(
		"api.main:app",
		host="0.0.0.0",
		port=8000,
		log_level=settings.log_level.lower(),
		access_log=True
	)
