"""
Device Fleet Administration
===========================

This package contains the operational modules for the device-fleet-admin system:
- Device registry with durable storage and region filtering
- HTTP device probing, login and token-authorized API calls
- Bounded fan-out orchestration shared by every bulk operation
- Network scanning, firmware updates and camera batch configuration
- SSH backup/restore of the on-device database with rollback
- Backup-point storage and error handling utilities
"""

__version__ = "1.0.0"
__author__ = "Device Fleet Admin Team"
