"""
Preference API for the notification service.

A thin FastAPI surface over the preference store, the device-token registry
and the notification records.
"""

from api.main import app

__all__ = ["app"]
