#!/usr/bin/env python3
"""
Commit Tracker Service Entry Point

This script starts the Commit Tracker microservice.
"""

import uvicorn

from config.settings import is_production, settings


def main():
    """Start the Commit Tracker service."""
    uvicorn.run(
        "services.commit_tracker.main:app",
        host=settings.service.host,
        port=settings.service.commit_tracker_port,
        reload=settings.debug and not is_production(),
        log_level="info" if settings.debug else "warning",
    )


if __name__ == "__main__":
    main()
