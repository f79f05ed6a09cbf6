#!/usr/bin/env python3
"""
Commit Tracker Service Entry Point

This script starts the Commit Tracker service.
"""

import uvicorn
from config.settings import get_settings


def main(reload: bool = False):
    """Start the Commit Tracker service."""
    settings = get_settings()

    uvicorn.run(
        "services.commit_tracker.main:app",
        host=settings.service.host,
        port=settings.service.port,
        reload=reload,
        log_level="debug" if settings.monitoring.log_level == "DEBUG" else "info"
    )


if __name__ == "__main__":
    main()
