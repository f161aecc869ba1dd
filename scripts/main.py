#!/usr/bin/env python3
"""
Resident Portal API
===================

FastAPI application serving the resident portal with the request guard
(input sanitization, security auditing, rate limiting) installed.
"""
import sys
import logging
from pathlib import Path

# Add project root to Python path
current_dir = Path(__file__).parent
sys.path.insert(0, str(current_dir.parent))

from src.infrastructure.config import SecuritySettings


def configure_logging(settings: SecuritySettings):
    handlers = [logging.StreamHandler()]
    if settings.app_log_file:
        handlers.append(logging.FileHandler(settings.app_log_file))

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def main():
    """Main application entry point"""
    settings = SecuritySettings.from_env()
    configure_logging(settings)

    try:
        from src.presentation.api.main import create_app
        import uvicorn

        app = create_app(settings)

        logging.info(f"Starting resident portal API on {settings.host}:{settings.port}")

        uvicorn.run(
            app,
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
            access_log=True
        )

    except Exception as e:
        logging.error(f"Failed to start resident portal API: {e}")
        sys.exit(1)

if __name__ == "__main__":
    main()
