#!/usr/bin/env python3
"""
Main Entry Point for TubeDigest
Starts the FastAPI web server (API and background scheduler)
"""

import os

import uvicorn
from dotenv import load_dotenv

from tubedigest.core.constants import WEB_HOST, WEB_PORT

# Load environment variables from .env file
load_dotenv()

if __name__ == "__main__":
    uvicorn.run(
        "tubedigest.web.app:app",
        host=os.getenv('HOST', WEB_HOST),
        port=int(os.getenv('PORT', WEB_PORT)),
        reload=False,
        log_level=os.getenv('LOG_LEVEL', 'info').lower()
    )
