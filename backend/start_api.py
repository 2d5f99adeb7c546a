#!/usr/bin/env python3
"""
Conversion Relay API Startup Script

Starts the FastAPI server for local development.
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the conversion relay API server."""
    print("Starting Conversion Relay API Server...")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("")

    env_file = Path(".env")
    if not env_file.exists():
        print("WARNING: No .env file found!")
        print("   Create a .env file with these variables:")
        print("   META_PIXEL_ID=your-pixel-id")
        print("   META_CAPI_ACCESS_TOKEN=your-capi-token")
        print("   STRIPE_SECRET_KEY=your-stripe-key")
        print("")

    try:
        uvicorn.run(
            "capi_bridge.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["capi_bridge"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nShutting down Conversion Relay API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
