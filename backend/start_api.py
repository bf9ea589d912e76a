#!/usr/bin/env python3
"""
clickcredit API Startup Script

Starts the attribution API with uvicorn.
"""

import sys

import uvicorn


def main():
    """Start the clickcredit API server."""
    print("Starting clickcredit API server...")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("   ReDoc:       http://localhost:8000/redoc")
    print("")

    try:
        uvicorn.run(
            "clickcredit.main:create_app",
            factory=True,
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["clickcredit"],
            log_level="info",
        )
    except KeyboardInterrupt:
        print("\nShutting down clickcredit API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
