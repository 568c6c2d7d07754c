"""
Entrypoint to run the bookings service with uvicorn.

Example:
  python -m apps.bookings --reload
"""
import os
import sys

import uvicorn


def main() -> None:
    reload = "--reload" in sys.argv[1:] or os.getenv("BOOKINGS_RELOAD", "false").lower() == "true"
    host = os.getenv("BOOKINGS_HOST", "0.0.0.0")
    port = int(os.getenv("BOOKINGS_PORT", "8000"))
    uvicorn.run(
        "apps.bookings.app.main:app",
        host=host,
        port=port,
        reload=reload,
        reload_dirs=["apps", "libs"] if reload else None,
    )


if __name__ == "__main__":
    main()
