"""CRM service launcher: starts Uvicorn.

Migrations run in the application lifespan when DATABASE_URL is set.
"""
from __future__ import annotations
import os


def main() -> None:
    # Start the ASGI server
    import uvicorn

    uvicorn.run(
        "edcrm.main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
        log_config=None,
    )


if __name__ == "__main__":
    main()
