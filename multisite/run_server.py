#!/usr/bin/env python3
"""
Coordination server launcher script.

Starts the uvicorn server for the multi-site coordination API.

Environment:
    MULTISITE_HOST (default 127.0.0.1)
    MULTISITE_PORT (default 8000)
"""

import logging
import os


def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "multisite.api:app",
        host=os.environ.get("MULTISITE_HOST", "127.0.0.1"),
        port=int(os.environ.get("MULTISITE_PORT", "8000")),
        reload=False,
    )


if __name__ == "__main__":
    main()
