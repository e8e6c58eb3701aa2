from __future__ import annotations

import logging
import os
import sys

import uvicorn


def main() -> None:
    logging.basicConfig(
        level=os.getenv("EVENTDESK_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    host = os.getenv("EVENTDESK_HOST", "0.0.0.0")
    port = int(os.getenv("EVENTDESK_PORT", "8080"))
    uvicorn.run("eventdesk.web_admin:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
