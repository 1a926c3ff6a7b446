"""Serve the MakeTicket API with uvicorn.

Usage:
    python -m apps.api
"""

from __future__ import annotations

import uvicorn

from apps.api.app import create_app
from packages.common.config import MakeTicketConfig, get_config


def main(config: MakeTicketConfig | None = None) -> None:
    """Run the API server on the configured host and port.

    uvicorn's access log and logging config are disabled: its access lines
    carry the raw query string (where ``api_key`` may appear) and bypass
    redaction. Requests are logged by ``RequestLoggingMiddleware`` instead.
    """
    config = config or get_config()
    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.http_port,
        access_log=False,
        log_config=None,
    )


if __name__ == "__main__":
    main()
