"""
Load environment variables, create the Flask app instance, and start the
development server.

Environment Variables
---------------------
HOST: The interface/IP the server should bind to. Defaults to "127.0.0.1".
PORT: The port number the server should listen on. Defaults to "2929".
LOG_LEVEL: Logging level name. Defaults to "INFO".
POLARIS_SERVER_URL, POLARIS_SERVER_API_KEY, POLARIS_SERVER_NAME,
POLARIS_SERVER_TZ: Optional media server registered on first start.
"""

import logging
from os import getenv

from dotenv import load_dotenv

from app import create_app


def main() -> None:
    """
    Resolve settings from env variables, instantiate app via
    create_app(), and start the server.
    """
    load_dotenv()

    logging.basicConfig(
        level=getattr(logging, getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    host = getenv("HOST", "127.0.0.1")
    port = int(getenv("PORT", "2929"))

    config = {}
    server_url = getenv("POLARIS_SERVER_URL")
    if server_url:
        config["SEED_SERVER"] = {
            "base_url": server_url,
            "api_key": getenv("POLARIS_SERVER_API_KEY", ""),
            "name": getenv("POLARIS_SERVER_NAME"),
            "timezone": getenv("POLARIS_SERVER_TZ"),
        }

    app = create_app(config or None)
    app.run(host=host, port=port)


if __name__ == "__main__":
    main()
