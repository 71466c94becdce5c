"""ClamAV mock is a fake clamd daemon for testing clamd clients.

It speaks the clamd protocol over TCP and reports the EICAR test file
as a virus, everything else as clean.  Nothing is really scanned.

Configuration: all configuration is managed through environment
variables.  All environment variables starting with "CLAMD_" prefix
are loaded into the application.

No authentication nor timeout of any type is implemented whatsoever:
never expose it outside a test environment.

The following variables are accepted:

 - CLAMD_TCP_PORT : TCP port to listen on, defaults to 3310
 - CLAMD_TCP_HOST : address to bind, defaults to all interfaces
 - CLAMD_LOG_LEVEL : logging level, defaults to INFO

"""
import logging
import os

from flask import Config
from flask.logging import default_handler

from .clamd import ClamdTCPServer

DEFAULT_PORT = 3310

##
# Init config and logging
##

config = Config(os.path.dirname(os.path.abspath(__file__)))
config.from_mapping(
    TCP_HOST="0.0.0.0",
    TCP_PORT=DEFAULT_PORT,
    LOG_LEVEL="INFO",
)
# load all env starting with CLAMD_ and make them available in
# config without CLAMD_
config.from_prefixed_env("CLAMD")

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    """Send our logs to stderr at the configured level.
    """
    if default_handler not in logger.handlers:
        logger.addHandler(default_handler)
    logger.setLevel(str(config.get("LOG_LEVEL")).upper())


##
# Helpers
##


def tcp_port() -> int:
    """Port to listen on, falling back to default if unset or invalid.
    """
    value = config.get("TCP_PORT")
    try:
        # env values are decoded as JSON, so "true" comes in as a bool
        if isinstance(value, bool) or \
                (isinstance(value, float) and not value.is_integer()):
            raise ValueError(value)
        port = int(value)
    except (TypeError, ValueError):
        logger.warning("Invalid CLAMD_TCP_PORT %r, using %d",
                       value, DEFAULT_PORT)
        return DEFAULT_PORT
    return port or DEFAULT_PORT


def create_server() -> ClamdTCPServer:
    """Get a server instance based on config.
    """
    return ClamdTCPServer((config.get("TCP_HOST"), tcp_port()))


##
# Runner
##


def main() -> None:
    setup_logging()
    server = create_server()
    host, port = server.server_address[:2]
    logger.info("clamd mock listening on %s:%d", host, port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        server.server_close()


if __name__ == "__main__":
    main()
