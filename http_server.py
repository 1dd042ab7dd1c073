#!/usr/bin/env python3
"""
tunepreview HTTP Server Runner
"""

from tunepreview.crosscutting.config import get_config_manager
from tunepreview.crosscutting.logging import setup_logging
from tunepreview.interfaces.http import HTTPServer


def main():
    """Run the HTTP server."""
    server = HTTPServer(
        host='localhost',
        port=3000,
        debug=False,
        config=get_config_manager().get_player_config()
    )
    # Every log line of this process belongs to the server's single session
    setup_logging(level='INFO', session_id=server.session.session_id)
    try:
        server.run()
    finally:
        server.shutdown()


if __name__ == '__main__':
    main()
