#!/usr/bin/env python3
"""
Playlist Studio HTTP Server Runner
"""

import os

from dotenv import load_dotenv

from playlist_studio.crosscutting.logging import setup_logging
from playlist_studio.interfaces.http import HTTPServer


def main():
    """Run the HTTP server."""
    load_dotenv()
    setup_logging(os.getenv('STUDIO_LOG_LEVEL', 'INFO'), json_logs=False)
    server = HTTPServer(
        host=os.getenv('STUDIO_HOST', '127.0.0.1'),
        port=int(os.getenv('STUDIO_PORT', '8080')),
        debug=os.getenv('STUDIO_DEBUG') == '1',
    )
    server.run()


if __name__ == '__main__':
    main()
