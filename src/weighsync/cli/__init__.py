"""weighsync CLI.

Command-line interface for running and triggering sync.

Usage:
    weighsync serve                 Run background sync until interrupted
    weighsync sync auto             Peer-first sync with cloud fallback
    weighsync sync upload           Push pending records to the cloud
    weighsync discover              List same-tenant peers on the LAN
    weighsync config show           Show configuration
"""

from weighsync.cli.main import app, main

__all__ = ["app", "main"]
