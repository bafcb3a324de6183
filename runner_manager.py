#!/usr/bin/env python3
"""
GitHub Actions Self-Hosted Runner Keeper

Manages encrypted GitHub tokens and the lifecycle of self-hosted runners:
- Encrypted, password-protected token storage per repository
- Registration and removal with short-lived tokens
- Listener start/stop with handshake detection and graceful shutdown
- Health monitoring and reconciliation with GitHub

Usage:
    python3 runner_manager.py token save org/repo     # Save a token
    python3 runner_manager.py runner add r1 --repo org/repo
    python3 runner_manager.py runner register r1      # Register runner
    python3 runner_manager.py runner start r1         # Start listener
    python3 runner_manager.py runner status           # Show status
    python3 runner_manager.py runner monitor          # Continuous monitoring
"""

import sys

from runner_keeper.cli import main


if __name__ == '__main__':
    sys.exit(main())
