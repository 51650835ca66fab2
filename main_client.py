#!/usr/bin/env python3
"""
LAN Messenger Client - Main Entry Point

Command-line client that integrates:
- Direct messaging with seen receipts
- Online presence
- Document attachments

Usage:
    python main_client.py --user-id ID [--server-ip HOST] [--port PORT]

Optional arguments:
    --poll-interval SECONDS   History re-fetch interval, 0 disables (default: 120)
    --download-dir DIR        Where downloaded documents are saved (default: downloads)
    --debug                   Verbose logging
"""

import sys
import os
import argparse
import asyncio
import logging

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='LAN Messenger Client')
    parser.add_argument('--user-id', type=str, default=None,
                        help='User id to announce (default: will be asked)')
    parser.add_argument('--server-ip', type=str, default='localhost',
                        help='Server IP address (default: localhost)')
    parser.add_argument('--port', type=int, default=9000,
                        help='Server port (default: 9000)')
    parser.add_argument('--poll-interval', type=float, default=120,
                        help='Seconds between history re-fetches, 0 disables (default: 120)')
    parser.add_argument('--download-dir', type=str, default=None,
                        help='Directory for downloaded documents (default: downloads)')
    parser.add_argument('--debug', action='store_true',
                        help='Enable debug logging')
    return parser


def run_cli_client(args):
    """Run the CLI client."""
    from client.main_client import MessengerClient
    from client.utils.logger import logger

    if args.debug:
        logger.set_level(logging.DEBUG)

    user_id = args.user_id
    if not user_id:
        user_id = input("Enter user id: ").strip()
    if not user_id:
        logger.error("[ERROR] A user id is required")
        sys.exit(1)

    client = MessengerClient(
        host=args.server_ip,
        port=args.port,
        user_id=user_id,
        history_poll_interval=args.poll_interval,
        download_dir=args.download_dir
    )

    try:
        asyncio.run(client.interactive_mode())
    except KeyboardInterrupt:
        print("\n[INFO] Interrupted by user")
    except Exception as e:
        logger.log_error("client", e)


def main():
    """Main entry point."""
    run_cli_client(build_parser().parse_args())


if __name__ == "__main__":
    main()
