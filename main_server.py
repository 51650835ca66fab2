#!/usr/bin/env python3
"""
LAN Messenger Server - Main Entry Point

Unified entry point for the server application that integrates:
- Direct messaging with seen receipts
- Presence tracking
- Document attachments

Usage:
    python main_server.py

Optional arguments:
    --host HOST           Bind address (default: 0.0.0.0)
    --port PORT           Main TCP port (default: 9000)
    --upload-dir DIR      Upload directory (default: uploads)
    --database-url URL    SQLAlchemy database URL (default: sqlite:///messenger.db)
    --user ID:NAME        Register a user at startup (repeatable)
    --debug               Verbose logging
"""

import argparse
import asyncio
import logging


def parse_user(value: str):
    """Parse an ID:NAME pair for --user."""
    user_id, sep, full_name = value.partition(':')
    if not user_id.strip():
        raise argparse.ArgumentTypeError(f"Invalid user '{value}', expected ID:NAME")
    return user_id.strip(), (full_name.strip() if sep else user_id.strip())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='LAN Messenger Server')
    parser.add_argument('--host', type=str, default='0.0.0.0',
                        help='Host to bind to (default: 0.0.0.0)')
    parser.add_argument('--port', type=int, default=9000,
                        help='TCP port for main server (default: 9000)')
    parser.add_argument('--upload-dir', type=str, default='uploads',
                        help='Directory for document uploads (default: uploads)')
    parser.add_argument('--database-url', type=str, default='sqlite:///messenger.db',
                        help='Message store URL (default: sqlite:///messenger.db)')
    parser.add_argument('--user', type=parse_user, action='append', default=[],
                        help='Register a user as ID:NAME (repeatable)')
    parser.add_argument('--debug', action='store_true',
                        help='Enable debug logging')
    return parser


async def serve(args):
    from server.main_server import MessengerServer

    server = MessengerServer(
        host=args.host,
        port=args.port,
        upload_dir=args.upload_dir,
        database_url=args.database_url
    )
    server.store.init_db()
    await server.seed_users(args.user)
    await server.run()


def main():
    """Main entry point."""
    from server.utils.logger import logger

    args = build_parser().parse_args()
    if args.debug:
        logger.set_level(logging.DEBUG)

    try:
        logger.info(f"Server binding to {args.host}:{args.port}")
        asyncio.run(serve(args))
    except KeyboardInterrupt:
        logger.info("Server shutting down...")
    except Exception as e:
        logger.exception(f"Server failed to start: {e}")


if __name__ == "__main__":
    main()
