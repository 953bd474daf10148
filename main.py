#!/usr/bin/env python3
"""
Entry point for the photo catalog client.
"""

import argparse
import asyncio
import getpass
import sys

from loguru import logger

from truphotos.auth import SessionManager, SessionState, get_client_identifier
from truphotos.config import load_user_config
from truphotos.errors import TruPhotosError
from truphotos.grouping import format_file_size
from truphotos.jellyfin_api import JellyfinClient
from truphotos.local_store import FileCredentialStore
from truphotos.logging import init_logging
from truphotos.syncer import CatalogSyncEngine


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Sync a Jellyfin photo library and list it by day.")
    parser.add_argument("--server", help="Server address, e.g. https://jellyfin.example.com")
    parser.add_argument("--username", help="Account name (prompted for if needed)")
    parser.add_argument("--library", help="Photo library name (defaults to the first one)")
    parser.add_argument("--logout", action="store_true", help="Forget the saved session and exit")
    return parser.parse_args(argv)


async def run(args, config: dict) -> int:
    store = FileCredentialStore()
    client = JellyfinClient(
        device_id=await get_client_identifier(store),
        timeout=config["request_timeout"],
    )
    sessions = SessionManager(store, client)

    # 1) Pick up where the last run left off
    state = await sessions.restore()

    if args.logout:
        await sessions.logout()
        print("Logged out.")
        return 0

    # 2) Log in if there is no usable session
    if state == SessionState.UNAUTHENTICATED:
        address = args.server or input("Server address: ").strip()
        username = args.username or input("Username: ").strip()
        password = getpass.getpass("Password: ")
        await sessions.login(address, username, password)

    # 3) Choose a server (validated by loading its libraries)
    if sessions.state == SessionState.AUTHENTICATED_NO_SERVER:
        await sessions.select_server(sessions.session.known_servers[0])

    # 4) Choose a library
    libraries = sessions.session.libraries
    if args.library or sessions.state == SessionState.AUTHENTICATED_NO_LIBRARY:
        if not libraries:
            libraries = tuple(await sessions.refresh_libraries())
        wanted = [lib for lib in libraries if not args.library or lib.name == args.library]
        if not wanted:
            print(f"No photo library named '{args.library}'." if args.library else "No photo libraries found.")
            return 1
        await sessions.select_library(wanted[0])

    # 5) Sync the whole catalog and show it by day
    engine = CatalogSyncEngine(sessions, client, page_size=config["page_size"])
    catalog = await engine.sync_all()

    session = sessions.session
    print(f"\n{session.selected_library.name} on {session.selected_server.name}: "
          f"{len(catalog.items)} of {catalog.total_count} photos")
    for bucket in engine.grouped():
        size = sum(p.file_size_bytes or 0 for p in bucket.items)
        print(f"  {bucket.label:<24} {len(bucket.items):>5} photos  {format_file_size(size)}")
    return 0


def main(argv=None):
    args = parse_args(argv)
    config = load_user_config()
    init_logging(level=config["log_level"])
    try:
        code = asyncio.run(run(args, config))
    except TruPhotosError as e:
        logger.error("Sync failed: {}", e)
        print(f"Error: {e}", file=sys.stderr)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
