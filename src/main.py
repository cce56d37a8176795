"""Command line entry point: connect to a server and list its top-level entities."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging

from models.omero import Credentials
from utils import OmeroClientError, ServiceKeys, configure_container, get_config, setup_logging

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    config = get_config()
    parser = argparse.ArgumentParser(
        prog=config.app.name,
        description="Browse the projects and screens of an OMERO.web server.",
    )
    parser.add_argument("server", help="Address of the server (any webclient link works)")
    parser.add_argument("--username", help="Log in as this user instead of the public user")
    parser.add_argument("--log-level", help="Console log level (DEBUG, INFO, WARNING, ...)")
    parser.add_argument("--version", action="version", version=config.app.version)
    return parser.parse_args(argv)


async def _browse(server: str, credentials: Credentials) -> int:
    container = configure_container()
    registry = container.resolve(ServiceKeys.CLIENT_REGISTRY)
    try:
        client = await registry.create_or_get(server, credentials)
        projects, screens = await asyncio.gather(
            client.apis_handler.get_projects(), client.apis_handler.get_screens()
        )

        print(f"{client}")
        for project in projects:
            print(f"  {project} ({project.child_count} datasets)")
        for screen in screens:
            print(f"  {screen} ({screen.child_count} plates)")
        return 0
    except OmeroClientError as e:
        logger.error("Cannot browse %s: %s", server, e)
        return 1
    finally:
        await registry.close_all()
        container.resolve(ServiceKeys.THUMBNAIL_CACHE).close()


def main(argv: list[str] | None = None) -> int:
    """Run the command line client.

    Returns:
        Exit code
    """
    args = _parse_args(argv)
    setup_logging(log_level=args.log_level)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    if args.username:
        credentials = Credentials.regular(args.username, getpass.getpass("Password: "))
    else:
        credentials = Credentials.public()

    try:
        return asyncio.run(_browse(args.server, credentials))
    except KeyboardInterrupt:
        return 130
