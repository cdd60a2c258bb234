import argparse
import asyncio
import getpass
import json
import logging
import os
import sys
from logging.config import dictConfig
from typing import List, Optional

import sentry_sdk
from aiohttp import ClientTimeout

from dropanchor.app.config import Settings
from dropanchor.app.context import AnchorContext
from dropanchor.atproto.publisher import CheckinDraft
from dropanchor.errors import AnchorError, PublishError
from dropanchor.model.place import ElementType, Place
from dropanchor.model.records import StrongRef
from dropanchor.resolve.handle import resolve_subject

logger = logging.getLogger(__name__)


def configure_logging(debug: bool = False):
    logging_config_file = os.getenv("LOGGING_CONFIG_FILE", "")

    if len(logging_config_file) > 0:
        with open(logging_config_file) as fl:
            dictConfig(json.load(fl))
        return

    logging.basicConfig()
    logging.getLogger().setLevel(logging.DEBUG if debug else logging.INFO)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="anchor", description="Check in to places on the AT Protocol."
    )
    commands = parser.add_subparsers(dest="command", required=True)

    login = commands.add_parser("login", help="Sign in with a handle and app password")
    login.add_argument("handle")
    login.add_argument(
        "--password",
        default=os.getenv("ANCHOR_APP_PASSWORD"),
        help="App password (default: $ANCHOR_APP_PASSWORD, else prompt)",
    )

    commands.add_parser("whoami", help="Show the signed-in account")
    commands.add_parser("logout", help="Sign out and forget stored credentials")

    resolve = commands.add_parser("resolve", help="Resolve a handle or DID")
    resolve.add_argument("subject")

    checkin = commands.add_parser("checkin", help="Publish a check-in")
    checkin.add_argument("--name", required=True, help="Place name")
    checkin.add_argument("--lat", type=float, required=True)
    checkin.add_argument("--lon", type=float, required=True)
    checkin.add_argument(
        "--osm-type", choices=[e.value for e in ElementType], default="node"
    )
    checkin.add_argument("--osm-id", type=int, default=0)
    checkin.add_argument("--tag", action="append", default=[], metavar="KEY=VALUE")
    checkin.add_argument("--message", default="")
    checkin.add_argument("--crosspost", action="store_true")
    checkin.add_argument(
        "--address-uri", help="Reuse the address record of a failed attempt"
    )
    checkin.add_argument("--address-cid")

    return parser


def place_from_args(args: argparse.Namespace) -> Place:
    tags = {}
    for tag in args.tag:
        key, _, value = tag.partition("=")
        tags[key] = value
    return Place(
        name=args.name,
        latitude=args.lat,
        longitude=args.lon,
        element_type=ElementType(args.osm_type),
        element_id=args.osm_id,
        tags=tags,
    )


async def run_command(args: argparse.Namespace, settings: Settings) -> int:
    async with await AnchorContext.create(
        settings, start_refresh_task=False
    ) as context:
        if args.command == "login":
            password = args.password or getpass.getpass("App password: ")
            credentials = await context.session.login(args.handle, password)
            print(f"Signed in as {credentials.handle} ({credentials.did})")
            return 0

        if args.command == "whoami":
            snapshot = context.session.snapshot()
            if not snapshot.is_authenticated:
                print("Not signed in")
                return 1
            print(f"{snapshot.handle} ({snapshot.did})")
            print(f"Token expires at {snapshot.expires_at.isoformat()}")
            return 0

        if args.command == "logout":
            await context.session.sign_out()
            print("Signed out")
            return 0

        if args.command == "resolve":
            resolved = await resolve_subject(
                context.http_session,
                settings.plc_hostname,
                args.subject,
                ClientTimeout(total=settings.request_timeout),
            )
            if resolved is None:
                print(f"Unable to resolve {args.subject}")
                return 1
            print(resolved.model_dump_json(indent=2))
            return 0

        if args.command == "checkin":
            address_ref = None
            if args.address_uri and args.address_cid:
                address_ref = StrongRef(uri=args.address_uri, cid=args.address_cid)

            draft = CheckinDraft(place=place_from_args(args), message=args.message)
            try:
                result = await context.publisher.publish(
                    draft, address_ref=address_ref, crosspost=args.crosspost
                )
            except PublishError as e:
                print(f"Check-in failed: {e.message}", file=sys.stderr)
                if e.address_ref is not None:
                    print(
                        f"Retry with --address-uri {e.address_ref.uri} "
                        f"--address-cid {e.address_ref.cid}",
                        file=sys.stderr,
                    )
                return 1

            print(f"Checked in: {result.checkin_ref.uri}")
            if result.crosspost is not None:
                print(f"Crossposted: {result.crosspost.ref.uri}")
            for warning in result.warnings:
                print(f"Warning: {warning}", file=sys.stderr)
            return 0

    return 2


def invoke(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings()  # type: ignore

    configure_logging(settings.debug)

    if settings.sentry_dsn:
        sentry_sdk.init(dsn=settings.sentry_dsn, send_default_pii=False)

    try:
        return asyncio.run(run_command(args, settings))
    except AnchorError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e.message}", file=sys.stderr)
        return 1


def main() -> None:
    sys.exit(invoke())


if __name__ == "__main__":
    main()
