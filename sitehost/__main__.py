"""Operator commands: ``python -m sitehost <command>``."""

import argparse
import json
import logging
import sys
from typing import List, Optional

from . import storage
from .logs import configure_logging
from .proxy import CaddyAdminClient, build_proxy_synchronizer
from .quota import QuotaLedger
from .sites import SiteManager, isoformat_utc

logger = logging.getLogger("sitehost.cli")


def _site_manager() -> SiteManager:
    client = CaddyAdminClient(
        storage.CADDY_ADMIN_URL,
        storage.CADDY_SERVER_NAME,
        timeout=float(storage.PROXY_TIMEOUT_SECONDS),
    )
    synchronizer = build_proxy_synchronizer(
        storage.PROXY_SYNC_MODE, client, storage.DOMAIN, list_sites=storage.list_sites
    )
    return SiteManager(
        storage, synchronizer, QuotaLedger(storage), storage.SITES_ROOT, storage.DOMAIN
    )


def create_key(args: argparse.Namespace) -> int:
    raw_key, row = storage.create_api_key(args.name)
    print(f"Name:    {row['name']}")
    print(f"ID:      {row['id']}")
    print(f"Created: {isoformat_utc(float(row['created_at']))}")
    print(f"API key: {raw_key}")
    print("Save this key now; it cannot be recovered.")
    return 0


def sync(args: argparse.Namespace) -> int:
    result = _site_manager().sync_all()
    print(json.dumps(result.to_payload(), indent=2))
    return 0 if result.applied else 1


def recount(args: argparse.Namespace) -> int:
    changed = _site_manager().recount_quotas()
    print(f"Recounted storage usage; {changed} site(s) corrected.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sitehost", description="SiteHost operator commands")
    commands = parser.add_subparsers(dest="command", required=True)

    key_parser = commands.add_parser("create-key", help="Create an API key and print it once")
    key_parser.add_argument("name", help="Label stored alongside the key")
    key_parser.set_defaults(handler=create_key)

    sync_parser = commands.add_parser("sync", help="Push every registered site to the proxy")
    sync_parser.set_defaults(handler=sync)

    recount_parser = commands.add_parser("recount", help="Recount storage usage from disk")
    recount_parser.set_defaults(handler=recount)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    configure_logging(storage.LOGS_DIR)
    args = build_parser().parse_args(argv)
    return args.handler(args)


if __name__ == "__main__":
    sys.exit(main())
