#!/usr/bin/env python3
"""
SlabDesk command line

Usage:
    python cert_lookup.py cert 12345678 --population
    python cert_lookup.py order 2345678 --user me
    python cert_lookup.py snipe create --user me --item 1234567890 --max-bid 50
    python cert_lookup.py snipe list --user me
    python cert_lookup.py snipe bid <snipe id>
    python cert_lookup.py snipe cancel <snipe id>
    python cert_lookup.py snipe resolve <snipe id> --won
"""
import argparse
import sys
from typing import Optional
from tabulate import tabulate

from slabdesk.config import Settings, load_env
from slabdesk.errors import SlabDeskError
from slabdesk.logging_setup import configure_logging
from slabdesk.record_store import open_record_store
from slabdesk.services import Services, build_services
from slabdesk.snipes import Snipe


def render_cert(result) -> None:
    record = result.record
    rows = [
        ["Cert", record["cert_number"]],
        ["Grade", f"{record['grade'] or '-'} {record['grade_description'] or ''}".strip()],
        ["Card", " ".join(filter(None, [record["year"], record["brand"], record["series"], record["card_number"]])) or "-"],
        ["Description", record["description"] or "-"],
        ["Population", record["total_population"]],
        ["Pop Higher", record["population_higher"]],
        ["PSA 10 / PSA 9", f"{record['psa10_count']} / {record['psa9_count']}"],
        ["Updated", record["updated_at"]],
        ["Source", result.source + (" (stale)" if result.degraded else "")],
    ]
    print(tabulate(rows, tablefmt="grid"))


def render_snipes(snipes: list[Snipe]) -> None:
    if not snipes:
        print("No snipes.")
        return
    table_data = []
    for snipe in snipes:
        title = snipe.item_title or ""
        table_data.append([
            snipe.id[:8],
            snipe.item_id,
            title[:40],
            f"${snipe.max_bid:.2f}",
            snipe.status,
            snipe.bid_placed_at or "",
            snipe.error_message or "",
        ])
    headers = ["Snipe", "Item", "Title", "Max Bid", "Status", "Bid Placed", "Error"]
    print(tabulate(table_data, headers=headers, tablefmt="grid"))


def run(args: argparse.Namespace, services: Services) -> int:
    with open_record_store(services.settings.db_path) as store:
        if args.command == "cert":
            result = services.certification_cache(store).get_certification(args.cert_number, args.population)
            render_cert(result)
            return 0

        if args.command == "order":
            order = services.order_tracker(store).get_order(args.user, args.order_number)
            print(tabulate(sorted(order.items()), tablefmt="grid"))
            return 0

        lifecycle = services.snipe_lifecycle(store)
        if args.snipe_command == "create":
            snipe = lifecycle.create_snipe(
                args.user, args.item, args.max_bid,
                scheduled=args.scheduled, item_title=args.title,
            )
        elif args.snipe_command == "list":
            render_snipes(lifecycle.list_snipes(args.user, args.status))
            return 0
        elif args.snipe_command == "bid":
            snipe = lifecycle.place_bid(args.snipe_id)
        elif args.snipe_command == "cancel":
            snipe = lifecycle.cancel(args.snipe_id)
        else:
            snipe = lifecycle.resolve_auction(args.snipe_id, args.won)

        render_snipes([snipe])
        return 1 if snipe.status == "error" else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="PSA cert lookups and eBay snipe bids")
    sub = parser.add_subparsers(dest="command", required=True)

    cert = sub.add_parser("cert", help="Look up a PSA certification (cached for 24h)")
    cert.add_argument("cert_number")
    cert.add_argument("--population", action="store_true", help="Request PSA 10/9 population breakdown")

    order = sub.add_parser("order", help="Check PSA grading order progress")
    order.add_argument("order_number")
    order.add_argument("--user", required=True)

    snipe = sub.add_parser("snipe", help="Manage snipe bids")
    snipe_sub = snipe.add_subparsers(dest="snipe_command", required=True)

    create = snipe_sub.add_parser("create")
    create.add_argument("--user", required=True)
    create.add_argument("--item", required=True, help="eBay item id")
    create.add_argument("--max-bid", required=True)
    create.add_argument("--title")
    create.add_argument("--scheduled", action="store_true", help="Queue for the scheduler instead of pending")

    listing = snipe_sub.add_parser("list")
    listing.add_argument("--user", required=True)
    listing.add_argument("--status")

    for name in ("bid", "cancel"):
        snipe_sub.add_parser(name).add_argument("snipe_id")

    resolve = snipe_sub.add_parser("resolve", help="Record the auction outcome")
    resolve.add_argument("snipe_id")
    resolve.add_argument("--won", action="store_true")

    return parser


def main(argv: Optional[list[str]] = None, services: Optional[Services] = None) -> int:
    args = build_parser().parse_args(argv)
    if services is None:
        settings = Settings.from_env(load_env())
        configure_logging(settings.log_level)
        services = build_services(settings)

    try:
        return run(args, services)
    except (SlabDeskError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
