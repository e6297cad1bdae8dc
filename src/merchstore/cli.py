"""Command-line interface for merchstore."""

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from . import __version__
from .admin import AdminOrderConsole
from .catalog import CatalogStore
from .config import CONFIG_ENV_VAR, Settings, load_settings
from .errors import MerchStoreError
from .lifecycle import OrderLifecycle
from .order_store import OrderStore
from .pricing import list_shipping_methods
from .utils import format_order, format_price


def get_settings(args: argparse.Namespace) -> Settings:
    """Load settings, applying the global --config and --data-dir options."""
    settings = load_settings(args.config)
    if args.data_dir:
        settings = settings.model_copy(update={"data_dir": Path(args.data_dir)})
    return settings


def get_console(settings: Settings) -> AdminOrderConsole:
    store = OrderStore(settings.data_dir)
    return AdminOrderConsole(store, OrderLifecycle(store))


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the API server."""
    try:
        import uvicorn

        logging.basicConfig(
            level=getattr(logging, args.log_level.upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

        settings = get_settings(args)
        print("Starting merchstore API server...")
        print(f"Data directory: {settings.data_dir}")
        print(f"Payment gateway: {settings.payments.kind}")
        print(f"API docs: http://{args.host}:{args.port}/docs")
        print()

        if args.reload:
            # The reloader re-imports the app, so pass settings through the environment
            if args.config:
                os.environ[CONFIG_ENV_VAR] = str(Path(args.config).resolve())
            os.environ["MERCHSTORE_DATA_DIR"] = str(settings.data_dir)
            app_target = "merchstore.api:create_app"
        else:
            from .api import create_app
            app_target = create_app(settings)

        uvicorn.run(
            app_target,
            host=args.host,
            port=args.port,
            reload=args.reload,
            factory=args.reload,
            log_level=args.log_level.lower(),
            workers=1,
        )
        return 0

    except MerchStoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_config_check(args: argparse.Namespace) -> int:
    """Validate the configuration and print a summary."""
    try:
        settings = get_settings(args)
    except MerchStoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(settings.model_dump(mode="json", exclude={"admin_token"}), indent=2))
        return 0

    pricing = settings.pricing
    print("Configuration OK")
    print(f"  Data directory: {settings.data_dir}")
    print(f"  Currency: {settings.currency}")
    print(f"  Payment gateway: {settings.payments.kind}")
    print(f"  Admin token: {'set' if settings.admin_token else 'not set (admin API disabled)'}")
    print(f"  Tax rate: {pricing.tax_rate * 100:.2f}%")
    if pricing.free_shipping_threshold is not None:
        print(f"  Free shipping from: {format_price(pricing.free_shipping_threshold, settings.currency)}")
    print("  Shipping methods:")
    for method in list_shipping_methods(pricing):
        print(f"    {method.id:<10} {format_price(method.cost, settings.currency):>8}  {method.estimate}")
    print("  Promo codes:")
    for code, rule in sorted(pricing.promo_codes.items()):
        expired = " (expired)" if rule.is_expired() else ""
        print(f"    {code:<10} {rule.kind:<13} {rule.description}{expired}")
    return 0


def cmd_catalog_import(args: argparse.Namespace) -> int:
    """Import products from a JSON file."""
    try:
        settings = get_settings(args)
        path = Path(args.file)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            print(f"Error: cannot read {path}: {e}", file=sys.stderr)
            return 1

        entries = data.get("products", []) if isinstance(data, dict) else data
        if not isinstance(entries, list):
            print("Error: expected a list of products or an object with a 'products' list", file=sys.stderr)
            return 1

        catalog = CatalogStore(settings.data_dir)
        imported = catalog.import_products(entries, replace=args.replace)
        print(f"Imported {len(imported)} product(s) into {catalog.catalog_path}")
        return 0

    except MerchStoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_catalog_list(args: argparse.Namespace) -> int:
    """List catalog products."""
    try:
        settings = get_settings(args)
        products = CatalogStore(settings.data_dir).list_products(active_only=not args.all)

        if not products:
            print("No products found.")
            print("Import products with: merchstore catalog import <file.json>")
            return 0

        if args.json:
            print(json.dumps([p.to_dict() for p in products], indent=2))
            return 0

        print(f"Products ({len(products)}):")
        print()
        for p in products:
            inactive = "" if p.is_active else "  [inactive]"
            print(f"  {p.id}  {p.name}  {format_price(p.base_price, settings.currency)}{inactive}")
            for v in p.variants:
                print(f"      {v.id}  {v.name}  {format_price(p.unit_price(v), settings.currency)}")
        return 0

    except MerchStoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_list(args: argparse.Namespace) -> int:
    """List orders."""
    try:
        console = get_console(get_settings(args))
        result = console.list_orders(status=args.status, search=args.search, page=args.page)

        if not result.orders:
            print("No orders found.")
            return 0

        if args.json:
            data = {
                "orders": [o.to_dict() for o in result.orders],
                "total": result.total,
                "page": result.page,
                "has_more": result.has_more,
            }
            print(json.dumps(data, indent=2))
        else:
            print(f"Orders ({result.total}), page {result.page}:")
            print()
            for order in result.orders:
                print(format_order(order))
            if result.has_more:
                print()
                print(f"More results: --page {result.page + 1}")
        return 0

    except MerchStoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_show(args: argparse.Namespace) -> int:
    """Show one order with its items and timeline."""
    try:
        order = get_console(get_settings(args)).get_order(args.order)
        if args.json:
            print(json.dumps(order.to_dict(), indent=2))
        else:
            print(format_order(order, verbose=True))
        return 0

    except MerchStoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_orders_status(args: argparse.Namespace) -> int:
    """Change an order's status."""
    try:
        console = get_console(get_settings(args))
        order = console.update_status(args.order, args.status, note=args.note, actor=args.actor)
        print(f"Order {order.order_number} is now {order.status.value}")
        return 0

    except MerchStoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="merchstore",
        description="Band merch store: catalog, checkout and order management.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--config", "-c", help=f"Path to JSON config file (default: ${CONFIG_ENV_VAR})"
    )
    parser.add_argument(
        "--data-dir", help="Data directory (overrides configuration)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument(
        "--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)"
    )
    serve_parser.add_argument(
        "--port", "-p", type=int, default=8000, help="Port to bind to (default: 8000)"
    )
    serve_parser.add_argument(
        "--reload", action="store_true", help="Enable auto-reload for development"
    )
    serve_parser.add_argument(
        "--log-level", default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )

    # config (subcommand group)
    config_parser = subparsers.add_parser("config", help="Inspect configuration")
    config_subparsers = config_parser.add_subparsers(dest="config_command")

    # config check
    config_check_parser = config_subparsers.add_parser("check", help="Validate configuration")
    config_check_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # catalog (subcommand group)
    catalog_parser = subparsers.add_parser("catalog", help="Manage the product catalog")
    catalog_subparsers = catalog_parser.add_subparsers(dest="catalog_command")

    # catalog import
    catalog_import_parser = catalog_subparsers.add_parser("import", help="Import products from JSON")
    catalog_import_parser.add_argument("file", help="JSON file with a list of products")
    catalog_import_parser.add_argument(
        "--replace", action="store_true", help="Replace products that already exist"
    )

    # catalog list
    catalog_list_parser = catalog_subparsers.add_parser("list", help="List products")
    catalog_list_parser.add_argument("--all", "-a", action="store_true", help="Include inactive products")
    catalog_list_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # orders (subcommand group)
    orders_parser = subparsers.add_parser("orders", help="Manage orders")
    orders_subparsers = orders_parser.add_subparsers(dest="orders_command")

    # orders list
    orders_list_parser = orders_subparsers.add_parser("list", help="List orders")
    orders_list_parser.add_argument("--status", "-s", help="Only orders in this status")
    orders_list_parser.add_argument("--search", "-q", help="Search order number, email or name")
    orders_list_parser.add_argument("--page", type=int, default=1, help="Page number (default: 1)")
    orders_list_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # orders show
    orders_show_parser = orders_subparsers.add_parser("show", help="Show an order")
    orders_show_parser.add_argument("order", help="Order ID or order number")
    orders_show_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # orders status
    orders_status_parser = orders_subparsers.add_parser("status", help="Change an order's status")
    orders_status_parser.add_argument("order", help="Order ID or order number")
    orders_status_parser.add_argument("status", help="New status")
    orders_status_parser.add_argument("--note", "-n", help="Note recorded in the timeline")
    orders_status_parser.add_argument("--actor", default="cli", help="Who made the change (default: cli)")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    groups = {
        "config": ("config_command", {"check": cmd_config_check}),
        "catalog": ("catalog_command", {"import": cmd_catalog_import, "list": cmd_catalog_list}),
        "orders": (
            "orders_command",
            {"list": cmd_orders_list, "show": cmd_orders_show, "status": cmd_orders_status},
        ),
    }

    # Handle subcommand groups
    if args.command in groups:
        dest, handlers = groups[args.command]
        sub = getattr(args, dest, None)
        if not sub:
            parser.parse_args([args.command, "--help"])
            return 0
        return handlers[sub](args)

    commands = {
        "serve": cmd_serve,
    }

    cmd_func = commands.get(args.command)
    if cmd_func:
        return cmd_func(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
