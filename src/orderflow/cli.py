"""Command-line interface for orderflow."""

import argparse
import json
import logging
import sys
from pathlib import Path

from . import __version__
from .config import Settings
from .errors import InvalidInputError, OrderflowError, OrderNotFoundError
from .models import Discount, Order, OrderStatus, Product, User
from .store import DISCOUNTS, ORDERS, PRODUCTS, USERS, DocumentStore


def get_settings(args: argparse.Namespace) -> Settings:
    """Settings from the environment, with --data-dir taking precedence."""
    settings = Settings.from_env()
    if getattr(args, "data_dir", None):
        settings.data_dir = Path(args.data_dir)
    return settings


def get_store(args: argparse.Namespace) -> DocumentStore:
    settings = get_settings(args)
    if settings.data_dir is None:
        raise InvalidInputError("No data directory: pass --data-dir or set ORDERFLOW_DATA_DIR")
    return DocumentStore(settings.data_dir, settings.transaction_retries)


def format_order(order: Order, verbose: bool = False) -> str:
    """One order as a short block of text."""
    paid = "paid" if order.is_paid else "unpaid"
    lines = [
        f"{order.order_id}  {order.status.value}  {order.total_price} "
        f"({order.payment_method.value}, {paid})",
        f"  User: {order.user_id}  Created: {order.created_at}",
    ]
    if order.courier_order_no:
        lines.append(f"  Courier: {order.courier_order_no}")
    if order.tracking_number:
        lines.append(f"  Tracking: {order.shipping_carrier} {order.tracking_number}")
    for line in order.products:
        lines.append(
            f"  - {line.product_name} [{line.color}/{line.size}] x{line.quantity} "
            f"@ {line.price_at_order}  {line.status.value}"
        )
        if verbose and line.refund:
            lines.append(
                f"      refund {line.refund.state.value} {line.refund.amount} "
                f"{line.refund.transaction_id or ''}".rstrip()
            )
    if verbose and order.discount_total:
        lines.append(f"  Discounts: {order.discount_total}")
    return "\n".join(lines)


def cmd_show(args: argparse.Namespace) -> int:
    """Show one order."""
    try:
        store = get_store(args)
        doc = store.get(ORDERS, args.order_id)
        if doc is None:
            raise OrderNotFoundError(args.order_id)
        order = Order.from_dict(doc)

        if args.json:
            print(json.dumps(order.to_dict(), indent=2))
        else:
            print(format_order(order, verbose=True))
        return 0

    except OrderflowError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_list(args: argparse.Namespace) -> int:
    """List orders, newest first."""
    try:
        store = get_store(args)
        status = OrderStatus(args.status) if args.status else None
        docs = store.find(ORDERS, lambda d: status is None or d.get("status") == status.value)
        orders = sorted((Order.from_dict(d) for d in docs), key=lambda o: o.created_at, reverse=True)

        if not orders:
            print("No orders found.")
            return 0

        if args.json:
            print(json.dumps([o.to_dict() for o in orders], indent=2))
        else:
            print(f"Orders ({len(orders)}):")
            print()
            for order in orders:
                print(format_order(order, verbose=args.verbose))
        return 0

    except ValueError:
        print(f"Error: Invalid status: {args.status}", file=sys.stderr)
        return 1
    except OrderflowError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_import_catalog(args: argparse.Namespace) -> int:
    """
    Load products, users and discount codes from a JSON file.

    The file holds optional "products", "users" and "discounts" lists in
    the store's document format. Existing documents with the same id are
    replaced.
    """
    try:
        store = get_store(args)
        path = Path(args.catalog)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise InvalidInputError(f"Catalog file not found: {path}")
        except json.JSONDecodeError as e:
            raise InvalidInputError(f"Catalog file is not valid JSON: {e}")

        try:
            products = [Product.from_dict(p) for p in data.get("products", [])]
            users = [User.from_dict(u) for u in data.get("users", [])]
            discounts = [Discount.from_dict(d) for d in data.get("discounts", [])]
        except (KeyError, ValueError) as e:
            raise InvalidInputError(f"Invalid catalog entry: {e}")

        for product in products:
            store.put(PRODUCTS, product.product_id, product.to_dict())
        for user in users:
            store.put(USERS, user.user_id, user.to_dict())
        for discount in discounts:
            discount.code = discount.code.upper()
            store.put(DISCOUNTS, discount.code, discount.to_dict())

        print(
            f"Imported {len(products)} products, {len(users)} users, "
            f"{len(discounts)} discount codes"
        )
        return 0

    except OrderflowError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_refund_status(args: argparse.Namespace) -> int:
    """Show refund progress of an order, line by line."""
    try:
        store = get_store(args)
        doc = store.get(ORDERS, args.order_id)
        if doc is None:
            raise OrderNotFoundError(args.order_id)
        order = Order.from_dict(doc)

        print(f"Order {order.order_id}: refund {order.refund_status.value}")
        print(f"  Captured: {order.captured_amount if order.captured_amount is not None else '-'}")
        print(f"  Refunded: {order.refunded_amount}")
        if order.refund_transaction_id:
            print(f"  Last refund: {order.refund_transaction_id} on {order.refund_date}")
        for line in order.products:
            if line.refund is None:
                continue
            print(
                f"  - {line.line_id} {line.product_name}: {line.refund.state.value} "
                f"{line.refund.amount} (key {line.refund.idempotency_key})"
            )
        return 0

    except OrderflowError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the API server."""
    try:
        import uvicorn

        settings = get_settings(args)
        logging.basicConfig(
            level=getattr(logging, settings.log_level.upper(), logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

        from .api import app, set_services
        from .services import Services

        set_services(Services.from_settings(settings))

        print("Starting orderflow API server...")
        print(f"Data: {settings.data_dir or 'in memory'}")
        print(f"API docs: http://{args.host}:{args.port}/docs")
        print()

        uvicorn.run(
            app,
            host=args.host,
            port=args.port,
            workers=1,  # One process: the document store lives in memory
        )
        return 0

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="orderflow",
        description="Order placement, payment verification and returns service.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--data-dir", help="Data directory (default: $ORDERFLOW_DATA_DIR)"
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

    # show
    show_parser = subparsers.add_parser("show", help="Show an order")
    show_parser.add_argument("order_id", help="Order ID")
    show_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # list
    list_parser = subparsers.add_parser("list", help="List orders")
    list_parser.add_argument("--status", "-s", help="Only orders in this status")
    list_parser.add_argument("--json", action="store_true", help="Output as JSON")
    list_parser.add_argument(
        "--verbose", "-v", action="store_true", help="Show refund details"
    )

    # import-catalog
    import_parser = subparsers.add_parser(
        "import-catalog", help="Load products, users and discount codes from JSON"
    )
    import_parser.add_argument("catalog", help="Path to catalog JSON file")

    # refund-status
    refund_parser = subparsers.add_parser("refund-status", help="Show refund progress of an order")
    refund_parser.add_argument("order_id", help="Order ID")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    commands = {
        "serve": cmd_serve,
        "show": cmd_show,
        "list": cmd_list,
        "import-catalog": cmd_import_catalog,
        "refund-status": cmd_refund_status,
    }

    cmd_func = commands.get(args.command)
    if cmd_func:
        return cmd_func(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
