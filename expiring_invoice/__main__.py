"""Command-line entrypoint: serve, sweep, build, watch or preview invoices."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional

from . import config
from .server import DependencyError, RegistrationError

SAMPLE_INVOICE = {
    "id": "preview",
    "clientName": "Acme Corp",
    "clientEmail": "cto@acme.com",
    "currency": "USD",
    "amount": 8625,
    "items": [
        {"description": "Web Application Development", "hours": 40, "rate": 150},
        {"description": "UI/UX Design Consultation", "hours": 10, "rate": 200},
        {"description": "Project Management", "hours": 5, "rate": 125},
    ],
}


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="expiring_invoice")
    commands = parser.add_subparsers(dest="command")

    commands.add_parser("serve", help="run the registration and invoice page server")

    sweep = commands.add_parser("sweep", help="email clients whose invoices have expired")
    sweep.add_argument("--loop", action="store_true", help="repeat every INVOICE_SWEEP_INTERVAL_SECONDS")

    build = commands.add_parser("build", help="render a static invoice page from a JSON payload")
    build.add_argument("payload", help="path to the invoice JSON file")
    build.add_argument("--register", action="store_true", help="register the built invoice with WORKER_URL")

    watch = commands.add_parser("watch", help="count down a registered invoice in the terminal")
    watch.add_argument("invoice_id")

    preview = commands.add_parser("preview", help="render the self-destruct animation to a GIF")
    preview.add_argument("output", help="GIF path to write")
    preview.add_argument("--payload", help="invoice JSON file (defaults to a sample invoice)")
    preview.add_argument("--seed", type=int, default=None)

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = parse_args(argv)
    command = args.command or "serve"

    try:
        if command == "serve":
            from . import run

            run(config.HOST, config.PORT)
        elif command == "sweep":
            from . import run_sweep
            from .sweep import run_periodically

            if args.loop:
                run_periodically(lambda: run_sweep(config.DB_PATH), config.SWEEP_INTERVAL_SECONDS)
            else:
                run_sweep(config.DB_PATH)
        elif command == "build":
            from . import build_invoice
            from .server import register_invoice

            with open(args.payload, "r", encoding="utf-8") as handle:
                payload = json.load(handle)
            meta = build_invoice(payload, config.PUBLIC_DIR, expiry_days=config.EXPIRY_DAYS)
            print(json.dumps(meta, indent=2))
            if args.register:
                register_invoice(meta, config.WORKER_URL, config.REGISTER_SECRET)
        elif command == "watch":
            from .store import InvoiceStore
            from .watch import watch_expiry

            store = InvoiceStore(config.DB_PATH)
            try:
                invoice = store.get(args.invoice_id)
            finally:
                store.close()
            if invoice is None:
                print(f"Unknown invoice: {args.invoice_id}", file=sys.stderr)
                raise SystemExit(1)
            watch_expiry(invoice.expiry_timestamp)
        elif command == "preview":
            from .preview import render_preview

            invoice = SAMPLE_INVOICE
            if args.payload:
                with open(args.payload, "r", encoding="utf-8") as handle:
                    invoice = json.load(handle)
            render_preview(invoice, args.output, seed=args.seed)
    except (DependencyError, RegistrationError) as exc:
        print(str(exc), file=sys.stderr)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
