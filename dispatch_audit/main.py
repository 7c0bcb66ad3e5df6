from __future__ import annotations

import argparse
import json
import logging
import sys

from dispatch_audit.barcode import canonicalize_barcode
from dispatch_audit.config import Settings, load_dotenv
from dispatch_audit.errors import LabelParseError
from dispatch_audit.logger import configure_logging
from dispatch_audit.nomenclature import parse_label
from dispatch_audit.store import ScanStore

logger = logging.getLogger(__name__)


def run_init_db(settings: Settings) -> int:
    ScanStore(settings.db_path, timeout_seconds=settings.db_busy_timeout_seconds)
    logger.info("Schema ready at %s", settings.db_path)
    return 0


def run_parse(label_type: str, payload: str) -> int:
    canonical = canonicalize_barcode(payload)
    try:
        label = parse_label(label_type, canonical)  # type: ignore[arg-type]
    except LabelParseError as exc:
        print(json.dumps({"canonical": canonical, **exc.to_payload()}), file=sys.stderr)
        return 2
    print(
        json.dumps(
            {
                "canonical": canonical,
                "label_type": label.label_type,
                "bin_id": label.bin_id,
                "part_code": label.part_code,
                "quantity": label.quantity,
            }
        )
    )
    return 0


def run_serve() -> int:
    from dispatch_audit.api_main import main as serve_main

    serve_main()
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bin Dispatch Audit")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_db = subparsers.add_parser("init-db", help="Create the sqlite schema")
    _ = init_db

    parse = subparsers.add_parser("parse", help="Canonicalize and parse one label payload")
    parse.add_argument("--label-type", required=True, choices=["customer", "carrier"])
    parse.add_argument("payload")

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    _ = serve
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    load_dotenv()
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    if args.command == "init-db":
        return run_init_db(settings)
    if args.command == "parse":
        return run_parse(args.label_type, args.payload)
    if args.command == "serve":
        return run_serve()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
