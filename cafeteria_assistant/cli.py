from __future__ import annotations

import argparse
import datetime as dt
import json
import logging
import sys
from typing import Optional

from .analysis import analyze_month, generate_menu_advice, predict_attendance
from .chat import answer_with_meta
from .config import load_engine_settings, load_provider_configs
from .knowledge import load_holidays
from .ledger import SalesLedger
from .report import generate_monthly_report


def _print_json(data: object) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def _cmd_chat(args: argparse.Namespace) -> int:
    settings = load_engine_settings(args.config)
    if args.local:
        settings = settings.model_copy(update={"hosted": False})
    configs = load_provider_configs(args.config) if args.config else None

    resp = answer_with_meta(
        args.message,
        data_dir=args.data_dir or settings.data_dir,
        settings=settings,
        provider_configs=configs,
        use_ai=not args.no_ai,
        debug=args.debug,
    )
    if args.json:
        _print_json(resp.model_dump(mode="json"))
    else:
        print(resp.text)
        if args.debug:
            for line in resp.debug_logs:
                print(line, file=sys.stderr)
    return 0


def _cmd_ledger(args: argparse.Namespace) -> int:
    data_dir = args.data_dir or load_engine_settings().data_dir
    _print_json(SalesLedger.in_dir(data_dir).snapshot_dict())
    return 0


def _cmd_report(args: argparse.Namespace) -> int:
    data_dir = args.data_dir or load_engine_settings().data_dir
    today = dt.date.today()
    year = args.year or today.year
    month = args.month or today.month
    if not 1 <= month <= 12:
        print(f"Invalid month: {month}", file=sys.stderr)
        return 2

    snapshot = SalesLedger.in_dir(data_dir).snapshot()
    _print_json(generate_monthly_report(snapshot, load_holidays(data_dir), year, month, today=today))
    return 0


def _cmd_analyze(args: argparse.Namespace) -> int:
    data_dir = args.data_dir or load_engine_settings().data_dir
    today = dt.date.today()
    year = args.year or today.year
    month = args.month or today.month
    if not 1 <= month <= 12:
        print(f"Invalid month: {month}", file=sys.stderr)
        return 2

    configs = load_provider_configs(args.config) if args.config else None
    result = analyze_month(data_dir, year, month, provider_configs=configs, today=today)
    _print_json(result.model_dump(mode="json", include={"analysis", "api", "error"}, exclude_none=True))
    return 0


def _cmd_advice(args: argparse.Namespace) -> int:
    data_dir = args.data_dir or load_engine_settings().data_dir
    configs = load_provider_configs(args.config) if args.config else None
    if args.action == "menu":
        result = generate_menu_advice(data_dir, provider_configs=configs)
    else:
        result = predict_attendance(data_dir, provider_configs=configs)
    _print_json(result.model_dump(mode="json", by_alias=True, exclude_none=True))
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    p = argparse.ArgumentParser(description="Cafeteria assistant: chat answers, sales ledger, monthly report and AI analysis.")
    p.add_argument("--data-dir", dest="data_dir", default=None, help="Data directory (default: $CAFETERIA_DATA_DIR or data/)")
    p.add_argument("-v", "--verbose", action="store_true", help="Log warnings and errors to stderr")
    sub = p.add_subparsers(dest="command", required=True)

    c = sub.add_parser("chat", help="Answer one message")
    c.add_argument("message", help="User message")
    c.add_argument("--config", default=None, help="Provider JSON override file")
    c.add_argument("--local", action="store_true", help="Try the local model daemon first")
    c.add_argument("--no-ai", dest="no_ai", action="store_true", help="Answer from cafeteria data only")
    c.add_argument("--json", action="store_true", help="Print the full response as JSON")
    c.add_argument("--debug", action="store_true", help="Trace to stderr and print the debug log")
    c.set_defaults(func=_cmd_chat)

    led = sub.add_parser("ledger", help="Print the sales ledger snapshot")
    led.set_defaults(func=_cmd_ledger)

    r = sub.add_parser("report", help="Print the monthly sales report")
    r.add_argument("--year", type=int, default=None)
    r.add_argument("--month", type=int, default=None)
    r.set_defaults(func=_cmd_report)

    an = sub.add_parser("analyze", help="AI analysis of the monthly report")
    an.add_argument("--year", type=int, default=None)
    an.add_argument("--month", type=int, default=None)
    an.add_argument("--config", default=None, help="Provider JSON override file")
    an.set_defaults(func=_cmd_analyze)

    adv = sub.add_parser("advice", help="AI set-meal proposal or attendance prediction for today")
    adv.add_argument("action", choices=["menu", "attendance"])
    adv.add_argument("--config", default=None, help="Provider JSON override file")
    adv.set_defaults(func=_cmd_advice)

    args = p.parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.ERROR, format="%(levelname)s %(name)s: %(message)s")
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
