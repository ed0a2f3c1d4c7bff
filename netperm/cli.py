# netperm/cli.py
import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

from netperm.config import get_settings
from netperm.core import report
from netperm.core.codes import EXIT_CANCELLED, EXIT_INVALID_ARGS, LAYER_TITLES, GeneralCode
from netperm.core.orchestrator import Orchestrator, RunResult, RunState, RunStatus, RUNNING_STATE
from netperm.core.preflight import InvalidTargetError, PrivilegeError

logger = logging.getLogger("netperm")

_LAYER_FOR_STATE = {state: layer for layer, state in RUNNING_STATE.items()}


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="netperm",
        description="Layer-by-layer analysis of whether this host may talk to a destination",
    )
    ap.add_argument("target", nargs="?", help="Destination IP or hostname (default: NETPERM_DEFAULT_TARGET)")
    ap.add_argument("port", nargs="?", type=int, help="Destination port (default: NETPERM_DEFAULT_PORT)")
    ap.add_argument("--proto", choices=["tcp", "udp"], default=None, help="Transport protocol (default: tcp)")
    ap.add_argument("-v", "--verbose", action="store_true", help="Show every collected fact")
    ap.add_argument("-j", "--json", action="store_true", help="Print the JSON report instead of text")
    ap.add_argument("-q", "--quiet", action="store_true", help="Only print the summary")
    ap.add_argument(
        "--out", nargs="?", const="", default=None, metavar="DIR",
        help="Also write evidence.json and diagnosis_report.md into DIR (bare --out: NETPERM_OUT_DIR)",
    )
    ap.add_argument("--log", metavar="FILE", default=None, help="Append log records to FILE")
    ap.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR (default: NETPERM_LOG_LEVEL)")
    return ap


def configure_logging(args: argparse.Namespace) -> None:
    level = args.log_level or get_settings().log_level
    if args.log_level is None:
        if args.verbose:
            level = "INFO"
        elif args.quiet:
            level = "ERROR"
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if args.log:
        handlers.append(logging.FileHandler(args.log, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
    )


def write_artifacts(result: RunResult, out: str) -> List[Path]:
    out_dir = Path(out)
    out_dir.mkdir(parents=True, exist_ok=True)

    ev_path = out_dir / "evidence.json"
    with ev_path.open("w", encoding="utf-8") as f:
        json.dump(report.to_dict(result, verbose=True), f, indent=2)

    md_path = out_dir / "diagnosis_report.md"
    md_path.write_text(report.build_markdown_report(result), encoding="utf-8")
    return [ev_path, md_path]


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args)
    logger.debug("args: %s", vars(args))

    def progress(old: RunState, new: RunState) -> None:
        layer = _LAYER_FOR_STATE.get(new)
        if layer is not None and not (args.quiet or args.json):
            print(f"[*] {LAYER_TITLES[layer]} ...", file=sys.stderr)

    # Ctrl-C asks the orchestrator to stop at the next layer boundary
    cancel = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda signum, frame: cancel.set())
    try:
        result = Orchestrator(on_transition=progress).diagnose(
            args.target, args.port, args.proto, cancel=cancel
        )
    except PrivilegeError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return int(GeneralCode.PRIVILEGE_REQUIRED)
    except InvalidTargetError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_INVALID_ARGS
    finally:
        signal.signal(signal.SIGINT, previous)

    if args.json:
        print(json.dumps(report.to_dict(result, verbose=args.verbose), indent=2))
    elif args.quiet:
        print(f"Checks passed: {result.layers_passed}/{result.layers_total}")
    else:
        print(report.build_text_report(result, verbose=args.verbose), end="")

    if args.out is not None:
        for path in write_artifacts(result, args.out or get_settings().out_dir):
            if not args.json:
                print(f"Artifact written: {path}")

    if result.status is RunStatus.INCOMPLETE:
        return EXIT_CANCELLED
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
