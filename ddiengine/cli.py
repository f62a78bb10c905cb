"""CLI entrypoint for ddiengine."""
from __future__ import annotations
import argparse
import asyncio
import json
import pathlib
import sys

from .config.settings import BackendMode, Settings
from .core.errors import EngineError
from .core.logging import setup_logging
from .core.orchestrator import BackendOrchestrator, FallbackChoice, FallbackNotice

_CHOICES = {"1": FallbackChoice.ONCE, "2": FallbackChoice.DEFAULT, "3": FallbackChoice.CANCEL}


def build_parser():
    p = argparse.ArgumentParser(prog="ddiengine", description="R-backed DDI codebook engine")
    p.add_argument("--config", help="Path to ddiengine.yml (default: DDIENGINE_CONFIG_FILE or ~/.config/ddiengine)")
    p.add_argument("--log-level", help="Override DDIENGINE_LOG_LEVEL")
    sub = p.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Start the HTTP server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8765)
    serve.add_argument("--no-warmup", action="store_true", help="Do not build the catalog at startup")
    serve.add_argument("--log-dir", help="Directory to write ddiengine.log into")

    load = sub.add_parser("load", help="Parse a codebook and print the normalized tree as JSON")
    load.add_argument("path")
    load.add_argument("--indent", type=int, default=2)

    catalog = sub.add_parser("catalog", help="Print a summary of the structure catalog")
    catalog.add_argument("--rebuild", action="store_true", help="Ignore the cached catalog")

    sub.add_parser("doctor", help="Report native engine discovery and backend initialization")

    mode = sub.add_parser("mode", help="Persist the preferred backend")
    mode.add_argument("mode", choices=[m.value for m in BackendMode])
    return p


def interactive_prompt(notice: FallbackNotice) -> FallbackChoice:
    print(notice.message, file=sys.stderr)
    if not sys.stdin.isatty():
        return FallbackChoice.ONCE
    print("  [1] use the embedded engine this time", file=sys.stderr)
    print("  [2] use the embedded engine by default", file=sys.stderr)
    print("  [3] cancel", file=sys.stderr)
    answer = input("choice [1]: ").strip() or "1"
    return _CHOICES.get(answer, FallbackChoice.ONCE)


def _print_notice(notice: FallbackNotice) -> None:
    print(notice.message, file=sys.stderr)


async def _run(args, settings: Settings) -> int:
    orch = BackendOrchestrator(settings, prompt=interactive_prompt, notify=_print_notice)
    try:
        if args.command == "load":
            node = await orch.load_codebook(args.path)
            print(json.dumps(node.to_dict(), ensure_ascii=False, indent=args.indent or None))
        elif args.command == "catalog":
            cat = await orch.get_catalog(rebuild=args.rebuild)
            summary = {
                "root": cat.tree.name,
                "children": len(cat.tree.children or []),
                "elements": len(cat.elements),
                "backend": orch.active_backend.value if orch.active_backend else None,
            }
            print(json.dumps(summary, indent=2))
        elif args.command == "doctor":
            await orch.ensure_ready()
            print(json.dumps(orch.status(), indent=2))
    finally:
        orch.shutdown()
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1
    log_file = None
    if getattr(args, "log_dir", None):
        log_dir_path = pathlib.Path(args.log_dir)
        log_dir_path.mkdir(parents=True, exist_ok=True)
        log_file = str(log_dir_path.resolve() / "ddiengine.log")
    setup_logging(level=args.log_level, log_file=log_file, force=True)
    settings = Settings(args.config) if args.config else Settings()

    if args.command == "mode":
        settings.set_backend_mode(args.mode)
        print(f"backend mode: {args.mode}")
        return 0
    if args.command == "serve":
        import uvicorn
        from .server import create_app

        app = create_app(settings=settings, warm_catalog=not args.no_warmup)
        uvicorn.run(app, host=args.host, port=args.port)
        return 0
    try:
        return asyncio.run(_run(args, settings))
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        return 2
    except EngineError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
