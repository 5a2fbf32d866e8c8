import asyncio
import argparse
import json
import logging
import sys

from core.api_client import InspectraClient
from core.config import load_settings, Settings
from core.errors import ConfigError, InspectraError
from core.monitors import NetworkMonitorRun, PageClassifierView, StreamRun
from core.scan_session import ScanSession
from core.state_store import StateStore
from models.events import StreamEvent, ProgressEvent

logger = logging.getLogger(__name__)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2))


def _log_progress(run: StreamRun, event: StreamEvent) -> None:
    if not isinstance(event, ProgressEvent):
        return
    progress = run.progress
    if progress.total:
        logger.info(f"[{(progress.index or 0) + 1}/{progress.total}] {progress.url} ({progress.pct}%)")
    else:
        logger.info(f"{progress.phase}... ({progress.pct}%)")


def _require_url(args, session: ScanSession) -> str:
    url = getattr(args, "url", None) or session.target_url
    if not url:
        raise SystemExit("No URL given and no target URL set (use `target URL` or pass one)")
    return url


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspectra autonomous QA client")
    parser.add_argument("--config", type=str, help="Path to YAML settings file (default: $INSPECTRA_CONFIG or ./inspectra.yaml)")
    parser.add_argument("--api-url", type=str, help="Backend base URL; /api is appended unless present")
    parser.add_argument("--state-file", type=str, help="Where to persist target, results and history")
    parser.add_argument("--log-level", type=str, default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging verbosity level (default: INFO)")

    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Run a full scan and store the result")
    scan.add_argument("url", help="Target URL (e.g., https://example.com)")
    scan.add_argument("--username", type=str, help="Login username for authenticated scans")
    scan.add_argument("--password", type=str, help="Login password for authenticated scans")

    network = sub.add_parser("network", help="Capture network traffic of a page (streams progress)")
    network.add_argument("url", nargs="?", help="Page URL (default: target URL)")

    classify = sub.add_parser("classify", help="Classify pages (default: pages of the last scan)")
    classify.add_argument("urls", nargs="*", help="Page URLs")
    classify.add_argument("--type", dest="page_type", default="all", help="Only show pages of this type")
    classify.add_argument("--sort", default="confidence", choices=list(PageClassifierView.SORT_KEYS))

    override = sub.add_parser("override", help="Override a classified page's type")
    override.add_argument("url")
    override.add_argument("page_type")

    delete = sub.add_parser("delete", help="Delete a stored classification")
    delete.add_argument("url")

    hygiene = sub.add_parser("hygiene", help="Show the hygiene score")
    hygiene.add_argument("url", nargs="?")

    severity = sub.add_parser("severity", help="Show the severity matrix")
    severity.add_argument("url", nargs="?")

    sub.add_parser("history", help="List previously scanned targets")
    sub.add_parser("result", help="Print the stored scan result")

    target = sub.add_parser("target", help="Show, set or clear the target URL")
    target.add_argument("url", nargs="?")
    target.add_argument("--clear", action="store_true", help="Clear target and baseline URLs")

    baseline = sub.add_parser("baseline", help="Show or set the baseline URL")
    baseline.add_argument("url", nargs="?")

    sub.add_parser("health", help="Check that the backend is up")
    return parser


async def run_command(args, settings: Settings) -> int:
    store = StateStore(settings.state_path)

    async with InspectraClient(settings) as client:
        session = ScanSession(
            store,
            client,
            history_limit=settings.history_limit,
            require_intelligence=settings.require_intelligence,
        )

        if args.command == "scan":
            credentials = {k: v for k, v in (("username", args.username), ("password", args.password)) if v}
            result = await session.start_scan(args.url, credentials)
            logger.info(f"Scanned {result.total_pages_scanned or len(result.pages)} pages")
            _print_json(result.raw)

        elif args.command == "network":
            run = await NetworkMonitorRun(_require_url(args, session), on_event=_log_progress).start(client)
            if run.error:
                logger.error(run.error)
                return 1
            _print_json(run.result)

        elif args.command == "classify":
            view = PageClassifierView(client)
            target_url = session.target_url
            urls = args.urls or view.urls_for(session.scan_result, target_url)
            if not urls:
                raise SystemExit("Nothing to classify: pass URLs or set a target URL")
            run = await view.classify(urls, on_event=_log_progress)
            for url, message in run.failures.items():
                logger.warning(f"{url}: {message}")
            if run.error:
                logger.error(run.error)
                return 1
            _print_json(view.visible_pages(target_url or urls[0], args.page_type, args.sort))

        elif args.command == "override":
            _print_json(await client.override_page_type(args.url, args.page_type))

        elif args.command == "delete":
            _print_json(await client.delete_classified(args.url))

        elif args.command == "hygiene":
            _print_json(await client.hygiene_score(args.url or session.target_url or None))

        elif args.command == "severity":
            _print_json(await client.severity_matrix(args.url or session.target_url or None))

        elif args.command == "history":
            _print_json([h.to_dict() for h in session.history])

        elif args.command == "result":
            result = session.scan_result
            _print_json(result.raw if result else None)

        elif args.command == "target":
            if args.clear:
                session.clear_target_url()
            elif args.url:
                session.set_target_url(args.url)
            print(session.target_url)

        elif args.command == "baseline":
            if args.url:
                session.set_baseline_url(args.url)
            print(session.baseline_url)

        elif args.command == "health":
            _print_json(await client.health())

    return 0


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(
            args.config,
            api_base=args.api_url,
            state_file=args.state_file,
            log_level=args.log_level,
        )
    except ConfigError as e:
        parser.error(str(e))

    # Configure logging
    logging.basicConfig(
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    logger.debug(f"Using API at {settings.api_url}")

    try:
        return asyncio.run(run_command(args, settings))
    except InspectraError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
