import argparse
import json
import logging
import signal
import sys

from .checkpoint import CheckpointStore
from .config import PullConfig
from .driver import PipelineDriver, PipelineState
from .errors import CromSyncError
from .records import count_collections
from .utils import format_bytes

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Resumable, rate-limited pull of the CROM page graph.")
    parser.add_argument("--target", type=int, default=None, help="Stop after this many pages in total.")
    parser.add_argument("--batch-size", type=int, default=None, help="Pages requested per query.")
    parser.add_argument("--max-rps", type=float, default=None, help="Maximum requests per second.")
    parser.add_argument(
        "--retry-threshold",
        type=int,
        default=None,
        help="Transient errors tolerated inside the retry window before aborting.",
    )
    parser.add_argument("--checkpoint-dir", type=str, default=None, help="Directory holding checkpoint artifacts.")
    parser.add_argument(
        "--checkpoint-interval",
        type=int,
        default=None,
        help="Pages processed between two checkpoints.",
    )
    parser.add_argument(
        "--compress-checkpoints",
        action="store_true",
        default=None,
        help="Write checkpoints as zstd-compressed .json.zst files.",
    )
    parser.add_argument("--output-dir", type=str, default=None, help="Directory for the final output file.")
    parser.add_argument("--sink-db", type=str, default=None, help="SQLite database receiving the final records.")
    users = parser.add_mutually_exclusive_group()
    users.add_argument("--include-users", dest="include_users", action="store_true", default=None)
    users.add_argument("--no-users", dest="include_users", action="store_false")
    parser.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")
    parser.add_argument(
        "--status",
        action="store_true",
        help="Print the latest checkpoint state and exit without pulling.",
    )
    return parser.parse_args(argv)


def build_config(args):
    return PullConfig().with_overrides(
        target_pages=args.target,
        batch_size=args.batch_size,
        max_requests_per_second=args.max_rps,
        retry_threshold=args.retry_threshold,
        checkpoint_dir=args.checkpoint_dir,
        checkpoint_interval=args.checkpoint_interval,
        checkpoint_compress=args.compress_checkpoints,
        output_dir=args.output_dir,
        sink_db=args.sink_db,
        include_users=args.include_users,
        show_progress=False if args.no_progress else None,
    )


def print_status(pull_config):
    store = CheckpointStore(directory=pull_config.checkpoint_dir, compress=pull_config.checkpoint_compress)
    try:
        infos = store.artifacts()
        if not infos:
            print("No checkpoints found in", pull_config.checkpoint_dir)
            return 0
        total_bytes = sum(info.path.stat().st_size for info in infos)
        recovered = store.recover()
        status = {"checkpoints": len(infos), "diskUsage": format_bytes(total_bytes)}
        if recovered is None:
            # Every artifact was unreadable.
            status.update({"resumable": False, "skipped": [info.path.name for info in infos]})
        else:
            status.update(
                {
                    "resumable": True,
                    "skipped": [path.name for path in recovered.skipped],
                    "latest": recovered.latest_path.name,
                    "progress": recovered.progress,
                    "target": pull_config.target_pages,
                    "cursor": recovered.cursor,
                    "timestamp": recovered.timestamp,
                    "recordCounts": count_collections(recovered.records),
                }
            )
        print(json.dumps(status, indent=2, ensure_ascii=False))
        return 0
    finally:
        store.close()


def install_signal_handlers(driver):
    def _handler(signum, _frame):
        logger.warning("[!] Received signal %s; stopping after the current batch.", signum)
        driver.request_stop()
        # A second signal terminates immediately.
        signal.signal(signal.SIGINT, signal.default_int_handler)
        signal.signal(signal.SIGTERM, signal.SIG_DFL)

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def main(argv=None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    args = parse_args(argv)
    try:
        pull_config = build_config(args).validate()
        if args.status:
            return print_status(pull_config)
        driver = PipelineDriver(pull_config)
    except CromSyncError as exc:
        logger.error("[!] %s", exc)
        return 2

    install_signal_handlers(driver)
    result = driver.run()
    if result.output_path is not None:
        logger.info("[+] Final data: %s", result.output_path)
    if result.state == PipelineState.ABORTED:
        logger.error("[!] Pull aborted: %s", result.error)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
