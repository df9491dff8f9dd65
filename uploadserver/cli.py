import argparse
import logging
import sys
from dataclasses import fields
from pathlib import Path
from typing import List, Optional

from .app import create_app
from .config import DEFAULT_PORT, load_config
from .logs import configure_logging
from .monitoring import MemoryWatcher


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="uploadserver",
        description="Serve a directory over HTTP for browsing, downloading and uploading files.",
    )
    parser.add_argument(
        "path",
        nargs="?",
        default=None,
        help="directory to serve (defaults to UPLOADSERVER_ROOT or the current directory)",
    )
    parser.add_argument("-p", "--port", type=int, default=None, help=f"port to use (default {DEFAULT_PORT})")
    parser.add_argument("--host", default=None, help="interface to bind (default 0.0.0.0)")
    parser.add_argument(
        "--keep-upload-filename",
        dest="keep_original_name",
        action="store_true",
        default=None,
        help="keep 'filename.ext' instead of 'filename-<random>.ext' for uploads",
    )
    parser.add_argument("--dev", dest="dev_mode", action="store_true", default=None, help="use development settings")
    parser.add_argument(
        "--watch-mem",
        dest="watch_memory",
        action="store_true",
        default=None,
        help="log memory usage every second",
    )
    parser.add_argument(
        "--max-upload-mb",
        type=float,
        default=None,
        help="reject uploads larger than this many megabytes",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="also write logs to this rotating file")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    max_upload_bytes = None
    if args.max_upload_mb is not None:
        if args.max_upload_mb <= 0:
            parser.error("--max-upload-mb must be positive")
        max_upload_bytes = int(args.max_upload_mb * 1024 * 1024)

    try:
        config = load_config(
            root=Path(args.path) if args.path else None,
            port=args.port,
            host=args.host,
            keep_original_name=args.keep_original_name,
            dev_mode=args.dev_mode,
            watch_memory=args.watch_memory,
            max_upload_bytes=max_upload_bytes,
            log_file=args.log_file,
        )
    except ValueError as error:
        parser.error(str(error))

    configure_logging(config.dev_mode, config.log_file)
    logger = logging.getLogger("uploadserver")
    logger.debug("argv=%s", " ".join(sys.argv))
    if config.dev_mode:
        for field in fields(config):
            logger.debug("config %s=%s", field.name, getattr(config, field.name))

    watcher = MemoryWatcher(logging.getLogger("uploadserver.memstats")) if config.watch_memory else None
    app = create_app(config)

    logger.info(
        "serving root=%s host=%s port=%d keep_original_name=%s",
        config.root,
        config.host,
        config.port,
        config.keep_original_name,
    )
    if watcher is not None:
        watcher.start()
    try:
        app.run(host=config.host, port=config.port, debug=False, threaded=True)
    finally:
        if watcher is not None:
            watcher.shutdown()
    return 0
