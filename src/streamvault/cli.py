"""Command-line entry point.

Called by cron for upload sweeps and by the HTTP shim for session events:

    streamvault start cam1 rtsp://... --trace-id 42
    streamvault stop cam1
    streamvault upload
"""

import argparse
import logging
import sys

from dotenv import load_dotenv

from .capture import CaptureLauncher
from .config import StreamVaultConfig, load_config
from .errors import StreamVaultError
from .registry import SessionRegistry, SessionState, validate_name
from .uploader import UploadSweeper

logger = logging.getLogger(__name__)


def setup_logging(config: StreamVaultConfig, verbose: bool = False):
    level = logging.DEBUG if verbose else getattr(logging, config.logging.level.upper(), logging.INFO)
    kwargs = {}
    if config.logging.file:
        kwargs['filename'] = config.logging.file
    logging.basicConfig(
        level=level,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
        **kwargs,
    )


def cmd_start(args, config) -> int:
    registry = SessionRegistry.from_config(config)
    try:
        record = registry.start(args.name, args.url, trace_id=args.trace_id)
    finally:
        registry.close()
    print(f"started {record.name} (pid {record.pid}) -> {record.output_path}")
    return 0


def cmd_stop(args, config) -> int:
    registry = SessionRegistry.from_config(config)
    try:
        result = registry.stop(args.name)
    finally:
        registry.close()
    if result.signalled:
        print(f"stopped {args.name} (pid {result.record.pid})")
    elif result.exited:
        print(f"removed {args.name}: pid {result.record.pid} was not running")
    else:
        print(f"removed {args.name}: could not signal pid {result.record.pid}, it is still running")
    return 0


def cmd_status(args, config) -> int:
    registry = SessionRegistry.from_config(config)
    try:
        state, record = registry.status(args.name)
    finally:
        registry.close()
    if state == SessionState.ACTIVE:
        print(f"{args.name}: active (pid {record.pid}) -> {record.output_path}")
    elif state == SessionState.INACTIVE:
        print(f"{args.name}: inactive (pid {record.pid} exited, record removed)")
    else:
        print(f"{args.name}: no record")
    return 0


def cmd_list(args, config) -> int:
    registry = SessionRegistry.from_config(config)
    try:
        sessions = registry.list_sessions()
    finally:
        registry.close()
    if not sessions:
        print("no sessions")
    for record, alive in sessions:
        print(f"{record.name}\tpid {record.pid}\t{'active' if alive else 'stale'}\t"
              f"{record.started_at}\t{record.output_path}")
    return 0


def cmd_clear_sessions(args, config) -> int:
    registry = SessionRegistry.from_config(config)
    try:
        cleared = registry.sweep()
    finally:
        registry.close()
    print(f"cleared {cleared} session record(s)")
    return 0


def cmd_snapshot(args, config) -> int:
    validate_name(args.name)
    storage = config.storage
    launcher = CaptureLauncher(config.capture, storage.recordings_dir, storage.snapshots_dir)
    path = launcher.snapshot(args.url, args.name, trace_id=args.trace_id,
                             timeout_ms=args.timeout_ms)
    print(f"saved {path}")
    return 0


def cmd_upload(args, config) -> int:
    if not config.upload.remote:
        print("upload.remote is not configured", file=sys.stderr)
        return 1
    report = UploadSweeper.from_config(config).run()
    print(report.summary())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='streamvault',
                                     description='RTSP recording sessions and upload sweeps')
    parser.add_argument('--config', default=None,
                        help='YAML config file (default: $STREAMVAULT_CONFIG or config.yml)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('start', help='Start recording a stream')
    p.add_argument('name', help='Session name')
    p.add_argument('url', help='RTSP URL')
    p.add_argument('--trace-id', default=None, help='Used in the output file name')
    p.set_defaults(func=cmd_start)

    p = sub.add_parser('stop', help='Stop a recording')
    p.add_argument('name')
    p.set_defaults(func=cmd_stop)

    p = sub.add_parser('status', help='Check whether a recording is running')
    p.add_argument('name')
    p.set_defaults(func=cmd_status)

    p = sub.add_parser('list', help='List session records')
    p.set_defaults(func=cmd_list)

    p = sub.add_parser('clear-sessions',
                       help='Drop all session records (processes are not signalled)')
    p.set_defaults(func=cmd_clear_sessions)

    p = sub.add_parser('snapshot', help='Save a single frame')
    p.add_argument('name')
    p.add_argument('url')
    p.add_argument('--trace-id', default=None)
    p.add_argument('--timeout-ms', type=int, default=None,
                   help='Connection timeout (default from config)')
    p.set_defaults(func=cmd_snapshot)

    p = sub.add_parser('upload', help='Move finished files to remote storage')
    p.set_defaults(func=cmd_upload)

    return parser


def main(argv=None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    setup_logging(config, args.verbose)

    try:
        return args.func(args, config)
    except StreamVaultError as e:
        print(f"error: {e}", file=sys.stderr)
        stderr = getattr(e, 'stderr', '')
        if stderr:
            print(stderr.rstrip(), file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
