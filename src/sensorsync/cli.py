"""Command line tools for offline maintenance of recordings."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Sequence

from .clocksync.estimator import measure_offset, record_offset
from .config import Settings, configure_logging
from .data.fusion.session import fuse_session
from .errors import SensorSyncError
from .schemas.session import SessionState
from .storage.chunk_store import ChunkStore

logger = logging.getLogger(__name__)


def _print(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _cmd_fuse(args: argparse.Namespace, settings: Settings) -> int:
    overrides: dict[str, object] = {}
    if args.strategy:
        overrides["fusion_strategy"] = args.strategy
    if args.tolerance_ms is not None:
        overrides["alignment_tolerance_ms"] = args.tolerance_ms
    if overrides:
        settings = Settings.build(**{**settings.model_dump(), **overrides})
    result = fuse_session(Path(args.session_root), settings)
    _print(result.as_status())
    return 1 if result.status == "failed" else 0


def _cmd_measure_offset(args: argparse.Namespace, settings: Settings) -> int:
    result = measure_offset(
        args.url,
        samples=args.samples or settings.clock_sync_samples,
        timeout_s=settings.http_timeout_s,
        max_rtt_ms=args.max_rtt_ms or settings.clock_sync_max_rtt_ms,
    )
    if args.record:
        record_offset(Path(args.record), result)
    _print({**result.as_time_sync(), "rtt_ms": result.rtt_ms, "samples_used": result.samples_used})
    return 0 if result.synced else 1


def _cmd_recover(args: argparse.Namespace, settings: Settings) -> int:
    directory = Path(args.session_dir)
    store = ChunkStore(directory.parent)
    session = store.recover_session(directory, resume=False)
    payload: dict[str, object] = {"session": session.as_dict()}
    if args.finalize and session.state is not SessionState.STOPPED:
        payload["summary"] = store.stop_session(session.session_id).as_dict()
        payload["session"] = store.get_session(session.session_id).as_dict()
    _print(payload)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="sensorsync", description="Dual-sensor recording tools")
    p.add_argument("--log-level", default=None, help="override SENSORSYNC_LOG_LEVEL")
    sub = p.add_subparsers(dest="command", required=True)

    fuse = sub.add_parser("fuse", help="fuse a paired recording into unified_session.csv")
    fuse.add_argument("session_root")
    fuse.add_argument("--strategy", choices=["symmetric", "inwater_driven"])
    fuse.add_argument("--tolerance-ms", type=float, default=None)
    fuse.set_defaults(handler=_cmd_fuse)

    offset = sub.add_parser("measure-offset", help="measure the clock offset of a remote node")
    offset.add_argument("url")
    offset.add_argument("--samples", type=int, default=None)
    offset.add_argument("--max-rtt-ms", type=float, default=None)
    offset.add_argument("--record", metavar="SESSION_ROOT", help="store the result in sync metadata")
    offset.set_defaults(handler=_cmd_measure_offset)

    recover = sub.add_parser("recover", help="repair a session directory after a crash")
    recover.add_argument("session_dir")
    recover.add_argument(
        "--finalize",
        action="store_true",
        help="consolidate an unfinished session into session.csv",
    )
    recover.set_defaults(handler=_cmd_recover)
    return p


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = Settings.from_env()
    except SensorSyncError as exc:
        configure_logging("INFO")
        logger.error("%s", exc.detail)
        return 2
    configure_logging(args.log_level or settings.log_level)

    try:
        return args.handler(args, settings)
    except SensorSyncError as exc:
        logger.error("%s failed: %s", args.command, exc.detail)
        _print(exc.as_payload())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
