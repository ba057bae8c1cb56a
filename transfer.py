#!/usr/bin/env python3
"""YouTube to Spotify playlist transfer - command line entry point"""

import argparse
import fcntl
import logging
import os
import sys
import time
from datetime import timedelta
from pathlib import Path

from clients.oauth import GoogleTokenRefresher, SpotifyTokenRefresher
from clients.spotify import SpotifyClient
from clients.youtube import YouTubeClient
from core.config import Settings, load_settings
from core.credentials import CredentialManager
from core.models import AuthError, ConfigError, Provider, TransferError, TransferStatus, utcnow
from core.status import format_report, write_status
from core.store import JsonFileStore
from core.transfer_engine import TransferEngine
from core.worker import TransferWorkerPool

logger = logging.getLogger(__name__)


def setup_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level, logging.INFO)
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.FileHandler(settings.log_file, encoding="utf-8"),
            logging.StreamHandler()
        ]
    )


def acquire_lock(lock_file: Path) -> int | None:
    try:
        # Stale lock (older than 6 hours = likely orphaned)
        if lock_file.exists():
            age = time.time() - lock_file.stat().st_mtime
            if age > 6 * 3600:
                logger.warning(f"Removing stale lock file (age: {age:.0f}s)")
                lock_file.unlink(missing_ok=True)

        fd = os.open(str(lock_file), os.O_CREAT | os.O_RDWR)
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        os.write(fd, f"{os.getpid()}\n".encode())
        return fd
    except OSError:
        return None


def release_lock(fd: int, lock_file: Path) -> None:
    fcntl.flock(fd, fcntl.LOCK_UN)
    os.close(fd)
    lock_file.unlink(missing_ok=True)


def build_engine(settings: Settings, store: JsonFileStore) -> TransferEngine:
    refreshers = {}
    try:
        refreshers[Provider.GOOGLE] = GoogleTokenRefresher.from_settings(settings)
    except AuthError as e:
        logger.warning(f"YouTube token refresh unavailable: {e}")
    try:
        refreshers[Provider.SPOTIFY] = SpotifyTokenRefresher(
            settings.spotify_client_id, settings.spotify_client_secret, timeout=settings.http_timeout
        )
    except AuthError as e:
        logger.warning(f"Spotify token refresh unavailable: {e}")

    credentials = CredentialManager(store, refreshers)
    return TransferEngine(
        jobs=store,
        failures=store,
        source=YouTubeClient(credentials),
        destination=SpotifyClient(credentials, search_delay=settings.search_delay,
                                  timeout=settings.http_timeout),
        track_delay=settings.track_delay,
    )


def cmd_connect(args, settings: Settings, store: JsonFileStore) -> int:
    manager = CredentialManager(store, {})
    manager.connect(args.user, Provider(args.provider), args.access_token, args.refresh_token,
                    utcnow() + timedelta(seconds=args.expires_in))
    logger.info(f"Stored {args.provider} credential for user {args.user}")
    return 0


def cmd_disconnect(args, settings: Settings, store: JsonFileStore) -> int:
    if not CredentialManager(store, {}).disconnect(args.user, Provider(args.provider)):
        logger.warning(f"User {args.user} had no {args.provider} credential")
    return 0


def cmd_playlists(args, settings: Settings, store: JsonFileStore) -> int:
    engine = build_engine(settings, store)
    for playlist in engine.list_source_playlists(args.user):
        print(f"{playlist.id}\t{playlist.track_count:>5}\t{playlist.title}")
    return 0


def cmd_start(args, settings: Settings, store: JsonFileStore) -> int:
    lock_file = settings.data_dir / ".transfer.lock"
    lock_fd = acquire_lock(lock_file)
    if lock_fd is None:
        logger.warning("Another transfer is running, exiting")
        return 1

    try:
        engine = build_engine(settings, store)
        pool = TransferWorkerPool(settings.workers)
        engine.attach_dispatcher(pool)
        pool.start(engine.handle)

        job = engine.submit(args.user, args.playlist_id, args.name)
        pool.join()
        pool.shutdown()

        view = engine.get_status(job.id)
        write_status(view, settings.status_file)
        print(format_report(view))
        return 0 if view.job.status == TransferStatus.COMPLETED else 1
    finally:
        release_lock(lock_fd, lock_file)


def cmd_status(args, settings: Settings, store: JsonFileStore) -> int:
    view = build_engine(settings, store).get_status(args.job_id)
    if view is None:
        logger.error(f"Transfer {args.job_id} not found")
        return 1
    print(format_report(view))
    return 0


def cmd_history(args, settings: Settings, store: JsonFileStore) -> int:
    for job in build_engine(settings, store).list_transfers(args.user):
        print(f"{job.id}\t{job.status.value:<11}\t{job.processed_tracks}/{job.total_tracks}"
              f"\t{job.failed_count} failed\t{job.source_playlist_name}")
    return 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Transfer YouTube playlists to Spotify")
    sub = parser.add_subparsers(dest="command", required=True)

    providers = [p.value for p in Provider]

    p = sub.add_parser("connect", help="store an OAuth credential")
    p.add_argument("user")
    p.add_argument("provider", choices=providers)
    p.add_argument("--access-token", required=True)
    p.add_argument("--refresh-token")
    p.add_argument("--expires-in", type=int, default=3600, help="seconds until expiry")
    p.set_defaults(func=cmd_connect)

    p = sub.add_parser("disconnect", help="remove an OAuth credential")
    p.add_argument("user")
    p.add_argument("provider", choices=providers)
    p.set_defaults(func=cmd_disconnect)

    p = sub.add_parser("playlists", help="list the user's YouTube playlists")
    p.add_argument("user")
    p.set_defaults(func=cmd_playlists)

    p = sub.add_parser("start", help="transfer a playlist and wait for it")
    p.add_argument("user")
    p.add_argument("playlist_id")
    p.add_argument("--name", default="", help="name of the Spotify playlist")
    p.set_defaults(func=cmd_start)

    p = sub.add_parser("status", help="show a transfer")
    p.add_argument("job_id")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("history", help="list the user's transfers")
    p.add_argument("user")
    p.set_defaults(func=cmd_history)

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        settings = load_settings()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(settings)
    store = JsonFileStore(settings.store_file)

    try:
        return args.func(args, settings, store)
    except TransferError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
