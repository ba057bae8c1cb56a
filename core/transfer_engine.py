"""
Transfer Engine

Moves a YouTube playlist to Spotify. submit() records a PENDING transfer and
hands it to a dispatcher; run() does the work on a worker thread.

Job lifecycle
-------------
PENDING -> IN_PROGRESS -> COMPLETED | FAILED

1. List every source track (fails fast, no retry)
2. Find or create the destination playlist
3. Resolve tracks one at a time, sleeping between tracks
   - a match adds its URI to the batch
   - no match or an error records a failed track; the job carries on
4. Checkpoint counters every CHECKPOINT_EVERY tracks
5. Append all matches in batches of 100
6. COMPLETED with final counters

Errors in steps 1, 2 and 5 fail the job. They are logged, never raised:
callers learn the outcome from the stored status.
"""

import logging
import time
import uuid
from typing import Callable, Protocol, Sequence

from core.models import (
    InvalidTransition, SourcePlaylist, SourceTrack, SpotifySession, TrackMatch,
    TransferJob, TransferRequest, TransferStatus, TransferStatusView,
    check_transition,
)
from core.store import FailedTrackStore, JobStore

logger = logging.getLogger(__name__)

CHECKPOINT_EVERY = 5
TRACK_DELAY = 0.8
NO_MATCH_REASON = "No match found"
UNKNOWN = "Unknown"


class SourceClientProtocol(Protocol):
    def list_playlists(self, user_id: str) -> list[SourcePlaylist]: ...
    def list_playlist_tracks(self, user_id: str, playlist_id: str) -> list[SourceTrack]: ...


class DestinationClientProtocol(Protocol):
    def authenticate(self, user_id: str) -> SpotifySession: ...
    def search_track(self, session: SpotifySession, title: str, artist: str) -> TrackMatch | None: ...
    def ensure_playlist(self, session: SpotifySession, name: str, description: str) -> str: ...
    def append_tracks(self, session: SpotifySession, playlist_id: str, uris: Sequence[str]) -> None: ...


class DispatcherProtocol(Protocol):
    def enqueue(self, request: TransferRequest) -> None: ...


class TransferEngine:
    """Runs playlist transfers and keeps their progress records."""

    def __init__(self, jobs: JobStore, failures: FailedTrackStore,
                 source: SourceClientProtocol, destination: DestinationClientProtocol,
                 dispatcher: DispatcherProtocol | None = None,
                 sleep: Callable[[float], None] = time.sleep,
                 track_delay: float = TRACK_DELAY):
        self._jobs = jobs
        self._failures = failures
        self._source = source
        self._destination = destination
        self._dispatcher = dispatcher
        self._sleep = sleep
        self._track_delay = track_delay

    def attach_dispatcher(self, dispatcher: DispatcherProtocol) -> None:
        self._dispatcher = dispatcher

    def submit(self, user_id: str, source_playlist_id: str,
               source_playlist_name: str = "") -> TransferJob:
        """Record a PENDING transfer and queue it. Returns without doing the work."""
        name = source_playlist_name or "Untitled Playlist"
        job = self._jobs.create_job(TransferJob(
            id=uuid.uuid4().hex,
            user_id=user_id,
            source_playlist_id=source_playlist_id,
            source_playlist_name=name,
        ))
        logger.info(f"Transfer {job.id} queued: playlist {source_playlist_id} for user {user_id}")

        if self._dispatcher is not None:
            self._dispatcher.enqueue(TransferRequest(job.id, source_playlist_id, name))
        return job

    def handle(self, request: TransferRequest) -> None:
        """Worker entry point."""
        self.run(request.job_id, request.source_playlist_id, request.source_playlist_name)

    def _set_status(self, job: TransferJob, status: TransferStatus, **fields) -> TransferJob:
        check_transition(job.status, status)
        return self._jobs.update_job(job.id, status=status, **fields)

    def run(self, job_id: str, source_playlist_id: str, source_playlist_name: str) -> None:
        """Execute a submitted transfer to completion. Never raises for job errors."""
        job = self._jobs.get_job(job_id)
        if job is None:
            logger.warning(f"Transfer {job_id} not found, nothing to run")
            return

        try:
            job = self._set_status(job, TransferStatus.IN_PROGRESS)
        except InvalidTransition as e:
            logger.warning(f"Transfer {job_id} not started: {e}")
            return

        start = time.time()
        processed = failed = 0
        try:
            logger.info(f"Fetching tracks for playlist {source_playlist_id} (transfer {job_id})")
            tracks = self._source.list_playlist_tracks(job.user_id, source_playlist_id)
            job = self._jobs.update_job(job_id, total_tracks=len(tracks))

            session = self._destination.authenticate(job.user_id)
            playlist_id = self._destination.ensure_playlist(
                session,
                source_playlist_name,
                f"Imported from YouTube Music (Transfer {job_id})",
            )
            job = self._jobs.update_job(job_id, destination_playlist_id=playlist_id)

            uris: list[str] = []
            for track in tracks:
                self._sleep(self._track_delay)
                if not self._resolve(job, track, uris):
                    failed += 1
                processed += 1

                if processed % CHECKPOINT_EVERY == 0:
                    self._jobs.update_job(job_id, processed_tracks=processed, failed_count=failed)
                    logger.debug(f"Transfer {job_id}: {processed}/{len(tracks)} processed")

            logger.info(f"Transfer {job_id}: {len(uris)} of {len(tracks)} tracks matched")
            if uris:
                session = self._destination.authenticate(job.user_id)
                self._destination.append_tracks(session, playlist_id, uris)

            self._set_status(job, TransferStatus.COMPLETED,
                             processed_tracks=processed, failed_count=failed)
            logger.info(f"Transfer {job_id} completed in {time.time() - start:.1f}s: "
                        f"{processed - failed} matched, {failed} failed")

        except Exception:
            logger.exception(f"Transfer {job_id} failed")
            try:
                current = self._jobs.get_job(job_id)
                if current is not None and not current.status.is_terminal:
                    self._set_status(current, TransferStatus.FAILED)
            except Exception:
                logger.exception(f"Could not mark transfer {job_id} as failed")

    def _resolve(self, job: TransferJob, track: SourceTrack, uris: list[str]) -> bool:
        """Search one track. Returns False and records the failure if it has no match."""
        try:
            session = self._destination.authenticate(job.user_id)
            match = self._destination.search_track(session, track.title, track.artist)
        except Exception as e:
            logger.error(f"Error processing track '{track.title}': {e}")
            self._record_failure(job.id, track, str(e) or "Processing error")
            return False

        if match is None:
            logger.debug(f"No match for '{track.title}' by '{track.artist}'")
            self._record_failure(job.id, track, NO_MATCH_REASON)
            return False

        uris.append(match.uri)
        return True

    def _record_failure(self, job_id: str, track: SourceTrack, reason: str) -> None:
        self._failures.append_failed_track(
            job_id, track.title or UNKNOWN, track.artist or UNKNOWN, reason
        )

    def get_status(self, job_id: str) -> TransferStatusView | None:
        job = self._jobs.get_job(job_id)
        if job is None:
            return None
        return TransferStatusView(job=job, failed_tracks=self._failures.list_failed_tracks(job_id))

    def list_transfers(self, user_id: str) -> list[TransferJob]:
        """The user's transfers, newest first."""
        return self._jobs.list_jobs(user_id)

    def list_source_playlists(self, user_id: str) -> list[SourcePlaylist]:
        return self._source.list_playlists(user_id)
