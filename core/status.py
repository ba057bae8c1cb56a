"""Transfer report and status file writer"""

import logging
from datetime import datetime, timezone
from pathlib import Path

from core.models import TransferStatusView
from core.store import atomic_write_json

logger = logging.getLogger(__name__)


def build_report(view: TransferStatusView) -> dict:
    job = view.job
    return {
        "transfer_id": job.id,
        "user_id": job.user_id,
        "status": job.status.value,
        "source_playlist_id": job.source_playlist_id,
        "source_playlist_name": job.source_playlist_name,
        "destination_playlist_id": job.destination_playlist_id,
        "total_tracks": job.total_tracks,
        "processed_tracks": job.processed_tracks,
        "matched_tracks": view.matched,
        "failed_count": job.failed_count,
        "unmatched": [
            {"title": f.title, "artist": f.artist, "reason": f.reason}
            for f in view.failed_tracks
        ],
        "created_at": job.created_at.isoformat(),
        "updated_at": job.updated_at.isoformat(),
    }


def write_status(view: TransferStatusView, status_file: Path) -> bool:
    data = build_report(view)
    data["written_at"] = datetime.now(timezone.utc).isoformat()
    try:
        atomic_write_json(status_file, data)
        return True
    except OSError as e:
        logger.error(f"Failed to write status file {status_file}: {e}")
        return False


def format_report(view: TransferStatusView) -> str:
    """Human readable summary for the console."""
    job = view.job
    lines = [
        f"Transfer {job.id}: {job.status.value}",
        f"  Playlist: {job.source_playlist_name} ({job.source_playlist_id})",
        f"  Tracks: {job.processed_tracks}/{job.total_tracks} processed, "
        f"{view.matched} matched, {job.failed_count} failed",
    ]
    if job.destination_playlist_id:
        lines.append(f"  Spotify playlist: {job.destination_playlist_id}")
    for f in view.failed_tracks:
        lines.append(f"  - {f.artist} - {f.title}: {f.reason}")
    return "\n".join(lines)
