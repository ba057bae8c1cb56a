"""
Record stores for credentials, transfer jobs and failed tracks.

MemoryStore keeps everything in process. JsonFileStore adds persistence to a
single JSON document, reloaded before every access and rewritten atomically
after every change.
"""

import fcntl
import json
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Protocol

from core.models import (
    Credential, FailedTrack, Provider, TransferJob, TransferStatus, utcnow,
)

# Fields a caller may change through update_job.
JOB_FIELDS = {
    "status", "total_tracks", "processed_tracks", "failed_count",
    "destination_playlist_id", "source_playlist_name",
}


class CredentialStore(Protocol):
    def get_credential(self, user_id: str, provider: Provider) -> Credential | None: ...
    def upsert_credential(self, user_id: str, provider: Provider, access_token: str,
                          refresh_token: str | None, expires_at: datetime) -> Credential: ...
    def delete_credential(self, user_id: str, provider: Provider) -> bool: ...


class JobStore(Protocol):
    def create_job(self, job: TransferJob) -> TransferJob: ...
    def update_job(self, job_id: str, **fields: Any) -> TransferJob | None: ...
    def get_job(self, job_id: str) -> TransferJob | None: ...
    def list_jobs(self, user_id: str) -> list[TransferJob]: ...


class FailedTrackStore(Protocol):
    def append_failed_track(self, job_id: str, title: str, artist: str, reason: str) -> FailedTrack: ...
    def list_failed_tracks(self, job_id: str) -> list[FailedTrack]: ...


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON through a temp file so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}_", suffix=".tmp")
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        os.replace(temp_path, path)
    except Exception:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


class MemoryStore:
    """Thread-safe in-memory implementation of all three stores."""

    def __init__(self):
        self._lock = threading.RLock()
        self._credentials: dict[tuple[str, str], Credential] = {}
        self._jobs: dict[str, TransferJob] = {}
        self._failed: dict[str, list[FailedTrack]] = {}

    @contextmanager
    def _transaction(self, write: bool = False) -> Iterator[None]:
        """Hold the store lock for one read or read-modify-write."""
        with self._lock:
            yield

    def _changed(self) -> None:
        """Hook called inside a write transaction after every mutation."""

    # Credentials

    def get_credential(self, user_id: str, provider: Provider) -> Credential | None:
        with self._transaction():
            cred = self._credentials.get((user_id, Provider(provider).value))
            return Credential(**asdict(cred)) if cred else None

    def upsert_credential(self, user_id: str, provider: Provider, access_token: str,
                          refresh_token: str | None, expires_at: datetime) -> Credential:
        provider = Provider(provider)
        with self._transaction(write=True):
            key = (user_id, provider.value)
            existing = self._credentials.get(key)
            # An empty refresh token never replaces a stored one.
            if not refresh_token and existing:
                refresh_token = existing.refresh_token
            cred = Credential(
                user_id=user_id, provider=provider, access_token=access_token,
                refresh_token=refresh_token or None, expires_at=expires_at,
            )
            self._credentials[key] = cred
            self._changed()
            return Credential(**asdict(cred))

    def delete_credential(self, user_id: str, provider: Provider) -> bool:
        with self._transaction(write=True):
            removed = self._credentials.pop((user_id, Provider(provider).value), None)
            if removed:
                self._changed()
            return removed is not None

    # Jobs

    def create_job(self, job: TransferJob) -> TransferJob:
        with self._transaction(write=True):
            if job.id in self._jobs:
                raise ValueError(f"Transfer {job.id} already exists")
            self._jobs[job.id] = job.copy()
            self._failed.setdefault(job.id, [])
            self._changed()
            return job.copy()

    def update_job(self, job_id: str, **fields: Any) -> TransferJob | None:
        unknown = set(fields) - JOB_FIELDS
        if unknown:
            raise ValueError(f"Unknown transfer fields: {', '.join(sorted(unknown))}")
        with self._transaction(write=True):
            job = self._jobs.get(job_id)
            if job is None:
                return None
            updated = job.copy(**fields, updated_at=utcnow())
            self._jobs[job_id] = updated
            self._changed()
            return updated.copy()

    def get_job(self, job_id: str) -> TransferJob | None:
        with self._transaction():
            job = self._jobs.get(job_id)
            return job.copy() if job else None

    def list_jobs(self, user_id: str) -> list[TransferJob]:
        with self._transaction():
            jobs = [j.copy() for j in self._jobs.values() if j.user_id == user_id]
        # Newest first; insertion order breaks timestamp ties.
        ranked = sorted(enumerate(jobs), key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
        return [job for _, job in ranked]

    # Failed tracks

    def append_failed_track(self, job_id: str, title: str, artist: str, reason: str) -> FailedTrack:
        record = FailedTrack(job_id=job_id, title=title, artist=artist, reason=reason)
        with self._transaction(write=True):
            self._failed.setdefault(job_id, []).append(record)
            self._changed()
        return record

    def list_failed_tracks(self, job_id: str) -> list[FailedTrack]:
        with self._transaction():
            return list(self._failed.get(job_id, []))


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (Provider, TransferStatus)):
        return value.value
    return value


def _to_dict(record) -> dict:
    return {k: _encode(v) for k, v in asdict(record).items()}


def _credential_from(data: dict) -> Credential:
    return Credential(
        user_id=data["user_id"],
        provider=Provider(data["provider"]),
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token"),
        expires_at=datetime.fromisoformat(data["expires_at"]),
    )


def _job_from(data: dict) -> TransferJob:
    data = dict(data)
    data["status"] = TransferStatus(data["status"])
    for key in ("created_at", "updated_at"):
        data[key] = datetime.fromisoformat(data[key])
    return TransferJob(**data)


def _failed_from(data: dict) -> FailedTrack:
    data = dict(data)
    data["created_at"] = datetime.fromisoformat(data["created_at"])
    return FailedTrack(**data)


class JsonFileStore(MemoryStore):
    """MemoryStore persisted to a JSON file.

    Several processes may share one file (a running transfer next to a
    `connect`), so every access takes an flock on a sidecar lock file and
    reloads the document before touching it. Writers hold the lock
    exclusively from reload to rewrite.
    """

    def __init__(self, path: Path):
        super().__init__()
        self._file = path
        self._lock_file = path.with_name(f".{path.name}.lock")

    @contextmanager
    def _transaction(self, write: bool = False) -> Iterator[None]:
        with self._lock:
            self._file.parent.mkdir(parents=True, exist_ok=True)
            with open(self._lock_file, "a") as handle:
                fcntl.flock(handle, fcntl.LOCK_EX if write else fcntl.LOCK_SH)
                try:
                    self._load()
                    yield
                finally:
                    fcntl.flock(handle, fcntl.LOCK_UN)

    def _load(self) -> None:
        self._credentials.clear()
        self._jobs.clear()
        self._failed.clear()
        if not self._file.exists():
            return
        data = json.loads(self._file.read_text(encoding="utf-8"))
        for item in data.get("credentials", []):
            cred = _credential_from(item)
            self._credentials[(cred.user_id, cred.provider.value)] = cred
        for item in data.get("jobs", []):
            job = _job_from(item)
            self._jobs[job.id] = job
            self._failed.setdefault(job.id, [])
        for item in data.get("failed_tracks", []):
            record = _failed_from(item)
            self._failed.setdefault(record.job_id, []).append(record)

    def _changed(self) -> None:
        atomic_write_json(self._file, {
            "credentials": [_to_dict(c) for c in self._credentials.values()],
            "jobs": [_to_dict(j) for j in self._jobs.values()],
            "failed_tracks": [_to_dict(f) for records in self._failed.values() for f in records],
        })
