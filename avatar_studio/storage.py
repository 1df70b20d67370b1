"""
Supabase Storage helpers for generated media.

All scene media is stored under:
  projects/{project_id}/audio/scene_{n}_audio.mp3
  projects/{project_id}/avatars/scene_{n}_avatar.mp4
  projects/{project_id}/avatars/avatar_design.png
  projects/{project_id}/backgrounds/scene_{n}_background.{png|mp4}
  projects/{project_id}/final/final_video.mp4
"""

import os
import logging

import httpx

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

STORAGE_BUCKET = os.getenv("STORAGE_BUCKET", "media")
DOCUMENTS_BUCKET = os.getenv("DOCUMENTS_BUCKET", "documents")
DOWNLOAD_TIMEOUT = 120


# ── Path helpers ─────────────────────────────────────────────────────────────

def audio_path(project_id: str, scene_number: int) -> str:
    return f"projects/{project_id}/audio/scene_{scene_number}_audio.mp3"


def avatar_video_path(project_id: str, scene_number: int) -> str:
    return f"projects/{project_id}/avatars/scene_{scene_number}_avatar.mp4"


def avatar_design_path(project_id: str) -> str:
    return f"projects/{project_id}/avatars/avatar_design.png"


def background_path(project_id: str, scene_number: int, ext: str) -> str:
    return f"projects/{project_id}/backgrounds/scene_{scene_number}_background.{ext}"


def final_video_path(project_id: str) -> str:
    return f"projects/{project_id}/final/final_video.mp4"


def download_url(url: str) -> bytes:
    """Download a public URL and return raw bytes."""
    resp = httpx.get(url, follow_redirects=True, timeout=DOWNLOAD_TIMEOUT)
    resp.raise_for_status()
    return resp.content


# ── Blob store ───────────────────────────────────────────────────────────────

class BlobStore:
    """Thin wrapper over a Supabase storage bucket."""

    def __init__(self, client, bucket: str = STORAGE_BUCKET):
        self.client = client
        self.bucket = bucket

    def _bucket(self, bucket: str | None = None):
        return self.client.storage.from_(bucket or self.bucket)

    def upload(self, data: bytes, path: str, content_type: str) -> str:
        """Upload (overwriting) and return the public URL."""
        self._bucket().upload(
            path=path,
            file=data,
            file_options={"content-type": content_type, "upsert": "true"},
        )
        url = self.public_url(path)
        logger.info(f"Uploaded {len(data)} bytes → {self.bucket}/{path}")
        return url

    def upload_from_url(self, url: str, path: str, content_type: str) -> str:
        """Copy a remote file (e.g. a provider result URL) into the bucket."""
        return self.upload(download_url(url), path, content_type)

    def download(self, path: str, bucket: str | None = None) -> bytes:
        return self._bucket(bucket).download(path)

    def public_url(self, path: str) -> str:
        return self._bucket().get_public_url(path)
