# songjobs/downloads.py
"""
Local copies of completed audio.

When a record reaches `completed`, the provider's audio URL is fetched into
DATA_DIR/downloads/<request id>.<ext> and served back at
GET /api/download/{filename}. This is best-effort: a failed fetch is logged
and counted, and the record keeps the provider's URL.
"""

import os
import re
import posixpath
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx

from songjobs import monitoring
from songjobs.config import Settings

AUDIO_EXTENSIONS = (".mp3", ".wav", ".m4a", ".ogg", ".flac")
DEFAULT_EXTENSION = ".mp3"
SAFE_FILENAME = re.compile(r"^[\w\-. ]+$")
CHUNK_SIZE = 64 * 1024


class InvalidFilenameError(ValueError):
    pass


def is_safe_filename(filename: Optional[str]) -> bool:
    if not filename or not SAFE_FILENAME.match(filename):
        return False
    # no hidden files and no "." / ".."
    return not filename.startswith(".")


def resolve_download_path(directory: str, filename: str) -> str:
    """Resolve a served filename to a file on disk.

    Raises InvalidFilenameError for names that could leave the downloads
    directory and FileNotFoundError when nothing is stored under the name.
    """
    if not is_safe_filename(filename):
        raise InvalidFilenameError(filename)
    root = os.path.realpath(directory)
    path = os.path.realpath(os.path.join(root, filename))
    if os.path.dirname(path) != root:
        raise InvalidFilenameError(filename)
    if not os.path.isfile(path):
        raise FileNotFoundError(filename)
    return path


def _extension(audio_url: str) -> str:
    ext = posixpath.splitext(urlparse(audio_url).path)[1].lower()
    return ext if ext in AUDIO_EXTENSIONS else DEFAULT_EXTENSION


class AudioDownloader:
    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None):
        self.settings = settings
        self.directory = settings.downloads_dir
        self._client = client or httpx.Client(follow_redirects=True)

    def filename_for(self, request_id: str, audio_url: str) -> str:
        base = re.sub(r"[^\w\-]", "_", request_id)
        return f"{base}{_extension(audio_url)}"

    def public_url(self, filename: str) -> str:
        path = f"/api/download/{filename}"
        if self.settings.public_base_url:
            return self.settings.public_base_url.rstrip("/") + path
        return path

    def download(self, request_id: str, audio_url: str) -> Optional[Dict[str, Any]]:
        """Fetch audio_url to local storage.

        Returns the record patch (saved_filename, download_url, file_size), or
        None when the fetch failed.
        """
        filename = self.filename_for(request_id, audio_url)
        target = os.path.join(self.directory, filename)
        partial = f"{target}.part"
        size = 0
        try:
            os.makedirs(self.directory, exist_ok=True)
            with self._client.stream("GET", audio_url, timeout=self.settings.download_timeout_seconds) as resp:
                resp.raise_for_status()
                with open(partial, "wb") as f:
                    for chunk in resp.iter_bytes(CHUNK_SIZE):
                        f.write(chunk)
                        size += len(chunk)
            os.replace(partial, target)
        except (httpx.HTTPError, OSError) as e:
            monitoring.inc_download("fail")
            monitoring.logger.warning(
                "Audio download failed; keeping provider URL",
                extra={"request_id": request_id, "audio_url": audio_url, "error": str(e)},
            )
            if os.path.exists(partial):
                try:
                    os.remove(partial)
                except OSError:
                    monitoring.logger.exception("Could not remove partial download")
            return None

        monitoring.inc_download("ok")
        monitoring.logger.info(
            "Saved audio locally",
            extra={"request_id": request_id, "saved_filename": filename, "bytes": size},
        )
        return {"saved_filename": filename, "download_url": self.public_url(filename), "file_size": size}

    def close(self):
        self._client.close()
