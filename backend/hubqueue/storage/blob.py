"""
Blob store adapters: whole-file access to the remote file server.

The remote store only offers file operations. `write_if_absent` is the single
atomic primitive the rest of the system builds on. No retries happen here.
"""
import logging
import threading
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote, unquote, urlparse

import requests

from ..core.errors import AlreadyExists, NotFound, StoreError

logger = logging.getLogger(__name__)

DAV_NS = "{DAV:}"

PROPFIND_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop>'
    "<d:resourcetype/><d:getcontentlength/><d:getlastmodified/>"
    "</d:prop></d:propfind>"
)


@dataclass
class BlobEntry:
    """One entry of a directory listing"""
    path: str
    name: str
    is_dir: bool = False
    size: int = 0
    modified: Optional[datetime] = None


def normalize_path(path: str) -> str:
    """Return `path` as an absolute store path without a trailing slash"""
    path = "/" + path.strip().lstrip("/")
    if len(path) > 1:
        path = path.rstrip("/")
    return path


class BlobStore:
    """Interface of a remote file store"""

    def exists(self, path: str) -> bool:
        raise NotImplementedError

    def read(self, path: str) -> bytes:
        raise NotImplementedError

    def write(self, path: str, data: bytes) -> None:
        raise NotImplementedError

    def write_if_absent(self, path: str, data: bytes) -> None:
        raise NotImplementedError

    def delete(self, path: str) -> None:
        raise NotImplementedError

    def delete_if_unchanged(self, path: str, expected: bytes) -> bool:
        """Delete `path` only if it still holds `expected`; True when deleted"""
        raise NotImplementedError

    def replace_if_unchanged(self, path: str, expected: bytes, data: bytes) -> bool:
        """Overwrite `path` with `data` only if it still holds `expected`"""
        raise NotImplementedError

    def list(self, directory: str) -> List[BlobEntry]:
        raise NotImplementedError

    def ensure_directory(self, path: str) -> None:
        raise NotImplementedError


# ============ WEBDAV ============
class WebDavBlobStore(BlobStore):
    """
    WebDAV implementation over a requests session.

    - create-if-absent is a PUT with `If-None-Match: *`; the server answers
      412 Precondition Failed when the file exists
    - 404 on DELETE is success
    - conditional replace/delete compare the content, then send the request
      with `If-Match: <etag>` so a concurrent change answers 412
    - transport errors and auth/server failures become StoreError
    """

    def __init__(
        self,
        base_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        if not base_url:
            raise StoreError("WebDAV configuration is incomplete. Please check WEBDAV_URL.")
        self.base_url = base_url.rstrip("/")
        self.base_path = urlparse(self.base_url).path.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if username:
            self.session.auth = (username, password or "")

    def _url(self, path: str) -> str:
        return self.base_url + quote(normalize_path(path))

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = self.session.request(method, self._url(path), **kwargs)
        except requests.RequestException as e:
            logger.error(f"WebDAV {method} {path} failed: {e}")
            raise StoreError() from e
        if response.status_code in (401, 403):
            logger.error(f"WebDAV {method} {path} rejected credentials ({response.status_code})")
            raise StoreError("The file server rejected our credentials.")
        if response.status_code >= 500:
            logger.error(f"WebDAV {method} {path} server error ({response.status_code})")
            raise StoreError()
        return response

    def exists(self, path: str) -> bool:
        response = self._request("HEAD", path)
        if response.status_code == 404:
            return False
        if response.ok:
            return True
        raise StoreError(f"Unexpected status {response.status_code} checking {path}")

    def read(self, path: str) -> bytes:
        response = self._request("GET", path)
        if response.status_code == 404:
            raise NotFound(f"{path} does not exist")
        if not response.ok:
            raise StoreError(f"Unexpected status {response.status_code} reading {path}")
        return response.content

    def write(self, path: str, data: bytes) -> None:
        response = self._request("PUT", path, data=data)
        if not response.ok:
            raise StoreError(f"Unexpected status {response.status_code} writing {path}")

    def write_if_absent(self, path: str, data: bytes) -> None:
        response = self._request("PUT", path, data=data, headers={"If-None-Match": "*"})
        if response.status_code == 412:
            raise AlreadyExists(f"{path} already exists")
        if not response.ok:
            raise StoreError(f"Unexpected status {response.status_code} creating {path}")

    def delete(self, path: str) -> None:
        response = self._request("DELETE", path)
        if response.status_code == 404:
            return
        if not response.ok:
            raise StoreError(f"Unexpected status {response.status_code} deleting {path}")

    def _etag_if_unchanged(self, path: str, expected: bytes) -> Optional[str]:
        """ETag of `path` when its content equals `expected`, None otherwise"""
        response = self._request("GET", path)
        if response.status_code == 404:
            return None
        if not response.ok:
            raise StoreError(f"Unexpected status {response.status_code} reading {path}")
        if response.content != expected:
            return None
        etag = response.headers.get("ETag")
        if not etag:
            raise StoreError(f"The file server sent no ETag for {path}; conditional writes are unavailable.")
        return etag

    def delete_if_unchanged(self, path: str, expected: bytes) -> bool:
        etag = self._etag_if_unchanged(path, expected)
        if etag is None:
            return False
        response = self._request("DELETE", path, headers={"If-Match": etag})
        if response.status_code in (404, 412):
            return False
        if not response.ok:
            raise StoreError(f"Unexpected status {response.status_code} deleting {path}")
        return True

    def replace_if_unchanged(self, path: str, expected: bytes, data: bytes) -> bool:
        etag = self._etag_if_unchanged(path, expected)
        if etag is None:
            return False
        response = self._request("PUT", path, data=data, headers={"If-Match": etag})
        if response.status_code == 412:
            return False
        if not response.ok:
            raise StoreError(f"Unexpected status {response.status_code} writing {path}")
        return True

    def ensure_directory(self, path: str) -> None:
        response = self._request("MKCOL", path)
        # 405 Method Not Allowed: the collection already exists
        if response.ok or response.status_code == 405:
            return
        raise StoreError(f"Unexpected status {response.status_code} creating directory {path}")

    def list(self, directory: str) -> List[BlobEntry]:
        directory = normalize_path(directory)
        response = self._request(
            "PROPFIND",
            directory,
            data=PROPFIND_BODY,
            headers={"Depth": "1", "Content-Type": "application/xml; charset=utf-8"},
        )
        if response.status_code == 404:
            raise NotFound(f"{directory} does not exist")
        if response.status_code != 207:
            raise StoreError(f"Unexpected status {response.status_code} listing {directory}")
        return [e for e in self._parse_multistatus(response.content) if e.path != directory]

    def _store_path(self, href: str) -> str:
        path = unquote(urlparse(href).path)
        if self.base_path and path.startswith(self.base_path):
            path = path[len(self.base_path):]
        return normalize_path(path)

    def _parse_multistatus(self, body: bytes) -> List[BlobEntry]:
        try:
            root = ET.fromstring(body)
        except ET.ParseError as e:
            raise StoreError("The file server returned an invalid listing.") from e

        entries = []
        for resp in root.findall(f"{DAV_NS}response"):
            href = resp.findtext(f"{DAV_NS}href") or ""
            prop = resp.find(f"{DAV_NS}propstat/{DAV_NS}prop")
            is_dir = False
            size = 0
            modified = None
            if prop is not None:
                is_dir = prop.find(f"{DAV_NS}resourcetype/{DAV_NS}collection") is not None
                length = prop.findtext(f"{DAV_NS}getcontentlength")
                if length and length.strip().isdigit():
                    size = int(length)
                lastmod = prop.findtext(f"{DAV_NS}getlastmodified")
                if lastmod:
                    try:
                        modified = parsedate_to_datetime(lastmod)
                    except (TypeError, ValueError):
                        modified = None
            path = self._store_path(href)
            entries.append(BlobEntry(
                path=path,
                name=path.rsplit("/", 1)[-1],
                is_dir=is_dir,
                size=size,
                modified=modified,
            ))
        return entries


# ============ IN-MEMORY ============
class MemoryBlobStore(BlobStore):
    """Thread-safe in-process store with the same semantics as the WebDAV one"""

    def __init__(self):
        self._files: Dict[str, Tuple[bytes, datetime]] = {}
        self._dirs = {"/"}
        self._lock = threading.Lock()

    def exists(self, path: str) -> bool:
        path = normalize_path(path)
        with self._lock:
            return path in self._files or path in self._dirs

    def read(self, path: str) -> bytes:
        path = normalize_path(path)
        with self._lock:
            if path not in self._files:
                raise NotFound(f"{path} does not exist")
            return self._files[path][0]

    def write(self, path: str, data: bytes) -> None:
        path = normalize_path(path)
        with self._lock:
            self._files[path] = (bytes(data), datetime.now(timezone.utc))

    def write_if_absent(self, path: str, data: bytes) -> None:
        path = normalize_path(path)
        with self._lock:
            if path in self._files:
                raise AlreadyExists(f"{path} already exists")
            self._files[path] = (bytes(data), datetime.now(timezone.utc))

    def delete(self, path: str) -> None:
        path = normalize_path(path)
        with self._lock:
            self._files.pop(path, None)
            if path in self._dirs and path != "/":
                self._dirs.discard(path)
                prefix = path + "/"
                for key in [k for k in self._files if k.startswith(prefix)]:
                    del self._files[key]

    def delete_if_unchanged(self, path: str, expected: bytes) -> bool:
        path = normalize_path(path)
        with self._lock:
            current = self._files.get(path)
            if current is None or current[0] != expected:
                return False
            del self._files[path]
            return True

    def replace_if_unchanged(self, path: str, expected: bytes, data: bytes) -> bool:
        path = normalize_path(path)
        with self._lock:
            current = self._files.get(path)
            if current is None or current[0] != expected:
                return False
            self._files[path] = (bytes(data), datetime.now(timezone.utc))
            return True

    def ensure_directory(self, path: str) -> None:
        path = normalize_path(path)
        with self._lock:
            self._dirs.add(path)

    def list(self, directory: str) -> List[BlobEntry]:
        directory = normalize_path(directory)
        prefix = "/" if directory == "/" else directory + "/"
        with self._lock:
            if directory not in self._dirs:
                raise NotFound(f"{directory} does not exist")
            entries = [
                BlobEntry(path=p, name=p[len(prefix):], size=len(data), modified=modified)
                for p, (data, modified) in self._files.items()
                if p.startswith(prefix) and "/" not in p[len(prefix):]
            ]
            entries.extend(
                BlobEntry(path=d, name=d[len(prefix):], is_dir=True)
                for d in self._dirs
                if d != directory and d.startswith(prefix) and "/" not in d[len(prefix):]
            )
        return sorted(entries, key=lambda e: e.path)
