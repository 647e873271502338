"""
Microsoft Graph client for pushing backups into a OneDrive folder.

Covers the client-credentials token exchange, folder listing, creation and
deletion, and the chunked resumable upload protocol used for archives.
"""
from __future__ import annotations

import functools
import json
import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import IO, Any, Callable, Dict, List, Optional, Sequence, Tuple, Type, TypeVar, Union
from urllib.parse import quote

import requests

from archive import LocalIOError


GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
LOGIN_AUTHORITY = "https://login.microsoftonline.com"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"

DEFAULT_TIMEOUT = 120.0
DEFAULT_CHUNK_SIZE = 10 * 1024 * 1024
# Graph rejects upload ranges that are not a multiple of this, except the last.
UPLOAD_CHUNK_ALIGNMENT = 320 * 1024

TOKEN_RETRY_DELAY = 30.0
RANGE_RETRY_DELAY = 10.0

RANGE_SUCCESS_CODES = frozenset({200, 201, 202})
# Failures after which the server may already hold the range: lost replies and 416.
RANGE_RECHECK_STATUSES = frozenset({None, 416})
CONFLICT_BEHAVIOR = "@microsoft.graph.conflictBehavior"

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OneDriveError(Exception):
    """Base class for errors raised while talking to Microsoft Graph."""


class AuthError(OneDriveError):
    """Raised when the client-credentials exchange is rejected or unreadable."""


class NotFoundError(OneDriveError):
    """Raised when a remote folder is still missing after creating it."""


class RemoteError(OneDriveError):
    """Raised for any unexpected HTTP response or transport failure."""

    def __init__(self, status: Optional[int], body: str, message: Optional[str] = None) -> None:
        self.status = status
        self.body = body
        super().__init__(message or f"HTTP {status}: {body}")

    @classmethod
    def from_response(cls, response: requests.Response, action: str) -> "RemoteError":
        return cls(
            response.status_code,
            response.text,
            f"{action} failed: HTTP {response.status_code} {response.text}",
        )


@dataclass
class RetryPolicy:
    """How often and how patiently a network operation is retried.

    ``max_attempts=None`` retries forever. ``sleep`` is injectable so callers
    can drive the policy with a fake clock.
    """

    delay: float
    max_attempts: Optional[int] = None
    sleep: Callable[[float], None] = time.sleep

    @property
    def forever(self) -> bool:
        return self.max_attempts is None

    def call(
        self,
        operation: Callable[[], T],
        *,
        retry_on: Union[Type[BaseException], Tuple[Type[BaseException], ...]],
        description: str,
    ) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return operation()
            except retry_on as error:
                if self.max_attempts is not None and attempt >= self.max_attempts:
                    raise
                logger.warning(
                    "%s failed (attempt %d): %s. Retrying in %g seconds.",
                    description,
                    attempt,
                    error,
                    self.delay,
                )
                self.sleep(self.delay)


@dataclass(frozen=True)
class BearerToken:
    value: str
    acquired_at: float


class TokenProvider:
    """Exchanges application credentials for a Graph bearer token.

    The token is fetched lazily on first use and replaced wholesale by
    :meth:`refresh`. Failed exchanges are retried according to ``retry``,
    which by default never gives up.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        tenant_id: str,
        *,
        session: Optional[requests.Session] = None,
        retry: Optional[RetryPolicy] = None,
        timeout: float = DEFAULT_TIMEOUT,
        authority: str = LOGIN_AUTHORITY,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.tenant_id = tenant_id
        self.session = session or requests.Session()
        self.retry = retry or RetryPolicy(delay=TOKEN_RETRY_DELAY)
        self.timeout = timeout
        self.authority = authority.rstrip("/")
        self.clock = clock
        self._token: Optional[BearerToken] = None

    @property
    def token_url(self) -> str:
        return f"{self.authority}/{quote(self.tenant_id, safe='')}/oauth2/v2.0/token"

    def token(self) -> BearerToken:
        if self._token is None:
            self._token = self.acquire()
        return self._token

    def refresh(self) -> BearerToken:
        self._token = self.acquire()
        return self._token

    def acquire(self) -> BearerToken:
        return self.retry.call(
            self._request_token,
            retry_on=AuthError,
            description="Access token request",
        )

    def _request_token(self) -> BearerToken:
        form = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scope": GRAPH_SCOPE,
        }
        try:
            response = self.session.request(
                "POST", self.token_url, data=form, timeout=self.timeout
            )
        except requests.RequestException as error:
            raise AuthError(f"Token endpoint unreachable: {error}") from error

        if response.status_code != 200:
            raise AuthError(
                f"Token request rejected: HTTP {response.status_code} {response.text}"
            )

        try:
            payload = response.json()
        except ValueError as error:
            raise AuthError("Token response is not valid JSON.") from error

        value = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(value, str) or not value:
            raise AuthError("Token response does not contain an access_token.")

        logger.debug("Acquired a new access token for tenant %s", self.tenant_id)
        return BearerToken(value=value, acquired_at=self.clock())


def normalize_remote_path(path: str) -> str:
    return "/".join(part for part in path.replace("\\", "/").split("/") if part)


class GraphClient:
    """Authenticated access to one drive, passed explicitly to every caller."""

    def __init__(
        self,
        tokens: TokenProvider,
        drive_id: str,
        *,
        session: Optional[requests.Session] = None,
        base_url: str = GRAPH_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.tokens = tokens
        self.drive_id = drive_id
        self.session = session or tokens.session
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def drive_url(self, suffix: str) -> str:
        return f"{self.base_url}/drives/{quote(self.drive_id, safe='')}/{suffix.lstrip('/')}"

    def path_url(self, path: str, suffix: str) -> str:
        normalized = normalize_remote_path(path)
        if not normalized:
            return self.drive_url(f"root/{suffix}")
        return self.drive_url(f"root:/{quote(normalized)}:/{suffix}")

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """Send an authenticated request, refreshing the token once on 401."""
        response = self._send(method, url, self.tokens.token(), kwargs)
        if response.status_code == 401:
            logger.info("Access token rejected by %s %s, refreshing", method, url)
            response = self._send(method, url, self.tokens.refresh(), kwargs)
        return response

    def send_unauthenticated(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """Send a request to a pre-authorised URL such as an upload session."""
        kwargs.setdefault("timeout", self.timeout)
        try:
            return self.session.request(method, url, **kwargs)
        except requests.RequestException as error:
            raise RemoteError(None, str(error), f"{method} upload session failed: {error}") from error

    def _send(
        self, method: str, url: str, token: BearerToken, kwargs: Dict[str, Any]
    ) -> requests.Response:
        options = dict(kwargs)
        headers = dict(options.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {token.value}"
        options.setdefault("timeout", self.timeout)
        try:
            return self.session.request(method, url, headers=headers, **options)
        except requests.RequestException as error:
            raise RemoteError(None, str(error), f"{method} {url} failed: {error}") from error


def _json_body(response: requests.Response, action: str) -> Dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as error:
        raise RemoteError(
            response.status_code, response.text, f"{action} returned invalid JSON."
        ) from error
    if not isinstance(payload, dict):
        raise RemoteError(
            response.status_code, response.text, f"{action} returned an unexpected payload."
        )
    return payload


@dataclass(frozen=True)
class RemoteEntry:
    name: str
    id: str
    last_modified: str

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "RemoteEntry":
        return cls(
            name=str(item.get("name", "")),
            id=str(item.get("id", "")),
            last_modified=str(item.get("lastModifiedDateTime", "")),
        )


@dataclass(frozen=True)
class FolderListing:
    """Outcome of listing a folder: ``Found(entries)`` or ``Absent``."""

    exists: bool
    entries: Tuple[RemoteEntry, ...] = ()

    @classmethod
    def found(cls, entries: Sequence[RemoteEntry]) -> "FolderListing":
        return cls(exists=True, entries=tuple(entries))

    @classmethod
    def absent(cls) -> "FolderListing":
        return cls(exists=False)


class RemoteDirectory:
    """Lists, creates and deletes entries below a drive's root."""

    def __init__(self, client: GraphClient) -> None:
        self.client = client

    def ensure_folder(self, path: str) -> None:
        """Create ``path`` (and missing parents) with rename-on-conflict.

        A name collision yields a renamed sibling instead of an error, so
        calling this for an existing folder is harmless.
        """
        normalized = normalize_remote_path(path)
        if not normalized:
            return

        parent, _, name = normalized.rpartition("/")
        response = self._create_child(parent, name)
        if response.status_code == 404 and parent:
            logger.info("Parent folder %s is missing, creating it first", parent)
            self.ensure_folder(parent)
            response = self._create_child(parent, name)

        if response.status_code not in (200, 201):
            raise RemoteError.from_response(response, f"Creating folder {normalized}")

        created_name = _json_body(response, f"Creating folder {normalized}").get("name", name)
        if created_name != name:
            logger.warning(
                "Folder %s already existed; Graph created %s instead", name, created_name
            )
        else:
            logger.info("Created remote folder %s", normalized)

    def _create_child(self, parent: str, name: str) -> requests.Response:
        body = {"name": name, "folder": {}, CONFLICT_BEHAVIOR: "rename"}
        return self.client.request("POST", self.client.path_url(parent, "children"), json=body)

    def probe(self, path: str) -> FolderListing:
        url: Optional[str] = self.client.path_url(path, "children")
        entries: List[RemoteEntry] = []
        while url:
            response = self.client.request("GET", url)
            if response.status_code == 404 and not entries:
                return FolderListing.absent()
            if response.status_code != 200:
                raise RemoteError.from_response(response, f"Listing {path}")
            payload = _json_body(response, f"Listing {path}")
            entries.extend(RemoteEntry.from_item(item) for item in payload.get("value", []))
            url = payload.get("@odata.nextLink")
        return FolderListing.found(entries)

    def list(self, path: str) -> List[RemoteEntry]:
        """List ``path``, creating it once if it does not exist yet."""
        listing = self.probe(path)
        if not listing.exists:
            logger.info("Remote folder %s does not exist, creating it", path)
            self.ensure_folder(path)
            listing = self.probe(path)
            if not listing.exists:
                raise NotFoundError(f"Remote folder {path} is still missing after creating it.")
        return list(listing.entries)

    def delete(self, entry_id: str) -> None:
        url = self.client.drive_url(f"items/{quote(entry_id, safe='')}")
        response = self.client.request("DELETE", url)
        if response.status_code != 204:
            raise RemoteError.from_response(response, f"Deleting item {entry_id}")


@dataclass
class UploadSession:
    upload_url: str
    total_size: int
    next_offset: int = 0
    name: str = ""
    folder: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UploadSession":
        session = cls(
            upload_url=str(data["upload_url"]),
            total_size=int(data["total_size"]),
            next_offset=int(data["next_offset"]),
            name=str(data["name"]),
            folder=str(data["folder"]),
        )
        if not 0 <= session.next_offset <= session.total_size:
            raise ValueError(f"next_offset {session.next_offset} is out of range")
        return session


class UploadStateStore:
    """Persists an in-flight upload session so a restart can resume it."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> Optional[UploadSession]:
        if not self.path.is_file():
            return None
        try:
            return UploadSession.from_dict(json.loads(self.path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as error:
            logger.warning("Ignoring unreadable upload state %s: %s", self.path, error)
            return None

    def save(self, session: UploadSession) -> None:
        temp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(json.dumps(asdict(session)), encoding="utf-8")
            temp_path.replace(self.path)
        except OSError as error:
            raise LocalIOError(f"Could not save upload state to {self.path}: {error}") from error

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as error:
            raise LocalIOError(f"Could not remove upload state {self.path}: {error}") from error


def read_range(stream: IO[bytes], offset: int, length: int) -> bytes:
    try:
        stream.seek(offset)
        chunks: List[bytes] = []
        remaining = length
        while remaining > 0:
            block = stream.read(remaining)
            if not block:
                break
            chunks.append(block)
            remaining -= len(block)
    except OSError as error:
        raise LocalIOError(f"Could not read {length} bytes at offset {offset}: {error}") from error

    data = b"".join(chunks)
    if len(data) != length:
        raise LocalIOError(
            f"Stream ended after {offset + len(data)} bytes; expected {length} bytes at offset {offset}."
        )
    return data


class ResumableUploader:
    """Uploads a byte stream through a Graph upload session, one range at a time.

    Ranges are sent strictly in order. A failed range is resent with the
    identical bytes after ``retry.delay`` seconds, and the offset only
    advances once the server has accepted the range.
    """

    def __init__(
        self,
        client: GraphClient,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        retry: Optional[RetryPolicy] = None,
        state: Optional[UploadStateStore] = None,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive.")
        if chunk_size % UPLOAD_CHUNK_ALIGNMENT:
            logger.warning(
                "Chunk size %d is not a multiple of %d bytes; Graph may reject ranges.",
                chunk_size,
                UPLOAD_CHUNK_ALIGNMENT,
            )
        self.client = client
        self.chunk_size = chunk_size
        self.retry = retry or RetryPolicy(delay=RANGE_RETRY_DELAY)
        self.state = state

    def pending_upload(self) -> Optional[UploadSession]:
        if self.state is None:
            return None
        return self.state.load()

    def open_session(self, folder: str, name: str, total_size: int) -> UploadSession:
        folder = normalize_remote_path(folder)
        url = self.client.path_url(f"{folder}/{name}", "createUploadSession")
        body = {"item": {CONFLICT_BEHAVIOR: "rename", "name": name}}
        response = self.client.request("POST", url, json=body)
        if response.status_code != 200:
            raise RemoteError.from_response(response, f"Creating upload session for {name}")

        upload_url = _json_body(response, f"Creating upload session for {name}").get("uploadUrl")
        if not isinstance(upload_url, str) or not upload_url:
            raise RemoteError(
                response.status_code, response.text, "Upload session response has no uploadUrl."
            )
        logger.debug("Opened upload session for %s", name)
        return UploadSession(
            upload_url=upload_url, total_size=total_size, next_offset=0, name=name, folder=folder
        )

    def resume_session(self, folder: str, name: str, total_size: int) -> Optional[UploadSession]:
        saved = self.pending_upload()
        if saved is None:
            return None

        if (saved.name, saved.folder, saved.total_size) != (
            name,
            normalize_remote_path(folder),
            total_size,
        ):
            logger.info("Discarding saved upload state for %s", saved.name)
            self.state.clear()
            return None

        next_offset = self._remote_next_offset(saved)
        if next_offset is None:
            logger.info("Saved upload session for %s is no longer valid, starting over", name)
            self.state.clear()
            return None

        saved.next_offset = next_offset
        logger.info("Resuming upload of %s at byte %d of %d", name, next_offset, total_size)
        return saved

    def _remote_next_offset(self, session: UploadSession) -> Optional[int]:
        try:
            response = self.client.send_unauthenticated("GET", session.upload_url)
        except RemoteError as error:
            logger.warning("Could not query upload session status: %s", error)
            return None
        if response.status_code != 200:
            return None
        try:
            ranges = response.json().get("nextExpectedRanges") or []
            offset = int(str(ranges[0]).split("-", 1)[0])
        except (ValueError, AttributeError, IndexError):
            return None
        if not 0 <= offset < session.total_size:
            return None
        return offset

    def upload(self, stream: IO[bytes], total_size: int, folder: str, name: str) -> UploadSession:
        """Transmit ``total_size`` bytes of ``stream`` as ``folder/name``."""
        if total_size <= 0:
            raise LocalIOError(f"Refusing to upload {name}: it is empty.")

        session = self.resume_session(folder, name, total_size)
        if session is None:
            session = self.open_session(folder, name, total_size)

        offset = session.next_offset
        while offset < total_size:
            length = min(self.chunk_size, total_size - offset)
            data = read_range(stream, offset, length)
            offset = self.retry.call(
                functools.partial(self._send_range, session, offset, data),
                retry_on=RemoteError,
                description=f"Upload of bytes {offset}-{offset + length - 1} of {name}",
            )
            session.next_offset = offset
            logger.debug("Uploaded %d/%d bytes of %s", session.next_offset, total_size, name)
            if self.state is not None and session.next_offset < total_size:
                self.state.save(session)

        if self.state is not None:
            self.state.clear()
        logger.info("Uploaded %s (%d bytes) to %s", name, total_size, session.folder or "/")
        return session

    def _send_range(self, session: UploadSession, offset: int, data: bytes) -> int:
        """PUT one range and return the offset the upload continues from.

        When the reply is lost or the server answers 416, the session is asked
        for ``nextExpectedRanges``; if the server already holds bytes of this
        range the upload continues from there instead of resending them.
        """
        try:
            self._put_range(session, offset, data)
        except RemoteError as error:
            if error.status not in RANGE_RECHECK_STATUSES:
                raise
            remote_offset = self._remote_next_offset(session)
            if remote_offset is None or not offset < remote_offset <= offset + len(data):
                raise
            logger.info(
                "Server already holds bytes %d-%d of %s, continuing at byte %d",
                offset,
                remote_offset - 1,
                session.name,
                remote_offset,
            )
            return remote_offset
        return offset + len(data)

    def _put_range(self, session: UploadSession, offset: int, data: bytes) -> requests.Response:
        end = offset + len(data) - 1
        headers = {
            "Content-Length": str(len(data)),
            "Content-Range": f"bytes {offset}-{end}/{session.total_size}",
        }
        response = self.client.send_unauthenticated(
            "PUT", session.upload_url, data=data, headers=headers
        )
        if response.status_code not in RANGE_SUCCESS_CODES:
            raise RemoteError.from_response(response, f"Range {offset}-{end}")
        return response
