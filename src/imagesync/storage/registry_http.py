"""
Registry HTTP Client for the OCI Distribution API.

Implements the pull and push primitives used by the transfer engine with the
Docker Registry v2 auth flow (Bearer token via ``WWW-Authenticate`` challenge,
or Basic), streamed blob download and chunked blob upload.

The client never retries on its own apart from the single forced token
refresh after a 401; all other retry decisions belong to the transfer engine.
"""
from __future__ import annotations

import base64
import json
import logging
import threading
from contextlib import contextmanager
from typing import BinaryIO, Callable, Iterator, Optional, Sequence, Tuple
from urllib.parse import urljoin

import httpx

from ..models import (
    BlobDescriptor,
    Manifest,
    ManifestIndex,
    Platform,
    compute_digest,
    digest_algorithm,
    parse_manifest,
)
from ..reference import ImageReference
from .auth import Challenge, Credentials, TokenCache, parse_challenge
from .oci_errors import (
    OciAuthError,
    OciCancelled,
    OciDigestMismatch,
    OciNetworkError,
    OciSizeMismatch,
    OciUnsupportedMediaType,
    error_for_status,
)
from .oci_media_types import ACCEPTED_MANIFEST_TYPES

logger = logging.getLogger(__name__)

__all__ = ["RegistryClient", "CHUNK_SIZE", "UPLOAD_CHUNK_SIZE"]

CHUNK_SIZE = 1024 * 1024  # 1 MiB
UPLOAD_CHUNK_SIZE = 16 * 1024 * 1024  # blobs above this are sent with PATCH
_MAX_INDEX_DEPTH = 2
_NO_AUTH = Challenge(scheme="none")


class RegistryClient:
    """
    HTTP client for one registry host.

    Implements the ``OciRegistry`` protocol. A single instance is safe to
    share between worker threads; tokens live in the ``TokenCache`` passed
    in by the caller.
    """

    def __init__(self, host: str, credentials: Optional[Credentials] = None, *,
                 token_cache: Optional[TokenCache] = None,
                 insecure: bool = False,
                 timeout_s: float = 30.0,
                 platform: Optional[str] = "linux/amd64",
                 chunk_size: int = CHUNK_SIZE,
                 upload_chunk_size: int = UPLOAD_CHUNK_SIZE,
                 cancel_event: Optional[threading.Event] = None,
                 transport: Optional[httpx.BaseTransport] = None,
                 max_connections: int = 16):
        """
        Initialize registry HTTP client.

        Args:
            host: Registry API host (e.g., "registry-1.docker.io", "localhost:5000")
            credentials: (username, password-or-token) for this host
            token_cache: Shared bearer token cache (a private one if omitted)
            insecure: Use plain HTTP and skip TLS verification
            timeout_s: Read/write timeout per request
            platform: os/arch[/variant] selected from manifest lists
            chunk_size: Download chunk size
            upload_chunk_size: Largest blob sent in a single PUT
            cancel_event: Checked before each request and between chunks
            transport: Custom httpx transport (tests)
            max_connections: Connection pool limit for this host
        """
        self.host = host
        self.credentials = credentials
        self.insecure = insecure
        self.platform = Platform.parse(platform) if platform else None
        self.chunk_size = chunk_size
        self.upload_chunk_size = upload_chunk_size
        self.cancel_event = cancel_event
        self._tokens = token_cache if token_cache is not None else TokenCache()

        # Determine base URL
        if host.startswith("http"):
            self.base_url = host
        elif insecure:
            self.base_url = f"http://{host}"
        else:
            self.base_url = f"https://{host}"

        self.client = httpx.Client(
            timeout=httpx.Timeout(timeout_s, connect=10.0, pool=timeout_s),
            limits=httpx.Limits(max_connections=max_connections, max_keepalive_connections=max_connections),
            follow_redirects=True,
            verify=not insecure,
            headers={"User-Agent": "imagesync/0.1.0"},
            transport=transport,
        )

        self._challenge: Optional[Challenge] = None
        self._challenge_lock = threading.Lock()

    # Authentication

    def authenticate(self, repository: str, actions: Sequence[str] = ("pull",)) -> Optional[str]:
        """
        Obtain a bearer token for ``repository`` and ``actions``.

        Pings ``/v2/`` once per client to learn the auth scheme. Registries
        that allow anonymous access or use Basic auth return None.

        Raises:
            OciAuthError: If the token service rejects the credentials
        """
        challenge = self._discover_challenge()
        if challenge.scheme != "bearer":
            return None
        scopes = (_scope(repository, actions),)
        token = self._tokens.get(self.host, _scope_key(scopes))
        if token is not None:
            return token
        return self._tokens.refresh(self.host, _scope_key(scopes), lambda: self._fetch_token(challenge, scopes))

    def _discover_challenge(self) -> Challenge:
        with self._challenge_lock:
            if self._challenge is not None:
                return self._challenge
        response = self._send("GET", "/v2/", headers={}, body=None, auth_header=None, stream=False)
        if response.status_code == 401:
            challenge = parse_challenge(response.headers.get("WWW-Authenticate", ""))
            if challenge is None:
                raise OciAuthError(f"{self.host} requires authentication with an unsupported scheme")
        elif response.status_code < 400 or response.status_code == 404:
            challenge = _NO_AUTH
        else:
            raise error_for_status(response.status_code, f"Ping {self.host}/v2/", response.headers)
        with self._challenge_lock:
            self._challenge = challenge
        logger.debug(f"{self.host} auth scheme: {challenge.scheme}")
        return challenge

    def _fetch_token(self, challenge: Challenge, scopes: Sequence[str]) -> Tuple[str, float]:
        """Exchange credentials for a bearer token at the challenge realm."""
        if not challenge.realm:
            raise OciAuthError(f"Bearer challenge from {self.host} has no realm")
        params = [("service", challenge.service)] if challenge.service else []
        params += [("scope", scope) for scope in scopes if scope]
        self._check_cancelled()
        try:
            response = self.client.get(
                challenge.realm,
                params=params,
                auth=self.credentials if self.credentials else None,
            )
        except httpx.TransportError as e:
            raise OciNetworkError(f"Network error requesting token from {challenge.realm}: {e}") from e

        if response.status_code in (401, 403):
            raise OciAuthError(f"Token request for {self.host} rejected: HTTP {response.status_code}")
        if response.status_code >= 400:
            raise error_for_status(response.status_code, f"Token request for {self.host}", response.headers)

        try:
            token_data = response.json()
        except json.JSONDecodeError as e:
            raise OciAuthError(f"Token response from {challenge.realm} is not JSON: {e}") from e
        token = token_data.get("token") or token_data.get("access_token")
        if not token:
            raise OciAuthError(f"Token response from {challenge.realm} carries no token")
        expires_in = float(token_data.get("expires_in") or 60)
        return token, expires_in

    # Transport

    def _check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise OciCancelled(f"Transfer cancelled ({self.host})")

    def _send(self, method: str, url: str, *, headers: dict, body: Optional[Callable[[], object]],
              auth_header: Optional[str], stream: bool) -> httpx.Response:
        self._check_cancelled()
        request_headers = dict(headers)
        if auth_header:
            request_headers["Authorization"] = auth_header
        request = self.client.build_request(
            method,
            urljoin(self.base_url, url),
            headers=request_headers,
            content=body() if body is not None else None,
        )
        try:
            return self.client.send(request, stream=stream)
        except httpx.TransportError as e:
            raise OciNetworkError(f"Network error on {method} {request.url}: {e}") from e

    def _auth_header(self, scopes: Sequence[str], refresh: bool = False,
                     stale: Optional[str] = None) -> Optional[str]:
        challenge = self._challenge
        if challenge is None or challenge.scheme == "none":
            return None
        if challenge.scheme == "basic":
            if not self.credentials:
                return None
            username, password = self.credentials
            encoded = base64.b64encode(f"{username}:{password}".encode()).decode("ascii")
            return f"Basic {encoded}"
        key = _scope_key(scopes)
        token = None if refresh else self._tokens.get(self.host, key)
        if token is None:
            token = self._tokens.refresh(self.host, key, lambda: self._fetch_token(challenge, scopes),
                                         stale=stale)
        return f"Bearer {token}"

    def _request(self, method: str, url: str, *, scopes: Sequence[str], what: str,
                 headers: Optional[dict] = None, body: Optional[Callable[[], object]] = None,
                 stream: bool = False, allow_status: Tuple[int, ...] = ()) -> httpx.Response:
        """
        Make HTTP request with transparent auth flow.

        Handles 401 responses by:
        1. Parsing WWW-Authenticate header for Bearer realm/service/scope
        2. Forcing a single token refresh (shared between threads)
        3. Retrying original request once with the new Authorization header
        A second 401 raises OciAuthError.

        Args:
            body: Zero-argument callable producing the request content, so a
                  request can be re-sent after a refresh
            allow_status: Error statuses returned to the caller instead of raised
        """
        headers = headers or {}
        auth_header = self._auth_header(scopes)
        response = self._send(method, url, headers=headers, body=body, auth_header=auth_header, stream=stream)

        if response.status_code == 401:
            challenge = parse_challenge(response.headers.get("WWW-Authenticate", ""))
            response.close()
            if challenge is None:
                raise OciAuthError(f"Authentication failed for {what}")
            with self._challenge_lock:
                self._challenge = challenge
            if challenge.scheme == "basic" and not self.credentials:
                raise OciAuthError(f"Authentication required for {what} but no credentials for {self.host}")
            logger.debug(f"401 on {what}; refreshing {challenge.scheme} credentials")
            auth_header = self._auth_header(scopes, refresh=True, stale=_strip_bearer(auth_header))
            response = self._send(method, url, headers=headers, body=body, auth_header=auth_header, stream=stream)
            if response.status_code == 401:
                response.close()
                raise OciAuthError(f"Authentication failed for {what} after token refresh")

        if response.status_code >= 400 and response.status_code not in allow_status:
            if stream:
                response.read()
            code, detail = _error_detail(response)
            response.close()
            raise error_for_status(response.status_code, f"{what}{detail}", response.headers, code=code)
        return response

    # Pull primitives

    def fetch_manifest(self, ref: ImageReference, _depth: int = 0) -> Tuple[Manifest, bytes]:
        """
        Fetch a manifest, resolving manifest lists to the configured platform.

        Returns:
            (Manifest, raw_bytes)

        Raises:
            OciNotFound: If manifest doesn't exist
            OciDigestMismatch: If the bytes don't hash to the requested or
                advertised digest
            OciUnsupportedMediaType: If the manifest schema is not supported
        """
        what = f"manifest {ref}"
        response = self._request(
            "GET", f"/v2/{ref.repository}/manifests/{ref.ref}",
            scopes=(_scope(ref.repository, ("pull",)),),
            what=what,
            headers={"Accept": ", ".join(ACCEPTED_MANIFEST_TYPES)},
        )
        raw = response.content
        content_type = response.headers.get("Content-Type")
        header_digest = response.headers.get("Docker-Content-Digest")

        for claimed in (ref.digest, header_digest):
            if claimed:
                actual = compute_digest(raw, digest_algorithm(claimed))
                if actual != claimed:
                    raise OciDigestMismatch(
                        f"Manifest digest mismatch for {ref}: expected {claimed}, got {actual}",
                        expected=claimed, actual=actual,
                    )

        algorithm = digest_algorithm(ref.digest) if ref.digest else "sha256"
        parsed = parse_manifest(raw, content_type, algorithm)

        if isinstance(parsed, ManifestIndex):
            if _depth >= _MAX_INDEX_DEPTH:
                raise OciUnsupportedMediaType(f"Nested manifest lists too deep at {ref}")
            entry = parsed.select(self.platform)
            logger.debug(f"{ref} is a manifest list; selected {entry.digest} ({entry.platform})")
            return self.fetch_manifest(ref.with_digest(entry.digest), _depth + 1)

        logger.debug(f"Fetched {what} ({parsed.media_type}, {parsed.digest})")
        return parsed, raw

    def head_manifest(self, ref: ImageReference) -> Optional[str]:
        """
        Get manifest digest without downloading content.

        Returns:
            Digest of the manifest at ``ref`` or None when absent
        """
        what = f"manifest {ref}"
        response = self._request(
            "HEAD", f"/v2/{ref.repository}/manifests/{ref.ref}",
            scopes=(_scope(ref.repository, ("pull",)),),
            what=what,
            headers={"Accept": ", ".join(ACCEPTED_MANIFEST_TYPES)},
            allow_status=(404,),
        )
        if response.status_code == 404:
            return None
        digest = response.headers.get("Docker-Content-Digest")
        if digest:
            return digest
        # Some registries omit the header on HEAD; hash the body instead
        response = self._request(
            "GET", f"/v2/{ref.repository}/manifests/{ref.ref}",
            scopes=(_scope(ref.repository, ("pull",)),),
            what=what,
            headers={"Accept": ", ".join(ACCEPTED_MANIFEST_TYPES)},
        )
        return compute_digest(response.content)

    @contextmanager
    def fetch_blob(self, repository: str, descriptor: BlobDescriptor) -> Iterator[Iterator[bytes]]:
        """
        Stream a blob in chunks; the caller hashes while consuming.

        Raises:
            OciNotFound: If blob not found
            OciSizeMismatch: If more or fewer bytes than descriptor.size arrive
            OciNetworkError: If the connection drops mid-stream
        """
        response = self._request(
            "GET", f"/v2/{repository}/blobs/{descriptor.digest}",
            scopes=(_scope(repository, ("pull",)),),
            what=f"blob {repository}@{descriptor.digest}",
            stream=True,
        )
        try:
            yield self._iter_response(response, repository, descriptor)
        finally:
            response.close()

    def _iter_response(self, response: httpx.Response, repository: str,
                       descriptor: BlobDescriptor) -> Iterator[bytes]:
        received = 0
        try:
            for chunk in response.iter_bytes(self.chunk_size):
                self._check_cancelled()
                received += len(chunk)
                if received > descriptor.size:
                    raise OciSizeMismatch(
                        f"Blob {repository}@{descriptor.digest} exceeds expected size {descriptor.size}",
                        expected=str(descriptor.size), actual=str(received),
                    )
                yield chunk
        except httpx.TransportError as e:
            raise OciNetworkError(f"Network error streaming blob {descriptor.digest}: {e}") from e
        if received != descriptor.size:
            raise OciSizeMismatch(
                f"Blob {repository}@{descriptor.digest} truncated: got {received} of {descriptor.size} bytes",
                expected=str(descriptor.size), actual=str(received),
            )

    # Push primitives

    def blob_exists(self, repository: str, descriptor: BlobDescriptor) -> bool:
        """
        Check if blob exists in repository via HEAD.

        Returns:
            True if blob exists, False on 404
        """
        response = self._request(
            "HEAD", f"/v2/{repository}/blobs/{descriptor.digest}",
            scopes=(_scope(repository, ("pull",)),),
            what=f"blob {repository}@{descriptor.digest}",
            allow_status=(404,),
        )
        return response.status_code != 404

    def push_blob(self, repository: str, descriptor: BlobDescriptor, stream: BinaryIO,
                  mount_from: Optional[str] = None) -> bool:
        """
        Upload a blob unless the registry already has it.

        Tries a cross-repository mount first when ``mount_from`` is given,
        then falls back to an upload session: a single ``PUT`` for small
        blobs, ``PATCH`` chunks followed by a closing ``PUT`` for large ones.

        Returns:
            True if the blob was uploaded or mounted, False if already present
        """
        if self.blob_exists(repository, descriptor):
            logger.debug(f"Blob {descriptor.digest} already in {self.host}/{repository}")
            return False

        what = f"upload {repository}@{descriptor.digest}"
        scopes = (_scope(repository, ("pull", "push")),)
        url = f"/v2/{repository}/blobs/uploads/"
        if mount_from and mount_from != repository:
            scopes += (_scope(mount_from, ("pull",)),)
            url = f"{url}?mount={descriptor.digest}&from={mount_from}"

        response = self._request("POST", url, scopes=scopes, what=what,
                                 headers={"Content-Length": "0"})
        if response.status_code == 201:
            logger.debug(f"Mounted {descriptor.digest} from {mount_from} into {repository}")
            return True

        location = self._location(response, what)
        start = stream.tell() if stream.seekable() else 0

        if descriptor.size <= self.upload_chunk_size:
            response = self._request(
                "PUT", str(httpx.URL(location).copy_merge_params({"digest": descriptor.digest})),
                scopes=scopes, what=what,
                headers={"Content-Type": "application/octet-stream", "Content-Length": str(descriptor.size)},
                body=lambda: self._iter_stream(stream, start),
            )
        else:
            offset = 0
            while True:
                chunk = stream.read(self.upload_chunk_size)
                if not chunk:
                    break
                end = offset + len(chunk) - 1
                response = self._request(
                    "PATCH", location, scopes=scopes, what=what,
                    headers={
                        "Content-Type": "application/octet-stream",
                        "Content-Length": str(len(chunk)),
                        "Content-Range": f"{offset}-{end}",
                    },
                    body=lambda data=chunk: data,
                )
                location = self._location(response, what)
                offset = end + 1
            if offset != descriptor.size:
                raise OciSizeMismatch(
                    f"Staged blob {descriptor.digest} has {offset} bytes, expected {descriptor.size}",
                    expected=str(descriptor.size), actual=str(offset),
                )
            response = self._request(
                "PUT", str(httpx.URL(location).copy_merge_params({"digest": descriptor.digest})),
                scopes=scopes, what=what,
                headers={"Content-Length": "0"},
            )

        stored = response.headers.get("Docker-Content-Digest")
        if stored and stored != descriptor.digest:
            raise OciDigestMismatch(
                f"Registry stored blob as {stored}, expected {descriptor.digest}",
                expected=descriptor.digest, actual=stored,
            )
        logger.debug(f"Uploaded {descriptor.digest} ({descriptor.size} bytes) to {self.host}/{repository}")
        return True

    def push_manifest(self, ref: ImageReference, raw: bytes, media_type: str) -> str:
        """
        PUT manifest bytes and validate the digest the registry reports.

        Returns:
            Canonical digest of ``raw``

        Raises:
            OciDigestMismatch: If server digest != local digest
            OciValidationError: If the registry rejects the manifest
        """
        algorithm = digest_algorithm(ref.digest) if ref.digest else "sha256"
        digest = compute_digest(raw, algorithm)
        if ref.digest and ref.digest != digest:
            raise OciDigestMismatch(
                f"Manifest bytes hash to {digest}, cannot push as {ref}",
                expected=ref.digest, actual=digest,
            )
        response = self._request(
            "PUT", f"/v2/{ref.repository}/manifests/{ref.ref}",
            scopes=(_scope(ref.repository, ("pull", "push")),),
            what=f"manifest push {ref}",
            headers={"Content-Type": media_type},
            body=lambda: raw,
        )
        server_digest = response.headers.get("Docker-Content-Digest")
        if server_digest and server_digest != digest:
            raise OciDigestMismatch(
                f"Registry reports {server_digest} for {ref}, local digest is {digest}",
                expected=digest, actual=server_digest,
            )
        return digest

    # Helpers

    def _iter_stream(self, stream: BinaryIO, start: int) -> Iterator[bytes]:
        if stream.seekable():
            stream.seek(start)
        while True:
            self._check_cancelled()
            chunk = stream.read(self.chunk_size)
            if not chunk:
                break
            yield chunk

    def _location(self, response: httpx.Response, what: str) -> str:
        location = response.headers.get("Location")
        if not location:
            raise OciNetworkError(f"Registry returned no upload Location for {what}", status=response.status_code)
        return urljoin(self.base_url, location)

    def close(self):
        """Close HTTP client."""
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def _scope(repository: str, actions: Sequence[str]) -> str:
    return f"repository:{repository}:{','.join(actions)}"


def _scope_key(scopes: Sequence[str]) -> str:
    return " ".join(scopes)


def _strip_bearer(header: Optional[str]) -> Optional[str]:
    if header and header.startswith("Bearer "):
        return header[len("Bearer "):]
    return None


def _error_detail(response: httpx.Response) -> Tuple[Optional[str], str]:
    """Extract the first registry error code and a message suffix from a JSON error body."""
    try:
        errors = response.json().get("errors") or []
    except (json.JSONDecodeError, UnicodeDecodeError, AttributeError):
        return None, ""
    if not errors or not isinstance(errors[0], dict):
        return None, ""
    first = errors[0]
    code = first.get("code")
    return code, f" ({code or 'UNKNOWN'}: {first.get('message', '')})"
