"""
Storage collaborators and the transport adapter.

The object store is opaque to the carrier engine: parts go in under names
unrelated to their content and come back as raw bytes. Three stores ship
here (in-memory, a local directory, and the HTTP upload/files API). The
HTTP API gates every call on an ``x-audit-token`` header and only accepts a
short list of document extensions, which `GatedStore` reproduces locally.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

import httpx
from cryptography.hazmat.primitives.constant_time import bytes_eq

from .main import CodecConfig, Envelope, RawPayload, TransportError, ghostlog

TOKEN_HEADER = "x-audit-token"
ALLOWED_EXTENSIONS: Tuple[str, ...] = (".txt", ".docx", ".png", ".log", ".csv", ".xlsx", ".xls", ".pdf")
DEFAULT_PAGE_LIMIT = 50


@dataclass(frozen=True)
class StoredObject:
    locator: str
    pathname: str
    size: int
    uploaded_at: str = ""


@dataclass(frozen=True)
class Page:
    items: List[StoredObject] = field(default_factory=list)
    cursor: Optional[str] = None
    has_more: bool = False


def _utc_iso(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, timezone.utc).isoformat().replace("+00:00", "Z")


def _offset_page(objects: Sequence[StoredObject], cursor: Optional[str], limit: int) -> Page:
    try:
        start = int(cursor) if cursor else 0
    except ValueError:
        raise TransportError(f"invalid cursor {cursor!r}", status=400) from None
    limit = max(1, int(limit))
    window = list(objects[start:start + limit])
    end = start + len(window)
    has_more = end < len(objects)
    return Page(items=window, cursor=str(end) if has_more else None, has_more=has_more)


class ObjectStore:
    """put/get/list/delete over opaque locators."""

    def put(self, name: str, data: bytes) -> str:
        raise NotImplementedError

    def get(self, locator: str) -> bytes:
        raise NotImplementedError

    def list(self, prefix: str = "", cursor: Optional[str] = None, limit: int = DEFAULT_PAGE_LIMIT) -> Page:
        raise NotImplementedError

    def delete(self, locator: str) -> bool:
        raise NotImplementedError

    def close(self) -> None:
        pass


class MemoryStore(ObjectStore):
    def __init__(self) -> None:
        self.objects: Dict[str, bytes] = {}
        self._stamps: Dict[str, float] = {}

    def put(self, name: str, data: bytes) -> str:
        self.objects[name] = bytes(data)
        self._stamps[name] = time.time()
        return name

    def get(self, locator: str) -> bytes:
        try:
            return self.objects[locator]
        except KeyError:
            raise TransportError(f"object {locator!r} not found", status=404) from None

    def list(self, prefix: str = "", cursor: Optional[str] = None, limit: int = DEFAULT_PAGE_LIMIT) -> Page:
        objects = [
            StoredObject(name, name, len(data), _utc_iso(self._stamps[name]))
            for name, data in sorted(self.objects.items())
            if name.startswith(prefix)
        ]
        return _offset_page(objects, cursor, limit)

    def delete(self, locator: str) -> bool:
        self._stamps.pop(locator, None)
        return self.objects.pop(locator, None) is not None


class DirectoryStore(ObjectStore):
    """Flat directory of objects; the locator is the file name."""

    def __init__(self, root) -> None:
        self.root = Path(root).expanduser()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, locator: str) -> Path:
        member = PurePosixPath(locator)
        if not locator or member.is_absolute() or len(member.parts) != 1 or member.name in (".", ".."):
            raise TransportError(f"unsafe locator {locator!r}", status=400)
        return self.root / member.name

    def put(self, name: str, data: bytes) -> str:
        path = self._resolve(name)
        try:
            path.write_bytes(data)
        except OSError as exc:
            raise TransportError(f"could not store {name!r}: {exc}") from exc
        return path.name

    def get(self, locator: str) -> bytes:
        path = self._resolve(locator)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise TransportError(f"object {locator!r} not found", status=404) from None
        except OSError as exc:
            raise TransportError(f"could not read {locator!r}: {exc}") from exc

    def list(self, prefix: str = "", cursor: Optional[str] = None, limit: int = DEFAULT_PAGE_LIMIT) -> Page:
        objects = []
        for path in sorted(self.root.iterdir()):
            if not path.is_file() or not path.name.startswith(prefix):
                continue
            stat = path.stat()
            objects.append(StoredObject(path.name, path.name, stat.st_size, _utc_iso(stat.st_mtime)))
        return _offset_page(objects, cursor, limit)

    def delete(self, locator: str) -> bool:
        try:
            self._resolve(locator).unlink()
        except FileNotFoundError:
            return False
        return True


class HttpStore(ObjectStore):
    """Client for the ``/api/upload`` and ``/api/files`` routes."""

    def __init__(
        self,
        base_url: str,
        token: str,
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, route: str, **kwargs) -> httpx.Response:
        headers = {TOKEN_HEADER: self.token}
        headers.update(kwargs.pop("headers", {}))
        try:
            response = self._client.request(method, f"{self.base_url}{route}", headers=headers, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            detail = ""
            try:
                detail = exc.response.json().get("error", "")
            except (ValueError, AttributeError):
                detail = exc.response.text
            raise TransportError(f"{method} {route} failed ({status}): {detail}".rstrip(": "), status=status) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {route} failed: {exc}") from exc
        return response

    def put(self, name: str, data: bytes) -> str:
        response = self._request("POST", "/api/upload", params={"filename": name}, content=bytes(data))
        try:
            return response.json()["url"]
        except (ValueError, KeyError, TypeError) as exc:
            raise TransportError(f"upload of {name!r} returned no url") from exc

    def get(self, locator: str) -> bytes:
        return self._request("GET", "/api/upload", params={"url": locator}).content

    def list(self, prefix: str = "", cursor: Optional[str] = None, limit: int = DEFAULT_PAGE_LIMIT) -> Page:
        params = {"limit": str(limit)}
        if prefix:
            params["prefix"] = prefix
        if cursor:
            params["cursor"] = cursor
        try:
            body = self._request("GET", "/api/files", params=params).json()
        except ValueError as exc:
            raise TransportError("file listing is not JSON") from exc
        # Older deployments answer with a bare list of blobs.
        blobs = body if isinstance(body, list) else body.get("blobs", [])
        items = [
            StoredObject(
                locator=blob.get("url", ""),
                pathname=blob.get("pathname", ""),
                size=int(blob.get("size", 0)),
                uploaded_at=blob.get("uploadedAt", ""),
            )
            for blob in blobs
        ]
        if isinstance(body, list):
            return Page(items=items)
        return Page(items=items, cursor=body.get("cursor") or None, has_more=bool(body.get("hasMore")))

    def delete(self, locator: str) -> bool:
        try:
            self._request("DELETE", "/api/upload", params={"url": locator})
        except TransportError as exc:
            if exc.status == 404:
                return False
            raise
        return True


class SharedSecretGate:
    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("gate secret must not be empty")
        self._secret = secret.encode("utf-8")

    def verify(self, presented: Optional[str]) -> bool:
        if not presented:
            return False
        return bytes_eq(presented.encode("utf-8"), self._secret)


class GatedStore(ObjectStore):
    """Wraps a store with the token gate and the upload extension allowlist."""

    def __init__(
        self,
        inner: ObjectStore,
        gate: SharedSecretGate,
        token: Optional[str],
        allowed_extensions: Sequence[str] = ALLOWED_EXTENSIONS,
    ) -> None:
        self.inner = inner
        self.gate = gate
        self.token = token
        self.allowed_extensions = tuple(ext.lower() for ext in allowed_extensions)

    def _authorize(self) -> None:
        if not self.gate.verify(self.token):
            raise TransportError("Access denied", status=401)

    def put(self, name: str, data: bytes) -> str:
        self._authorize()
        if not name.lower().endswith(self.allowed_extensions):
            raise TransportError(
                f"Extension blocked. Allowed: {', '.join(self.allowed_extensions)}", status=403
            )
        return self.inner.put(name, data)

    def get(self, locator: str) -> bytes:
        self._authorize()
        return self.inner.get(locator)

    def list(self, prefix: str = "", cursor: Optional[str] = None, limit: int = DEFAULT_PAGE_LIMIT) -> Page:
        self._authorize()
        return self.inner.list(prefix, cursor, limit)

    def delete(self, locator: str) -> bool:
        self._authorize()
        return self.inner.delete(locator)

    def close(self) -> None:
        self.inner.close()


class Pacer:
    """Fixed pause between sequential sends."""

    def __init__(self, delay: float = 0.2, sleep: Callable[[float], None] = time.sleep) -> None:
        if delay < 0:
            raise ValueError("delay must not be negative")
        self.delay = delay
        self._sleep = sleep

    def wait(self) -> None:
        if self.delay:
            self._sleep(self.delay)


def open_store(target: str, token: str) -> ObjectStore:
    if target.startswith(("http://", "https://")):
        return HttpStore(target, token)
    return DirectoryStore(target)


def _pathname_of(locator: str) -> str:
    parsed = urlparse(locator)
    if parsed.scheme in ("http", "https"):
        return PurePosixPath(parsed.path).name or locator
    return PurePosixPath(locator).name or locator


class TransportAdapter:
    def __init__(self, store: ObjectStore, pacer: Optional[Pacer] = None, *, silent: bool = False) -> None:
        self.store = store
        self.pacer = pacer or Pacer(0)
        self.silent = silent

    def close(self) -> None:
        self.store.close()

    def send(self, name: str, document) -> str:
        data = document.encode("utf-8") if isinstance(document, str) else bytes(document)
        try:
            return self.store.put(name, data)
        except TransportError:
            raise
        except (OSError, ValueError) as exc:
            raise TransportError(f"could not send {name!r}: {exc}") from exc

    def fetch(self, locator: str) -> bytes:
        try:
            return self.store.get(locator)
        except TransportError:
            raise
        except (OSError, ValueError) as exc:
            raise TransportError(f"could not fetch {locator!r}: {exc}") from exc

    def send_all(
        self,
        envelopes: Sequence[Envelope],
        carrier="structured",
        log_id: Optional[int] = None,
    ) -> List[str]:
        """Send every part in order, stopping at the first failure.

        Parts already stored stay where they are; cleaning up a partial set
        is left to whoever owns the store.
        """
        log_id = ghostlog.new_log_id() if log_id is None else log_id
        total = len(envelopes)
        locators = []
        for position, env in enumerate(envelopes):
            if position:
                self.pacer.wait()
            ghostlog._say(f"Sending part {env.part_index}/{env.total_parts}...", self.silent)
            document = ghostlog.render_envelope(env, carrier)
            try:
                locators.append(self.send(ghostlog.log_name(log_id, env.part_index), document))
            except TransportError as exc:
                raise TransportError(
                    f"part {env.part_index}/{total} failed after {len(locators)} sent: {exc}",
                    status=exc.status,
                ) from exc
        return locators

    def upload(self, name: str, data: bytes, config: CodecConfig) -> List[str]:
        envelopes = ghostlog.encode_payload(name, data, config, silent=self.silent)
        return self.send_all(envelopes, config.carrier)

    def upload_plain(self, name: str, data: bytes) -> str:
        return self.send(name, data)

    def download(self, locators: Sequence[str], key, carrier="structured") -> RawPayload:
        documents = [self.fetch(locator) for locator in locators]
        return ghostlog.decode_documents(documents, key, carrier)

    def fetch_disguised(self, locator: str, key, pathname: Optional[str] = None) -> Tuple[str, str]:
        """Fetch an object and hand it back wrapped as a diagnostic log.

        The log is meant for the offline companion (`ghostlog.recover_logs`
        or the one-liner from `ghostlog.companion_command`), not for
        `download`.
        """
        data = self.fetch(locator)
        pathname = pathname or _pathname_of(locator)
        stamp = int(time.time() * 1000)
        if ".part" in pathname or ghostlog.re.search(r"_p\d{3}\.log$", pathname):
            save_name = f"system_log_{pathname}"
            if not save_name.endswith(".log"):
                save_name += ".log"
        else:
            save_name = f"system_error_{stamp}.log"
        hex_text = ghostlog.hex_frame(ghostlog.xor_encode(data, key))
        metadata = {
            "Faulting module": "ntdll.dll",
            "Exception code": "0xc0000005",
            "Timestamp": stamp,
            "Dump size": f"{len(data)} bytes",
        }
        return save_name, ghostlog.TextCarrier().embed(hex_text, metadata)

    def iter_objects(self, prefix: str = "", limit: int = DEFAULT_PAGE_LIMIT) -> Iterator[StoredObject]:
        cursor = None
        while True:
            try:
                page = self.store.list(prefix, cursor, limit)
            except TransportError:
                raise
            except (OSError, ValueError) as exc:
                raise TransportError(f"could not list objects: {exc}") from exc
            yield from page.items
            if not page.has_more or not page.cursor:
                return
            cursor = page.cursor
