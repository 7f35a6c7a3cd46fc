"""Repository discovery: index feeds, manifests, downloads and local scans.

Remote content is fetched with httpx; ``file://`` URLs are served straight
from the local filesystem so a repository checked out on disk goes through
the same code path as a hosted one.

Every fetch failure (unreachable host, non-200 status, timeout, oversized
payload, unparsable JSON) surfaces as a NetworkError carrying the URL.
"""

from __future__ import annotations

import json
import logging
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import quote, urlsplit
from urllib.request import url2pathname

import httpx

from zbrs.repository.errors import IntegrityError, NetworkError
from zbrs.repository.models import (
    DirectoryScanResult,
    HierarchicalScanResult,
    Manifest,
    ManifestKind,
    RepositoryIndexEntry,
    RepositorySource,
    ScannedRepository,
    TranslationReference,
    TranslationScan,
    ValidationResult,
    classify_manifest,
    decode_manifest,
)
from zbrs.repository.policy import SecurityPolicy
from zbrs.repository.validator import (
    ZBRSValidator,
    is_safe_relative_path,
    sha256_digest,
    strip_bom,
)

logger = logging.getLogger(__name__)

USER_AGENT = "Zaphnath Bible Reader/1.0"
MANIFEST_NAME = "manifest.json"
BOOKS_DIR = "books"

DEFAULT_CACHE_TTL = 300.0
DEFAULT_JSON_TIMEOUT = 30.0
DEFAULT_DOWNLOAD_TIMEOUT = 60.0

# raw.githubusercontent.com/<owner>/<project>/<ref>/<path...>
GITHUB_RAW_PATTERN = re.compile(
    r"^https://raw\.githubusercontent\.com/(?P<owner>[^/]+)/(?P<project>[^/]+)"
    r"/(?P<ref>[^/]+)(?:/(?P<path>.*))?$"
)
GITHUB_API_ROOT = "https://api.github.com"

_NUMBER_RUN = re.compile(r"(\d+)")


def default_sources() -> list[RepositorySource]:
    """Index feeds registered on a fresh installation."""
    return [
        RepositorySource(
            type="official",
            url="https://repositories.zaphnath.org/index.json",
            name="Official Zaphnath Repositories",
            enabled=True,
        ),
        RepositorySource(
            type="third-party",
            url="https://bible-repositories.example.com/index.json",
            name="Community Bible Repositories",
            enabled=False,
        ),
    ]


def manifest_url(url: str) -> str:
    """Point a repository URL at its manifest.json."""
    if url.endswith("/" + MANIFEST_NAME) or url == MANIFEST_NAME:
        return url
    return url.rstrip("/") + "/" + MANIFEST_NAME


def base_url(url: str) -> str:
    """Strip a trailing manifest.json and slashes from a repository URL."""
    if url.endswith("/" + MANIFEST_NAME):
        url = url[: -len(MANIFEST_NAME) - 1]
    return url.rstrip("/")


def join_url(base: str, relative: str) -> str:
    """Append a relative path to a repository base URL."""
    return base_url(base) + "/" + relative.lstrip("/")


def path_to_url(path: str | Path) -> str:
    """Convert a local path to a file:// URL."""
    return Path(path).expanduser().resolve().as_uri()


def url_to_path(url: str) -> Path:
    """Convert a file:// URL to a local path."""
    return Path(url2pathname(urlsplit(url).path))


def is_file_url(url: str) -> bool:
    return url.lower().startswith("file://")


def natural_sort_key(name: str) -> list:
    """Sort key that orders ``2-x.json`` before ``10-x.json``."""
    return [
        (0, int(part), "") if part.isdigit() else (1, 0, part.lower())
        for part in _NUMBER_RUN.split(name)
        if part
    ]


def parse_index(data: Any, url: str) -> list[RepositoryIndexEntry]:
    """Parse either index feed shape into entries.

    Accepted shapes:
        {"registry": true, "repositories": [...]}   GitHub registry
        {"version": "...", "repositories": [...]}   legacy index
    """
    if not isinstance(data, dict) or not isinstance(data.get("repositories"), list):
        raise NetworkError("Invalid repository index format", url)
    if data.get("registry") is not True and "version" not in data:
        raise NetworkError("Invalid repository index format", url)

    try:
        return [RepositoryIndexEntry.from_dict(e) for e in data["repositories"]]
    except (KeyError, TypeError, AttributeError) as e:
        raise NetworkError(f"Invalid repository index entry: {e}", url) from e


class RepositoryDiscoveryService:
    """Locates, fetches and validates ZBRS repositories."""

    def __init__(
        self,
        policy: SecurityPolicy | None = None,
        sources: list[RepositorySource] | None = None,
        client: httpx.AsyncClient | None = None,
        validator: ZBRSValidator | None = None,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        json_timeout: float = DEFAULT_JSON_TIMEOUT,
        download_timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
        user_agent: str = USER_AGENT,
    ):
        self.policy = policy or SecurityPolicy()
        self.validator = validator or ZBRSValidator(self.policy)
        self._sources = list(sources) if sources is not None else default_sources()
        self._owns_client = client is None
        self._client = client
        self._cache: dict[str, tuple[float, list[RepositoryIndexEntry]]] = {}
        self.cache_ttl = cache_ttl
        self.json_timeout = json_timeout
        self.download_timeout = download_timeout
        self.user_agent = user_agent
        self.source_errors: dict[str, str] = {}

    async def __aenter__(self) -> "RepositoryDiscoveryService":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    @property
    def client(self) -> httpx.AsyncClient:
        """HTTP client, created on first use unless one was injected."""
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client if this service created it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Index feeds
    # ------------------------------------------------------------------

    async def discover_repositories(self) -> list[RepositoryIndexEntry]:
        """Collect repositories from every enabled source, unique by id.

        A failing source is logged and recorded in ``source_errors``; the
        remaining sources are still consulted.
        """
        merged: dict[str, RepositoryIndexEntry] = {}
        self.source_errors = {}

        for source in self._sources:
            if not source.enabled:
                continue
            try:
                entries = await self.fetch_repository_index(source.url)
            except NetworkError as e:
                logger.warning(f"Failed to fetch from source {source.name}: {e}")
                self.source_errors[source.url] = str(e)
                continue

            source.last_checked = datetime.now(timezone.utc).isoformat()
            for entry in entries:
                merged.setdefault(entry.id, entry)

        return list(merged.values())

    async def fetch_repository_index(self, url: str) -> list[RepositoryIndexEntry]:
        """Fetch an index feed, served from cache while fresh."""
        cached = self._cache.get(url)
        if cached is not None and time.monotonic() - cached[0] < self.cache_ttl:
            return list(cached[1])

        data = await self.fetch_json(url)
        entries = parse_index(data, url)
        self._cache[url] = (time.monotonic(), entries)
        logger.debug(f"Fetched {len(entries)} repositories from {url}")
        return list(entries)

    def clear_cache(self) -> None:
        self._cache.clear()

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def get_repository_sources(self) -> list[RepositorySource]:
        return list(self._sources)

    def add_repository_source(self, source: RepositorySource) -> None:
        """Register a source, replacing any existing one with the same URL."""
        for i, existing in enumerate(self._sources):
            if existing.url == source.url:
                self._sources[i] = source
                return
        self._sources.append(source)

    def remove_repository_source(self, url: str) -> bool:
        for i, existing in enumerate(self._sources):
            if existing.url == url:
                del self._sources[i]
                return True
        return False

    def enable_repository_source(self, url: str, enabled: bool) -> bool:
        for source in self._sources:
            if source.url == url:
                source.enabled = enabled
                return True
        return False

    # ------------------------------------------------------------------
    # Manifests
    # ------------------------------------------------------------------

    async def fetch_manifest_json(self, url: str) -> dict:
        """Fetch the raw manifest of a repository without validating it.

        Raises:
            NetworkError: URL rejected by policy, fetch failed, or the payload
                is not a JSON object
        """
        target = manifest_url(url)
        url_check = self.validator.validate_repository_url(target)
        if not url_check.valid:
            reasons = ", ".join(e.message for e in url_check.errors)
            raise NetworkError(
                f"Invalid repository URL: {reasons}",
                target,
                {"errors": [e.to_dict() for e in url_check.errors]},
            )

        data = await self.fetch_json(target)
        if not isinstance(data, dict):
            raise NetworkError("Manifest is not a JSON object", target)
        return data

    async def fetch_repository_manifest(self, url: str) -> Manifest:
        """Fetch, validate and decode a repository manifest.

        Raises:
            NetworkError: On fetch failure or an invalid manifest
        """
        raw = await self.fetch_manifest_json(url)
        validation = self.validator.validate_manifest(raw)
        if not validation.valid:
            reasons = ", ".join(e.message for e in validation.errors)
            raise NetworkError(
                f"Invalid manifest: {reasons}",
                manifest_url(url),
                validation.to_dict(),
            )
        return decode_manifest(raw)

    async def fetch_translation_manifest(
        self, parent_url: str, directory: str
    ) -> Manifest:
        """Fetch the manifest of a translation directory under a parent."""
        if not is_safe_relative_path(directory):
            raise NetworkError(
                f"Unsafe translation directory: {directory!r}", parent_url
            )
        return await self.fetch_repository_manifest(join_url(parent_url, directory))

    async def discover_translations(self, url: str) -> list[TranslationReference]:
        """List the translations a repository URL offers.

        A parent yields its declared references; a translation manifest
        yields a single reference describing itself.
        """
        manifest = await self.fetch_repository_manifest(url)
        if manifest.kind is ManifestKind.PARENT:
            return list(manifest.translations)

        return [
            TranslationReference(
                id=manifest.repository.id,
                name=manifest.repository.name,
                directory="",
                language=manifest.language.code,
                status="active",
                checksum=manifest.technical.checksum,
                description=manifest.repository.description,
            )
        ]

    async def validate_repository(self, url: str) -> ValidationResult:
        """Fetch and validate a manifest; fetch failures become FETCH_ERROR."""
        try:
            raw = await self.fetch_manifest_json(url)
        except NetworkError as e:
            result = ValidationResult()
            result.add_error(
                "FETCH_ERROR",
                f"Failed to validate repository: {e}",
                details={"url": e.url},
            )
            return result
        return self.validator.validate_manifest(raw)

    # ------------------------------------------------------------------
    # Book listing
    # ------------------------------------------------------------------

    async def list_book_files(self, translation_url: str) -> list[str]:
        """Discover book files under ``books/`` when a manifest omits them.

        Returns relative paths (``books/<name>.json``) in numeric-aware order.

        Raises:
            NetworkError: If the host offers no way to list the directory
        """
        base = base_url(translation_url)

        if is_file_url(base):
            books_dir = url_to_path(base) / BOOKS_DIR
            try:
                names = [
                    p.name
                    for p in books_dir.iterdir()
                    if p.is_file() and p.suffix.lower() == ".json"
                ]
            except OSError as e:
                raise NetworkError(
                    f"Cannot list books directory: {e}", path_to_url(books_dir)
                ) from e
        else:
            match = GITHUB_RAW_PATTERN.match(base)
            if not match:
                raise NetworkError(
                    "Book files are not declared and the host does not "
                    "support directory listing",
                    base,
                )
            names = await self._list_github_books(
                match.group("owner"),
                match.group("project"),
                match.group("ref"),
                match.group("path") or "",
            )

        names = [n for n in names if is_safe_relative_path(n)]
        return [f"{BOOKS_DIR}/{n}" for n in sorted(names, key=natural_sort_key)]

    async def _list_github_books(
        self, owner: str, project: str, ref: str, path: str
    ) -> list[str]:
        contents_path = "/".join(p for p in (path.strip("/"), BOOKS_DIR) if p)
        api_url = (
            f"{GITHUB_API_ROOT}/repos/{owner}/{project}/contents/"
            f"{quote(contents_path)}?ref={quote(ref)}"
        )
        listing = await self.fetch_json(api_url)
        if not isinstance(listing, list):
            raise NetworkError("Unexpected directory listing response", api_url)
        return [
            item["name"]
            for item in listing
            if isinstance(item, dict)
            and item.get("type") == "file"
            and str(item.get("name", "")).lower().endswith(".json")
        ]

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def fetch_json(self, url: str) -> Any:
        """Fetch and parse a JSON document (BOM tolerated)."""
        if is_file_url(url):
            data = self._read_local(url, self.policy.max_file_size)
        else:
            try:
                response = await self.client.get(
                    url,
                    headers={
                        "User-Agent": self.user_agent,
                        "Accept": "application/json",
                        "Cache-Control": "no-cache",
                    },
                    timeout=self.json_timeout,
                )
            except httpx.TimeoutException as e:
                raise NetworkError("Request timeout", url) from e
            except httpx.HTTPError as e:
                raise NetworkError(f"Network error: {e}", url) from e

            self._check_redirects(url, response)
            if response.status_code != 200:
                raise NetworkError(
                    f"HTTP {response.status_code}: {response.reason_phrase}",
                    url,
                    {"status_code": response.status_code},
                )
            content_type = response.headers.get("content-type", "")
            if content_type and "json" not in content_type:
                logger.debug(f"Unexpected content type {content_type} for {url}")
            data = response.content

        try:
            return json.loads(strip_bom(data.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise NetworkError(f"Invalid JSON response: {e}", url) from e

    async def download_file(self, url: str, max_size: int | None = None) -> bytes:
        """Download raw bytes with a hard size cap.

        The cap is enforced from the declared Content-Length and again from
        the bytes actually received, aborting mid-stream once exceeded.
        """
        limit = self.policy.max_file_size if max_size is None else max_size

        if is_file_url(url):
            return self._read_local(url, limit)

        try:
            async with self.client.stream(
                "GET",
                url,
                headers={"User-Agent": self.user_agent},
                timeout=self.download_timeout,
            ) as response:
                self._check_redirects(url, response)
                if response.status_code != 200:
                    raise NetworkError(
                        f"HTTP {response.status_code}: {response.reason_phrase}",
                        url,
                        {"status_code": response.status_code},
                    )

                declared = int(response.headers.get("content-length") or 0)
                if declared > limit:
                    raise NetworkError(
                        f"File too large: {declared} bytes (max: {limit})", url
                    )

                chunks: list[bytes] = []
                received = 0
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received > limit:
                        raise NetworkError(
                            f"File too large: exceeded {limit} bytes", url
                        )
                    chunks.append(chunk)
        except httpx.TimeoutException as e:
            raise NetworkError("Download timeout", url) from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Download error: {e}", url) from e

        return b"".join(chunks)

    async def download_verified_file(
        self, url: str, expected_checksum: str, label: str
    ) -> bytes:
        """Download a file and compare it with its declared digest.

        Raises:
            NetworkError: If the download fails
            IntegrityError: If the bytes do not match ``expected_checksum``
        """
        data = await self.download_file(url)
        check = self.validator.check_integrity(data, expected_checksum, label)
        if not check.valid:
            raise IntegrityError(
                f"Checksum mismatch for {label}",
                label,
                {
                    "expected": check.expected_checksum,
                    "actual": check.actual_checksum,
                },
            )
        return data

    def _check_redirects(self, url: str, response: httpx.Response) -> None:
        """Apply the URL policy to every location a redirect led to."""
        if not response.history:
            return
        hops = [str(r.url) for r in response.history[1:]] + [str(response.url)]
        for hop in hops:
            check = self.validator.validate_repository_url(hop)
            if not check.valid:
                reasons = ", ".join(e.message for e in check.errors)
                logger.warning(f"Refusing redirect from {url} to {hop}: {reasons}")
                raise NetworkError(
                    f"Redirected to disallowed URL {hop}: {reasons}",
                    url,
                    {
                        "redirect": hop,
                        "errors": [e.to_dict() for e in check.errors],
                    },
                )

    def _read_local(self, url: str, limit: int) -> bytes:
        path = url_to_path(url)
        try:
            size = path.stat().st_size
            if size > limit:
                raise NetworkError(
                    f"File too large: {size} bytes (max: {limit})", url
                )
            return path.read_bytes()
        except OSError as e:
            raise NetworkError(f"Cannot read {path}: {e}", url) from e

    def calculate_checksum(self, data: bytes) -> str:
        return sha256_digest(data)

    # ------------------------------------------------------------------
    # Local scans
    # ------------------------------------------------------------------

    def scan_directory_for_repositories(self, path: str | Path) -> DirectoryScanResult:
        """Find repositories on disk.

        If ``path`` holds a manifest it is the only candidate; otherwise every
        immediate subdirectory is checked. Subdirectories without a manifest
        are skipped silently, unreadable manifests are recorded in ``errors``.
        """
        root = Path(path).expanduser()
        result = DirectoryScanResult()

        if not root.is_dir():
            result.errors.append(f"Not a directory: {root}")
            return result

        if (root / MANIFEST_NAME).is_file():
            candidates = [root]
        else:
            try:
                candidates = sorted(
                    (p for p in root.iterdir() if p.is_dir()),
                    key=lambda p: natural_sort_key(p.name),
                )
            except OSError as e:
                result.errors.append(f"Cannot read directory {root}: {e}")
                return result

        for candidate in candidates:
            manifest_file = candidate / MANIFEST_NAME
            if not manifest_file.is_file():
                continue
            try:
                raw = self._load_manifest_file(manifest_file)
            except ValueError as e:
                logger.warning(f"Skipping {candidate}: {e}")
                result.errors.append(f"{candidate}: {e}")
                continue

            result.repositories.append(
                ScannedRepository(
                    path=str(candidate),
                    manifest=raw,
                    validation=self.validator.validate_manifest(raw),
                )
            )

        return result

    def scan_hierarchical_repository(
        self, path: str | Path
    ) -> HierarchicalScanResult:
        """Validate a parent repository on disk and each declared translation."""
        root = Path(path).expanduser()
        result = HierarchicalScanResult()

        try:
            raw = self._load_manifest_file(root / MANIFEST_NAME)
        except ValueError as e:
            result.errors.append(f"{root}: {e}")
            return result

        result.root = ScannedRepository(
            path=str(root), manifest=raw, validation=self.validator.validate_manifest(raw)
        )
        if classify_manifest(raw) is not ManifestKind.PARENT:
            return result

        for entry in raw.get("translations") or []:
            try:
                reference = TranslationReference.from_dict(entry)
            except (KeyError, TypeError, AttributeError) as e:
                result.errors.append(f"Malformed translation reference: {e}")
                continue

            translation_dir = root / reference.directory
            scan = TranslationScan(reference=reference, path=str(translation_dir))
            result.translations.append(scan)

            if not is_safe_relative_path(reference.directory):
                scan.error = f"Unsafe translation directory: {reference.directory!r}"
                continue
            try:
                scan.manifest = self._load_manifest_file(translation_dir / MANIFEST_NAME)
            except ValueError as e:
                scan.error = str(e)
                continue
            scan.validation = self.validator.validate_translation_manifest(
                scan.manifest
            )

        return result

    def _load_manifest_file(self, manifest_file: Path) -> dict:
        try:
            text = manifest_file.read_text(encoding="utf-8")
        except OSError as e:
            raise ValueError(f"Cannot read manifest: {e}") from e
        try:
            data = json.loads(strip_bom(text))
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in manifest: {e}") from e
        if not isinstance(data, dict):
            raise ValueError("Manifest is not a JSON object")
        return data
