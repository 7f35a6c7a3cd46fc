"""Repository service facade.

Wires one validator, discovery service and importer around a shared
SecurityPolicy and a caller-supplied store. Construct it explicitly and call
initialize() before use; there is no process-wide instance.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

import httpx

from zbrs.repository.discovery import RepositoryDiscoveryService, default_sources
from zbrs.repository.errors import ServiceNotInitializedError
from zbrs.repository.importer import RepositoryImporter
from zbrs.repository.models import (
    DirectoryScanResult,
    HierarchicalScanResult,
    ImportResult,
    Manifest,
    RepositoryIndexEntry,
    RepositorySource,
    TranslationReference,
    ValidationResult,
)
from zbrs.repository.policy import SecurityPolicy
from zbrs.repository.progress import ImportOptions, ProgressSink
from zbrs.repository.validator import ZBRSValidator

if TYPE_CHECKING:
    from zbrs.db.store import RepositoryStore

logger = logging.getLogger(__name__)


class RepositoryService:
    """Entry point for discovery, validation and import."""

    def __init__(
        self,
        policy: SecurityPolicy,
        store: "RepositoryStore",
        sources: list[RepositorySource] | None = None,
        client: httpx.AsyncClient | None = None,
        **discovery_options,
    ):
        self.policy = policy
        self.store = store
        self.validator = ZBRSValidator(policy)
        self.discovery = RepositoryDiscoveryService(
            policy,
            sources=[],
            client=client,
            validator=self.validator,
            **discovery_options,
        )
        self.importer = RepositoryImporter(store, self.discovery, self.validator)
        self._configured_sources = (
            list(sources) if sources is not None else None
        )
        self._initialized = False

    async def initialize(self) -> None:
        """Register the configured repository sources."""
        if self._initialized:
            return

        sources = (
            self._configured_sources
            if self._configured_sources is not None
            else default_sources()
        )
        for source in sources:
            self.discovery.add_repository_source(source)

        self._initialized = True
        logger.info(
            f"Repository service initialized with {len(sources)} source(s)"
        )

    def is_ready(self) -> bool:
        return self._initialized

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise ServiceNotInitializedError()

    async def aclose(self) -> None:
        await self.discovery.aclose()

    async def __aenter__(self) -> "RepositoryService":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # Discovery

    async def discover_repositories(self) -> list[RepositoryIndexEntry]:
        self._ensure_initialized()
        return await self.discovery.discover_repositories()

    async def get_repository_manifest(self, url: str) -> Manifest:
        self._ensure_initialized()
        return await self.discovery.fetch_repository_manifest(url)

    async def discover_translations(self, url: str) -> list[TranslationReference]:
        self._ensure_initialized()
        return await self.discovery.discover_translations(url)

    async def validate_repository_url(self, url: str) -> ValidationResult:
        """Fetch and validate the manifest at ``url``."""
        self._ensure_initialized()
        return await self.discovery.validate_repository(url)

    def scan_directory_for_repositories(self, path: str | Path) -> DirectoryScanResult:
        self._ensure_initialized()
        return self.discovery.scan_directory_for_repositories(path)

    def scan_hierarchical_repository(self, path: str | Path) -> HierarchicalScanResult:
        self._ensure_initialized()
        return self.discovery.scan_hierarchical_repository(path)

    # Validation

    def validate_manifest(self, manifest: dict) -> ValidationResult:
        self._ensure_initialized()
        return self.validator.validate_manifest(manifest)

    def validate_book(
        self, book: dict, expected_order: int | None = None
    ) -> ValidationResult:
        self._ensure_initialized()
        return self.validator.validate_book(book, expected_order)

    # Import

    def create_import_options(
        self,
        repository_url: str,
        validate_checksums: bool = True,
        download_audio: bool = False,
        overwrite_existing: bool = False,
    ) -> ImportOptions:
        return ImportOptions(
            repository_url=repository_url,
            validate_checksums=validate_checksums,
            download_audio=download_audio,
            overwrite_existing=overwrite_existing,
        )

    async def import_repository(
        self, options: ImportOptions, progress: ProgressSink | None = None
    ) -> ImportResult:
        self._ensure_initialized()
        return await self.importer.import_repository(options, progress)

    async def import_repository_with_progress(
        self,
        repository_url: str,
        progress: ProgressSink,
        **options,
    ) -> ImportResult:
        """Import with default options overridden by keyword arguments."""
        return await self.import_repository(
            self.create_import_options(repository_url, **options), progress
        )

    async def import_repository_hierarchical(
        self,
        url: str,
        selected_translation_ids: Iterable[str],
        options: ImportOptions | None = None,
        progress: ProgressSink | None = None,
    ) -> ImportResult:
        self._ensure_initialized()
        return await self.importer.import_repository_hierarchical(
            url, selected_translation_ids, options, progress
        )

    # Sources

    def get_repository_sources(self) -> list[RepositorySource]:
        self._ensure_initialized()
        return self.discovery.get_repository_sources()

    def add_repository_source(self, source: RepositorySource) -> None:
        self._ensure_initialized()
        self.discovery.add_repository_source(source)

    def remove_repository_source(self, url: str) -> bool:
        self._ensure_initialized()
        return self.discovery.remove_repository_source(url)

    def enable_repository_source(self, url: str, enabled: bool) -> bool:
        self._ensure_initialized()
        return self.discovery.enable_repository_source(url, enabled)

    def clear_cache(self) -> None:
        self._ensure_initialized()
        self.discovery.clear_cache()
