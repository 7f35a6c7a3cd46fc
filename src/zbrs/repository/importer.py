"""Repository import pipeline.

Drives one import from manifest to stored verses:

    discovering (0) -> validating (10) -> books or translations (20-90)
        -> complete (100) | error

A parent repository fans out into one nested translation import per
selected translation. Each nested import reports its own 0-100 progress,
rescaled into its share of the parent's 20-90 band.

Failures are isolated at two levels. A bad book is skipped with a
BOOK_SKIPPED warning, and a bad translation is recorded in
``translations_skipped``. Neither aborts its siblings. Every public entry
point returns an ImportResult; only NotInitializedError propagates.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterable

from zbrs.repository.discovery import (
    RepositoryDiscoveryService,
    base_url,
    join_url,
)
from zbrs.repository.errors import IntegrityError, NetworkError, NotInitializedError
from zbrs.repository.models import (
    ImportAccumulator,
    ImportResult,
    ManifestKind,
    ParentManifest,
    RepositoryDbRecord,
    RepositoryTranslationRecord,
    TranslationManifest,
    TranslationReference,
    ZBRSBook,
    classify_manifest,
)
from zbrs.repository.progress import (
    ImportOptions,
    ImportProgress,
    ImportStage,
    NullProgressSink,
    ProgressSink,
    ScaledProgressSink,
)
from zbrs.repository.validator import ZBRSValidator, load_json_bytes

if TYPE_CHECKING:
    from zbrs.db.store import RepositoryStore

logger = logging.getLogger(__name__)

# Progress band shared by book downloads and translation fan-out
BAND_START = 20.0
BAND_END = 90.0


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _report(
    sink: ProgressSink,
    stage: ImportStage,
    progress: float,
    message: str,
    **counters: Any,
) -> None:
    sink.report(
        ImportProgress(stage=stage, progress=progress, message=message, **counters)
    )


class RepositoryImporter:
    """Imports ZBRS repositories into a RepositoryStore."""

    def __init__(
        self,
        store: "RepositoryStore",
        discovery: RepositoryDiscoveryService,
        validator: ZBRSValidator | None = None,
    ):
        self.store = store
        self.discovery = discovery
        self.validator = validator or discovery.validator

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def import_repository(
        self, options: ImportOptions, progress: ProgressSink | None = None
    ) -> ImportResult:
        """Import whatever repository ``options.repository_url`` points at."""
        sink = progress or NullProgressSink()
        started = time.monotonic()
        acc = ImportAccumulator()

        _report(sink, ImportStage.DISCOVERING, 0, "Discovering repository...")
        try:
            raw = await self.discovery.fetch_manifest_json(options.repository_url)
        except NetworkError as e:
            acc.add_error(
                "FETCH_ERROR",
                f"Failed to fetch repository manifest: {e}",
                details={"url": e.url},
            )
            return self._finish(acc, started, sink)

        acc.repository_id = _raw_repository_id(raw)
        kind = classify_manifest(raw)
        if kind is ManifestKind.PARENT:
            result = await self.import_parent_repository(raw, options, sink)
        elif kind is ManifestKind.TRANSLATION:
            result = await self.import_translation(raw, options, progress=sink)
        else:
            acc.add_error(
                "UNKNOWN_MANIFEST_TYPE", "Unknown manifest type - cannot import"
            )
            return self._finish(acc, started, sink)

        return dataclasses.replace(result, duration_ms=_elapsed_ms(started))

    async def import_parent_repository(
        self,
        manifest: ParentManifest | dict,
        options: ImportOptions,
        progress: ProgressSink | None = None,
    ) -> ImportResult:
        """Import a parent repository and every translation it declares."""
        sink = progress or NullProgressSink()
        started = time.monotonic()
        acc = ImportAccumulator()
        try:
            await self._run_parent(manifest, options, sink, acc, selection=None)
        except NotInitializedError:
            raise
        except Exception as e:
            logger.exception("Parent repository import failed")
            acc.add_error("PARENT_IMPORT_FAILED", f"Import failed: {e}")
        return self._finish(acc, started, sink)

    async def import_repository_hierarchical(
        self,
        url: str,
        selected_translation_ids: Iterable[str],
        options: ImportOptions | None = None,
        progress: ProgressSink | None = None,
    ) -> ImportResult:
        """Import only the selected translations of a parent repository.

        Unselected translations are listed in ``translations_skipped``
        without any error. ``success`` follows the same rule as every other
        import: no accumulated errors.
        """
        sink = progress or NullProgressSink()
        started = time.monotonic()
        acc = ImportAccumulator()
        if options is None:
            options = ImportOptions(repository_url=url)
        else:
            options = options.model_copy(update={"repository_url": url})

        _report(sink, ImportStage.DISCOVERING, 0, "Discovering repository...")
        try:
            raw = await self.discovery.fetch_manifest_json(url)
        except NetworkError as e:
            acc.add_error(
                "FETCH_ERROR",
                f"Failed to fetch repository manifest: {e}",
                details={"url": e.url},
            )
            return self._finish(acc, started, sink)

        acc.repository_id = _raw_repository_id(raw)
        if classify_manifest(raw) is not ManifestKind.PARENT:
            acc.add_error(
                "NOT_PARENT_REPOSITORY",
                "URL does not point to a parent repository manifest",
            )
            return self._finish(acc, started, sink)

        try:
            await self._run_parent(
                raw, options, sink, acc, selection=list(selected_translation_ids)
            )
        except NotInitializedError:
            raise
        except Exception as e:
            logger.exception("Hierarchical import failed")
            acc.add_error("PARENT_IMPORT_FAILED", f"Import failed: {e}")
        return self._finish(acc, started, sink)

    async def import_translation(
        self,
        manifest: TranslationManifest | dict,
        options: ImportOptions,
        parent_id: str | None = None,
        reference: TranslationReference | None = None,
        progress: ProgressSink | None = None,
    ) -> ImportResult:
        """Import one translation and its books.

        Args:
            manifest: Decoded manifest, or the raw JSON object
            options: ``repository_url`` must be the translation's own URL
            parent_id: Owning parent; None imports the translation standalone
            reference: The parent's entry for this translation, if any
            progress: Sink for progress events
        """
        sink = progress or NullProgressSink()
        started = time.monotonic()
        acc = ImportAccumulator(repository_id=reference.id if reference else "")
        try:
            await self._run_translation(
                manifest, options, parent_id, reference, sink, acc
            )
        except NotInitializedError:
            raise
        except Exception as e:
            logger.exception("Translation import failed")
            acc.add_error("TRANSLATION_IMPORT_FAILED", f"Import failed: {e}")

        translation_id = reference.id if reference else acc.repository_id
        if acc.errors:
            if translation_id and translation_id not in acc.translations_skipped:
                acc.translations_skipped.append(translation_id)
        elif translation_id not in acc.translations_skipped:
            acc.translations_imported.append(translation_id)

        return self._finish(acc, started, sink)

    # ------------------------------------------------------------------
    # Parent fan-out
    # ------------------------------------------------------------------

    async def _run_parent(
        self,
        manifest: ParentManifest | dict,
        options: ImportOptions,
        sink: ProgressSink,
        acc: ImportAccumulator,
        selection: list[str] | None,
    ) -> None:
        _report(sink, ImportStage.VALIDATING, 10, "Validating parent repository...")

        if isinstance(manifest, ParentManifest):
            raw = manifest.raw
        else:
            raw = manifest
            if classify_manifest(raw) is not ManifestKind.PARENT:
                acc.add_error(
                    "NOT_PARENT_REPOSITORY", "Manifest is not a parent repository"
                )
                return

        acc.repository_id = _raw_repository_id(raw)
        validation = self.validator.validate_parent_manifest(raw)
        acc.absorb(validation)
        if not validation.valid:
            return

        parent = (
            manifest
            if isinstance(manifest, ParentManifest)
            else ParentManifest.from_dict(raw)
        )
        acc.repository_id = parent.id

        references = list(parent.translations)
        if selection is not None:
            references = self._select(parent, selection, acc)
            if not references:
                return

        self.store.upsert_repository(_parent_record(parent))
        logger.info(
            f"Importing parent repository {parent.id} "
            f"({len(references)} translation(s))"
        )

        base = base_url(options.repository_url)
        width = (BAND_END - BAND_START) / len(references) if references else 0.0

        for i, reference in enumerate(references):
            lo = BAND_START + width * i
            _report(
                sink,
                ImportStage.DOWNLOADING,
                round(lo, 2),
                f"Importing translation {reference.name}...",
            )
            child = await self._import_child(
                base,
                reference,
                parent.id,
                options,
                ScaledProgressSink(sink, lo, lo + width),
            )
            _merge(acc, child)
            if child.success:
                logger.info(f"Imported translation {reference.id}")
            else:
                logger.warning(
                    f"Skipped translation {reference.id}: "
                    f"{'; '.join(e.message for e in child.errors)}"
                )

        _report(sink, ImportStage.PROCESSING, BAND_END, "Finalizing import...")

    def _select(
        self,
        parent: ParentManifest,
        selection: list[str],
        acc: ImportAccumulator,
    ) -> list[TranslationReference]:
        declared = {t.id for t in parent.translations}
        for unknown in [s for s in selection if s not in declared]:
            acc.add_warning(
                "UNKNOWN_TRANSLATION",
                f"Selected translation {unknown} is not declared by {parent.id}",
                details={"translation_id": unknown},
            )

        chosen = [t for t in parent.translations if t.id in selection]
        acc.translations_skipped.extend(
            t.id for t in parent.translations if t.id not in selection
        )
        if not chosen:
            acc.add_error(
                "NO_TRANSLATIONS_SELECTED",
                "None of the selected translations are declared by the repository",
                details={"selected": list(selection)},
            )
        return chosen

    async def _import_child(
        self,
        base: str,
        reference: TranslationReference,
        parent_id: str,
        options: ImportOptions,
        sink: ProgressSink,
    ) -> ImportResult:
        url = join_url(base, reference.directory)
        child_options = options.model_copy(update={"repository_url": url})

        _report(sink, ImportStage.DISCOVERING, 0, f"Fetching {reference.name}...")
        try:
            raw = await self.discovery.fetch_manifest_json(url)
        except NetworkError as e:
            acc = ImportAccumulator(repository_id=reference.id)
            acc.add_error(
                "FETCH_ERROR",
                f"Failed to import translation {reference.name}: {e}",
                details={"url": e.url, "translation_id": reference.id},
            )
            acc.translations_skipped.append(reference.id)
            return acc.finish(0)

        return await self.import_translation(
            raw, child_options, parent_id=parent_id, reference=reference, progress=sink
        )

    # ------------------------------------------------------------------
    # Translation
    # ------------------------------------------------------------------

    async def _run_translation(
        self,
        manifest: TranslationManifest | dict,
        options: ImportOptions,
        parent_id: str | None,
        reference: TranslationReference | None,
        sink: ProgressSink,
        acc: ImportAccumulator,
    ) -> None:
        _report(sink, ImportStage.VALIDATING, 10, "Validating translation...")

        if isinstance(manifest, TranslationManifest):
            raw = manifest.raw
        else:
            raw = manifest
            if classify_manifest(raw) is not ManifestKind.TRANSLATION:
                acc.add_error(
                    "NOT_TRANSLATION_MANIFEST",
                    "Expected a translation manifest but found a different type",
                )
                return

        if not reference:
            acc.repository_id = _raw_repository_id(raw)
        validation = self.validator.validate_translation_manifest(raw)
        acc.absorb(validation)
        if not validation.valid:
            return

        translation = (
            manifest
            if isinstance(manifest, TranslationManifest)
            else TranslationManifest.from_dict(raw)
        )
        if not reference:
            acc.repository_id = translation.id
        elif reference.id != translation.id:
            acc.add_warning(
                "TRANSLATION_ID_MISMATCH",
                f"Parent lists translation {reference.id} but its manifest "
                f"declares {translation.id}",
                details={"reference": reference.id, "manifest": translation.id},
            )

        existing = self.store.get_repository(translation.id)
        if existing is not None and not options.overwrite_existing:
            acc.add_warning(
                "ALREADY_IMPORTED",
                f"Translation {translation.id} is already imported",
                details={"imported_at": existing.imported_at},
            )
            acc.translations_skipped.append(
                reference.id if reference else translation.id
            )
            return

        if options.download_audio:
            logger.debug("Audio download requested but not supported; ignoring")

        book_paths = await self._resolve_book_paths(translation, options, acc)
        if not book_paths:
            return

        prefetched: dict[str, bytes] = {}
        failed: dict[str, str] = {}
        if options.validate_checksums:
            await self._verify_checksums(
                translation, book_paths, options, sink, acc, prefetched, failed
            )
            if acc.errors:
                return

        books = await self._load_books(
            book_paths, options, sink, acc, prefetched, failed
        )
        if not books:
            acc.add_error(
                "NO_BOOKS_IMPORTED",
                f"None of the {len(book_paths)} book file(s) could be imported",
            )
            return

        # Existing books are removed only once a replacement has loaded
        if existing is not None:
            removed = self.store.delete_books(translation.id)
            logger.info(f"Overwriting {translation.id}: removed {removed} book(s)")

        self.store.upsert_repository(_translation_record(translation, parent_id))
        self.store.create_repository_translation(
            RepositoryTranslationRecord(
                parent_id=parent_id or translation.id,
                translation_id=translation.id,
                directory=reference.directory if reference else "",
                language=(
                    reference.language if reference else translation.language.code
                ),
                status=reference.status if reference else "active",
            )
        )

        for path, book in books:
            try:
                self._store_book(translation.id, book)
            except NotInitializedError:
                raise
            except Exception as e:
                logger.exception(f"Failed to store book {path}")
                self._skip_book(acc, path, f"Storage failed: {e}")
                continue
            acc.books_imported += 1

        _report(
            sink,
            ImportStage.PROCESSING,
            BAND_END,
            f"{acc.books_imported} of {len(book_paths)} book(s) imported",
            total_books=len(book_paths),
            processed_books=len(book_paths),
        )

        if acc.books_imported == 0:
            acc.add_error(
                "NO_BOOKS_IMPORTED",
                f"None of the {len(book_paths)} book file(s) could be imported",
            )

    async def _resolve_book_paths(
        self,
        translation: TranslationManifest,
        options: ImportOptions,
        acc: ImportAccumulator,
    ) -> list[str]:
        if translation.content.books:
            return [b.path for b in translation.content.books]

        logger.info(
            f"No book list in manifest for {translation.id}; listing books/ directory"
        )
        try:
            paths = await self.discovery.list_book_files(options.repository_url)
        except NetworkError as e:
            acc.add_error(
                "NO_BOOKS_FOUND",
                f"Manifest declares no book files and discovery failed: {e}",
                "/content/books",
            )
            return []

        if not paths:
            acc.add_error(
                "NO_BOOKS_FOUND",
                "Manifest declares no book files and none were discovered",
                "/content/books",
            )
        return paths

    async def _verify_checksums(
        self,
        translation: TranslationManifest,
        book_paths: list[str],
        options: ImportOptions,
        sink: ProgressSink,
        acc: ImportAccumulator,
        prefetched: dict[str, bytes],
        failed: dict[str, str],
    ) -> None:
        """Download and verify every book that declares a sha256 checksum.

        Verified bytes are kept in ``prefetched`` for the book import; download
        failures go to ``failed`` and the book is skipped later.
        """
        _report(sink, ImportStage.VALIDATING, 15, "Validating file checksums...")

        declared = {b.path: b for b in translation.content.books or []}
        uncovered = [
            p for p in book_paths if not (p in declared and declared[p].has_sha256)
        ]
        if uncovered:
            acc.add_warning(
                "PARTIAL_CHECKSUM_COVERAGE",
                f"{len(uncovered)} of {len(book_paths)} book file(s) have no "
                f"sha256 checksum and were not verified",
                details={"paths": uncovered},
            )

        for path in book_paths:
            entry = declared.get(path)
            if entry is None or not entry.has_sha256:
                continue
            url = join_url(options.repository_url, path)
            try:
                prefetched[path] = await self.discovery.download_verified_file(
                    url, entry.checksum, path
                )
            except NetworkError as e:
                failed[path] = str(e)
            except IntegrityError as e:
                acc.add_error("CHECKSUM_MISMATCH", str(e), e.file_path, e.details)

    async def _load_books(
        self,
        book_paths: list[str],
        options: ImportOptions,
        sink: ProgressSink,
        acc: ImportAccumulator,
        prefetched: dict[str, bytes],
        failed: dict[str, str],
    ) -> list[tuple[str, ZBRSBook]]:
        """Download, parse and validate every book without touching the store."""
        books: list[tuple[str, ZBRSBook]] = []
        total = len(book_paths)
        for index, path in enumerate(book_paths):
            _report(
                sink,
                ImportStage.DOWNLOADING,
                BAND_START + (BAND_END - BAND_START) * index / total,
                f"Importing book {path}...",
                current_book=path,
                total_books=total,
                processed_books=index,
            )

            if path in failed:
                self._skip_book(acc, path, failed[path])
                continue

            data = prefetched.pop(path, None)
            if data is None:
                try:
                    data = await self.discovery.download_file(
                        join_url(options.repository_url, path)
                    )
                except NetworkError as e:
                    self._skip_book(acc, path, str(e))
                    continue

            try:
                raw_book = load_json_bytes(data)
            except ValueError as e:
                self._skip_book(acc, path, f"Invalid JSON: {e}")
                continue

            validation = self.validator.validate_book(raw_book)
            acc.warnings.extend(validation.warnings)
            if not validation.valid:
                self._skip_book(
                    acc,
                    path,
                    "; ".join(str(e) for e in validation.errors),
                    {"errors": [e.to_dict() for e in validation.errors]},
                )
                continue

            books.append((path, ZBRSBook.from_dict(raw_book)))

        return books

    def _skip_book(
        self,
        acc: ImportAccumulator,
        path: str,
        reason: str,
        details: dict | None = None,
    ) -> None:
        logger.warning(f"Skipping book {path}: {reason}")
        acc.add_warning(
            "BOOK_SKIPPED", f"Skipped book {path}: {reason}", path, details
        )

    def _store_book(self, repository_id: str, book: ZBRSBook) -> None:
        info = book.book
        book_id = self.store.create_book(
            {
                "repository_id": repository_id,
                "code": info.id,
                "name": info.name,
                "abbreviation": info.abbreviation,
                "testament": info.testament,
                "book_order": info.order,
                "chapter_count": info.chapters_count,
                "genre": info.genre,
                "author": info.author,
                "metadata": json.dumps(
                    {"outline": book.outline, "themes": book.themes},
                    ensure_ascii=False,
                ),
            }
        )
        for chapter in book.chapters:
            for verse in chapter.verses:
                annotations = {
                    key: value
                    for key, value in (
                        ("footnotes", verse.footnotes),
                        ("cross_references", verse.cross_references),
                        ("study_notes", verse.study_notes),
                    )
                    if value
                }
                self.store.create_verse(
                    {
                        "repository_id": repository_id,
                        "book_id": book_id,
                        "chapter": chapter.number,
                        "verse": verse.number,
                        "text": verse.text,
                        "annotations": (
                            json.dumps(annotations, ensure_ascii=False)
                            if annotations
                            else None
                        ),
                    }
                )
        logger.debug(f"Stored {repository_id}/{info.id}: {book.verse_total} verse(s)")

    # ------------------------------------------------------------------

    def _finish(
        self, acc: ImportAccumulator, started: float, sink: ProgressSink
    ) -> ImportResult:
        result = acc.finish(_elapsed_ms(started))
        if result.success:
            _report(
                sink,
                ImportStage.COMPLETE,
                100,
                f"Import complete! {result.books_imported} books imported.",
            )
        else:
            _report(
                sink,
                ImportStage.ERROR,
                100,
                f"Import failed with {len(result.errors)} error(s)",
            )
        return result


def _raw_repository_id(raw: Any) -> str:
    repository = raw.get("repository") if isinstance(raw, dict) else None
    if isinstance(repository, dict) and isinstance(repository.get("id"), str):
        return repository["id"]
    return ""


def _merge(acc: ImportAccumulator, child: ImportResult) -> None:
    acc.books_imported += child.books_imported
    acc.translations_imported.extend(child.translations_imported)
    acc.translations_skipped.extend(child.translations_skipped)
    acc.errors.extend(child.errors)
    acc.warnings.extend(child.warnings)


def _parent_record(parent: ParentManifest) -> RepositoryDbRecord:
    now = _now()
    return RepositoryDbRecord(
        id=parent.id,
        name=parent.repository.name,
        description=parent.repository.description or None,
        version=parent.repository.version,
        type="parent",
        parent_id=None,
        language=None,
        created_at=parent.repository.created_at or now,
        updated_at=parent.repository.updated_at or now,
        imported_at=now,
        metadata=json.dumps(
            {
                "publisher": parent.raw.get("publisher"),
                "technical": parent.raw.get("technical"),
                "extensions": parent.extensions,
            },
            ensure_ascii=False,
        ),
    )


def _translation_record(
    translation: TranslationManifest, parent_id: str | None
) -> RepositoryDbRecord:
    """Standalone translations are stored as their own coordinating record."""
    now = _now()
    return RepositoryDbRecord(
        id=translation.id,
        name=translation.repository.name,
        description=translation.repository.description or None,
        version=translation.repository.version,
        type="translation" if parent_id else "parent",
        parent_id=parent_id,
        language=translation.language.code or None,
        created_at=translation.repository.created_at or now,
        updated_at=translation.repository.updated_at or now,
        imported_at=now,
        metadata=json.dumps(
            {
                "technical": translation.raw.get("technical"),
                "content": translation.raw.get("content"),
                "publisher": translation.raw["repository"].get("publisher"),
                "extensions": translation.extensions,
            },
            ensure_ascii=False,
        ),
    )
