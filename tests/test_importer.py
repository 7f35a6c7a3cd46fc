"""Tests for the repository import pipeline.

Repositories are built on disk and imported through file:// URLs, so the
whole pipeline (fetch, validate, verify, store) runs without a network.
"""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from builders import (
    InMemoryStore,
    build_parent_repo,
    build_translation_repo,
    make_book,
    write_json,
)
from zbrs.db.connection import get_connection
from zbrs.db.store import SQLiteRepositoryStore, StoreNotInitializedError
from zbrs.repository.discovery import RepositoryDiscoveryService, path_to_url
from zbrs.repository.importer import RepositoryImporter
from zbrs.repository.progress import ImportOptions, ImportStage, RecordingProgressSink
from zbrs.repository.validator import load_json_bytes


def make_importer(store) -> RepositoryImporter:
    return RepositoryImporter(store, RepositoryDiscoveryService(sources=[]))


def options_for(path: Path, **kwargs) -> ImportOptions:
    return ImportOptions(repository_url=path_to_url(path), **kwargs)


def codes(issues) -> list[str]:
    return [i.code for i in issues]


def tamper(root: Path) -> None:
    """Rewrite a book so it no longer matches its declared checksum."""
    write_json(
        root / "books" / "2-exo.json",
        make_book("EXO", "Exodus", 2, verses_per_chapter=(2,)),
    )


# ============================================================================
# Standalone translations
# ============================================================================


class TestTranslationImport:
    """Importing a single translation repository."""

    @pytest.mark.asyncio
    async def test_imports_all_books(self, store: InMemoryStore, translation_repo: Path):
        result = await make_importer(store).import_repository(options_for(translation_repo))

        assert result.success, result.errors
        assert result.repository_id == "kjv"
        assert result.books_imported == 2
        assert result.translations_imported == ("kjv",)
        assert result.translations_skipped == ()
        assert [b["code"] for b in store.books_of("kjv")] == ["GEN", "EXO"]
        assert len(store.verses) == 2
        assert store.verses[0]["text"] == "Genesis 1:1"

    @pytest.mark.asyncio
    async def test_standalone_record_and_self_link(
        self, store: InMemoryStore, translation_repo: Path
    ):
        await make_importer(store).import_repository(options_for(translation_repo))

        record = store.repositories["kjv"]
        assert record.type == "parent"
        assert record.parent_id is None
        assert record.language == "en"
        link = store.links[("kjv", "kjv")]
        assert link.directory == ""
        assert link.language == "en"

    @pytest.mark.asyncio
    async def test_missing_book_is_skipped(self, store: InMemoryStore, translation_repo: Path):
        """A missing book file costs one book, not the translation."""
        (translation_repo / "books" / "2-exo.json").unlink()

        result = await make_importer(store).import_repository(options_for(translation_repo))

        assert result.success
        assert result.books_imported == 1
        assert codes(result.warnings) == ["BOOK_SKIPPED"]
        assert result.warnings[0].path == "books/2-exo.json"

    @pytest.mark.asyncio
    async def test_invalid_book_is_skipped(self, store: InMemoryStore, tmp_path: Path):
        root = build_translation_repo(tmp_path / "kjv", with_checksums=False)
        broken = make_book("EXO", "Exodus", 2)
        broken["chapters"][0]["number"] = 3
        write_json(root / "books" / "2-exo.json", broken)

        result = await make_importer(store).import_repository(options_for(root))

        assert result.success
        assert result.books_imported == 1
        skipped = [w for w in result.warnings if w.code == "BOOK_SKIPPED"]
        assert len(skipped) == 1
        assert skipped[0].details["errors"][0]["code"] == "INCORRECT_CHAPTER_NUMBER"

    @pytest.mark.asyncio
    async def test_unparsable_book_is_skipped(self, store: InMemoryStore, tmp_path: Path):
        root = build_translation_repo(tmp_path / "kjv", with_checksums=False)
        (root / "books" / "1-gen.json").write_text("{not json")

        result = await make_importer(store).import_repository(options_for(root))

        assert result.books_imported == 1
        assert any("Invalid JSON" in w.message for w in result.warnings)

    @pytest.mark.asyncio
    async def test_no_books_imported_is_error(self, store: InMemoryStore, translation_repo: Path):
        shutil.rmtree(translation_repo / "books")

        result = await make_importer(store).import_repository(options_for(translation_repo))

        assert not result.success
        assert "NO_BOOKS_IMPORTED" in codes(result.errors)
        assert result.translations_skipped == ("kjv",)
        assert result.translations_imported == ()

    @pytest.mark.asyncio
    async def test_invalid_manifest_stops_before_storage(
        self, store: InMemoryStore, tmp_path: Path
    ):
        root = build_translation_repo(tmp_path / "kjv", tech_checksum=None)

        result = await make_importer(store).import_repository(options_for(root))

        assert not result.success
        assert codes(result.errors) == ["MISSING_CHECKSUM"]
        assert result.repository_id == "kjv"
        assert result.translations_skipped == ("kjv",)
        assert store.repositories == {}


class TestChecksums:
    """Book checksum verification before anything is stored."""

    @pytest.mark.asyncio
    async def test_mismatch_aborts_translation(self, store: InMemoryStore, translation_repo: Path):
        tamper(translation_repo)

        result = await make_importer(store).import_repository(options_for(translation_repo))

        assert not result.success
        mismatch = [e for e in result.errors if e.code == "CHECKSUM_MISMATCH"]
        assert len(mismatch) == 1
        assert mismatch[0].path == "books/2-exo.json"
        assert mismatch[0].details["expected"] != mismatch[0].details["actual"]
        assert result.books_imported == 0
        assert store.books == {}

    @pytest.mark.asyncio
    async def test_verification_can_be_disabled(self, store: InMemoryStore, translation_repo: Path):
        tamper(translation_repo)

        result = await make_importer(store).import_repository(
            options_for(translation_repo, validate_checksums=False)
        )

        assert result.success
        assert result.books_imported == 2

    @pytest.mark.asyncio
    async def test_partial_coverage_warning(self, store: InMemoryStore, tmp_path: Path):
        root = build_translation_repo(tmp_path / "kjv", with_checksums=False)

        result = await make_importer(store).import_repository(options_for(root))

        assert result.success
        assert codes(result.warnings) == ["PARTIAL_CHECKSUM_COVERAGE"]
        assert result.warnings[0].details["paths"] == ["books/1-gen.json", "books/2-exo.json"]

    @pytest.mark.asyncio
    async def test_discovered_books_are_imported(self, store: InMemoryStore, tmp_path: Path):
        """Books missing from the manifest are found by listing books/."""
        root = build_translation_repo(tmp_path / "kjv", declare_books=False)

        result = await make_importer(store).import_repository(options_for(root))

        assert result.success
        assert result.books_imported == 2
        assert "PARTIAL_CHECKSUM_COVERAGE" in codes(result.warnings)


# ============================================================================
# Re-import
# ============================================================================


class TestReimport:
    """Importing the same translation twice."""

    @pytest.mark.asyncio
    async def test_overwrite_replaces_books(self, store: InMemoryStore, translation_repo: Path):
        importer = make_importer(store)
        options = options_for(translation_repo, overwrite_existing=True)

        await importer.import_repository(options)
        result = await importer.import_repository(options)

        assert result.success
        assert list(store.repositories) == ["kjv"]
        assert len(store.books_of("kjv")) == 2
        assert len(store.verses) == 2

    @pytest.mark.asyncio
    async def test_existing_skipped_without_overwrite(
        self, store: InMemoryStore, translation_repo: Path
    ):
        importer = make_importer(store)
        await importer.import_repository(options_for(translation_repo))
        upserts = store.upserts

        result = await importer.import_repository(options_for(translation_repo))

        assert result.success
        assert result.books_imported == 0
        assert codes(result.warnings) == ["ALREADY_IMPORTED"]
        assert result.translations_skipped == ("kjv",)
        assert result.translations_imported == ()
        assert store.upserts == upserts
        assert len(store.books_of("kjv")) == 2

    @pytest.mark.asyncio
    async def test_failed_overwrite_keeps_stored_books(
        self, store: InMemoryStore, translation_repo: Path
    ):
        """An overwrite that loads no replacement book leaves the old content."""
        importer = make_importer(store)
        await importer.import_repository(options_for(translation_repo))
        record = store.repositories["kjv"]
        upserts = store.upserts
        for book_file in (translation_repo / "books").glob("*.json"):
            book_file.unlink()

        result = await importer.import_repository(
            options_for(translation_repo, overwrite_existing=True)
        )

        assert not result.success
        assert codes(result.errors) == ["NO_BOOKS_IMPORTED"]
        assert [b["code"] for b in store.books_of("kjv")] == ["GEN", "EXO"]
        assert len(store.verses) == 2
        assert store.upserts == upserts
        assert store.repositories["kjv"] == record

    @pytest.mark.asyncio
    async def test_partial_overwrite_replaces_books(
        self, store: InMemoryStore, translation_repo: Path
    ):
        importer = make_importer(store)
        await importer.import_repository(options_for(translation_repo))
        (translation_repo / "books" / "2-exo.json").unlink()

        result = await importer.import_repository(
            options_for(translation_repo, overwrite_existing=True)
        )

        assert result.success
        assert result.books_imported == 1
        assert [b["code"] for b in store.books_of("kjv")] == ["GEN"]
        assert len(store.verses) == 1


# ============================================================================
# Parent repositories
# ============================================================================


class TestParentImport:
    """Fan-out over the translations of a parent repository."""

    @pytest.mark.asyncio
    async def test_imports_every_translation(self, store: InMemoryStore, parent_repo: Path):
        result = await make_importer(store).import_repository(options_for(parent_repo))

        assert result.success, result.errors
        assert result.repository_id == "collection"
        assert result.translations_imported == ("kjv", "web")
        assert result.books_imported == 4

        assert store.repositories["collection"].type == "parent"
        for translation_id in ("kjv", "web"):
            record = store.repositories[translation_id]
            assert record.type == "translation"
            assert record.parent_id == "collection"
        assert [r.translation_id for r in store.get_translations("collection")] == [
            "kjv",
            "web",
        ]
        assert store.links[("collection", "web")].directory == "web"

    @pytest.mark.asyncio
    async def test_failing_translation_isolated(self, store: InMemoryStore, tmp_path: Path):
        root = build_parent_repo(tmp_path / "collection", broken=("web",))

        result = await make_importer(store).import_repository(options_for(root))

        assert not result.success
        assert result.translations_imported == ("kjv",)
        assert result.translations_skipped == ("web",)
        assert "MISSING_CHECKSUM" in codes(result.errors)
        assert result.books_imported == 2
        assert "web" not in store.repositories

    @pytest.mark.asyncio
    async def test_missing_translation_directory(self, store: InMemoryStore, parent_repo: Path):
        shutil.rmtree(parent_repo / "web")

        result = await make_importer(store).import_repository(options_for(parent_repo))

        assert result.translations_imported == ("kjv",)
        assert result.translations_skipped == ("web",)
        fetch = [e for e in result.errors if e.code == "FETCH_ERROR"]
        assert fetch[0].details["translation_id"] == "web"

    @pytest.mark.asyncio
    async def test_translation_id_mismatch_warns(self, store: InMemoryStore, tmp_path: Path):
        root = build_parent_repo(tmp_path / "collection", ("kjv",))
        build_translation_repo(root / "kjv", repo_id="kjv1611")

        result = await make_importer(store).import_repository(options_for(root))

        assert result.success
        assert "TRANSLATION_ID_MISMATCH" in codes(result.warnings)
        assert result.translations_imported == ("kjv",)
        assert "kjv1611" in store.repositories

    @pytest.mark.asyncio
    async def test_invalid_parent_manifest(self, store: InMemoryStore, parent_repo: Path):
        manifest = (parent_repo / "manifest.json").read_text()
        (parent_repo / "manifest.json").write_text(
            manifest.replace('"type": "parent"', '"type": "collection"')
        )

        result = await make_importer(store).import_repository(options_for(parent_repo))

        assert not result.success
        assert codes(result.errors) == ["INVALID_PARENT_TYPE"]
        assert store.repositories == {}

    @pytest.mark.asyncio
    async def test_import_parent_repository_rejects_translation(
        self, store: InMemoryStore, translation_repo: Path
    ):
        raw = (translation_repo / "manifest.json").read_bytes()
        result = await make_importer(store).import_parent_repository(
            load_json_bytes(raw), options_for(translation_repo)
        )
        assert codes(result.errors) == ["NOT_PARENT_REPOSITORY"]


class TestHierarchicalImport:
    """Importing a chosen subset of a parent's translations."""

    @pytest.mark.asyncio
    async def test_selected_only(self, store: InMemoryStore, parent_repo: Path):
        result = await make_importer(store).import_repository_hierarchical(
            path_to_url(parent_repo), ["web"]
        )

        assert result.success
        assert result.translations_imported == ("web",)
        assert result.translations_skipped == ("kjv",)
        assert "kjv" not in store.repositories
        assert result.books_imported == 2

    @pytest.mark.asyncio
    async def test_nothing_selected(self, store: InMemoryStore, parent_repo: Path):
        result = await make_importer(store).import_repository_hierarchical(
            path_to_url(parent_repo), ["nope"]
        )

        assert not result.success
        assert codes(result.errors) == ["NO_TRANSLATIONS_SELECTED"]
        assert codes(result.warnings) == ["UNKNOWN_TRANSLATION"]
        assert result.translations_skipped == ("kjv", "web")
        assert store.repositories == {}

    @pytest.mark.asyncio
    async def test_requires_parent(self, store: InMemoryStore, translation_repo: Path):
        result = await make_importer(store).import_repository_hierarchical(
            path_to_url(translation_repo), ["kjv"]
        )
        assert codes(result.errors) == ["NOT_PARENT_REPOSITORY"]

    @pytest.mark.asyncio
    async def test_options_url_replaced(self, store: InMemoryStore, parent_repo: Path):
        options = ImportOptions(repository_url="https://elsewhere.example.org")
        result = await make_importer(store).import_repository_hierarchical(
            path_to_url(parent_repo), ["kjv"], options
        )
        assert result.translations_imported == ("kjv",)


# ============================================================================
# Failure modes
# ============================================================================


class TestImportFailures:
    """Unreachable and unrecognizable repositories."""

    @pytest.mark.asyncio
    async def test_fetch_error(self, store: InMemoryStore, tmp_path: Path):
        result = await make_importer(store).import_repository(options_for(tmp_path))

        assert not result.success
        assert codes(result.errors) == ["FETCH_ERROR"]
        assert result.errors[0].details["url"].endswith("/manifest.json")

    @pytest.mark.asyncio
    async def test_unknown_manifest_type(self, store: InMemoryStore, tmp_path: Path):
        write_json(
            tmp_path / "manifest.json",
            {"zbrs_version": "1.0", "repository": {"id": "odd"}, "technical": {}},
        )

        result = await make_importer(store).import_repository(options_for(tmp_path))

        assert codes(result.errors) == ["UNKNOWN_MANIFEST_TYPE"]
        assert result.repository_id == "odd"

    @pytest.mark.asyncio
    async def test_uninitialized_store_propagates(self, translation_repo: Path):
        store = SQLiteRepositoryStore(get_connection(":memory:"))
        with pytest.raises(StoreNotInitializedError):
            await make_importer(store).import_repository(options_for(translation_repo))


# ============================================================================
# Progress
# ============================================================================


class TestProgress:
    """Progress events are ordered and end in one terminal stage."""

    @staticmethod
    def assert_well_formed(sink: RecordingProgressSink, terminal: ImportStage):
        values = [e.progress for e in sink.events]
        assert values == sorted(values)
        assert sink.events[0].stage is ImportStage.DISCOVERING
        assert sink.events[0].progress == 0
        assert sink.stages[-1] is terminal
        assert sink.events[-1].progress == 100
        terminals = [s for s in sink.stages if s in (ImportStage.COMPLETE, ImportStage.ERROR)]
        assert terminals == [terminal]

    @pytest.mark.asyncio
    async def test_translation(self, store: InMemoryStore, translation_repo: Path):
        sink = RecordingProgressSink()
        await make_importer(store).import_repository(options_for(translation_repo), sink)

        self.assert_well_formed(sink, ImportStage.COMPLETE)
        assert sink.events[-1].message == "Import complete! 2 books imported."
        downloads = [e for e in sink.events if e.stage is ImportStage.DOWNLOADING]
        assert [e.current_book for e in downloads] == ["books/1-gen.json", "books/2-exo.json"]
        assert all(e.total_books == 2 for e in downloads)

    @pytest.mark.asyncio
    async def test_parent(self, store: InMemoryStore, parent_repo: Path):
        sink = RecordingProgressSink()
        await make_importer(store).import_repository(options_for(parent_repo), sink)
        self.assert_well_formed(sink, ImportStage.COMPLETE)

    @pytest.mark.asyncio
    async def test_three_translations(self, store: InMemoryStore, tmp_path: Path):
        root = build_parent_repo(tmp_path / "collection", ("kjv", "web", "asv"))
        sink = RecordingProgressSink()
        await make_importer(store).import_repository(options_for(root), sink)
        self.assert_well_formed(sink, ImportStage.COMPLETE)

    @pytest.mark.asyncio
    async def test_failure(self, store: InMemoryStore, tmp_path: Path):
        root = build_parent_repo(tmp_path / "collection", broken=("web",))
        sink = RecordingProgressSink()
        await make_importer(store).import_repository(options_for(root), sink)
        self.assert_well_formed(sink, ImportStage.ERROR)


# ============================================================================
# SQLite end to end
# ============================================================================


class TestSQLiteImport:
    """The importer against the real SQLite store."""

    @pytest.mark.asyncio
    async def test_parent_into_sqlite(self, parent_repo: Path):
        conn = get_connection(":memory:")
        store = SQLiteRepositoryStore(conn)
        store.ensure_schema()
        importer = make_importer(store)

        result = await importer.import_repository(options_for(parent_repo))
        again = await importer.import_repository(
            options_for(parent_repo, overwrite_existing=True)
        )

        assert result.success and again.success
        assert store.count_books("kjv") == 2
        assert store.count_verses("web") == 2
        assert [r.translation_id for r in store.get_translations("collection")] == [
            "kjv",
            "web",
        ]
        assert store.get_repository("kjv").parent_id == "collection"
        conn.close()
