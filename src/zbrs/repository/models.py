"""Manifest and content model for ZBRS repositories.

Two manifest shapes exist:
- Parent manifests coordinate several translations (``translations`` + ``publisher``)
- Translation manifests carry one translation's content summary (``content``)

The shape is decided once, at decode time (decode_manifest), and carried as
an explicit ManifestKind so downstream code never re-derives it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Union

from zbrs.repository.errors import ManifestKindError


Severity = Literal["error", "warning"]
TranslationStatus = Literal["active", "inactive", "deprecated"]
RepositoryType = Literal["parent", "translation"]


class ManifestKind(str, Enum):
    """Structural kind of a ZBRS manifest."""

    PARENT = "parent"
    TRANSLATION = "translation"


def classify_manifest(raw: Any) -> ManifestKind | None:
    """Classify a raw manifest by its structure.

    Returns:
        ManifestKind, or None when the payload matches neither shape
    """
    if not isinstance(raw, dict):
        return None
    if isinstance(raw.get("translations"), list) and "publisher" in raw:
        return ManifestKind.PARENT
    if "content" in raw:
        return ManifestKind.TRANSLATION
    return None


# ============================================================================
# Manifest components
# ============================================================================


@dataclass
class PublisherInfo:
    name: str
    url: str | None = None
    contact: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "PublisherInfo":
        return cls(
            name=data.get("name", ""),
            url=data.get("url"),
            contact=data.get("contact"),
        )

    def to_dict(self) -> dict:
        return {"name": self.name, "url": self.url, "contact": self.contact}


@dataclass
class LanguageInfo:
    code: str
    name: str
    direction: Literal["ltr", "rtl"] = "ltr"
    script: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "LanguageInfo":
        return cls(
            code=data.get("code", ""),
            name=data.get("name", ""),
            direction=data.get("direction", "ltr"),
            script=data.get("script"),
        )


@dataclass
class TranslationInfo:
    type: str
    year: int
    copyright: str
    license: str
    source: str
    translators: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "TranslationInfo":
        return cls(
            type=data.get("type", ""),
            year=data.get("year", 0),
            copyright=data.get("copyright", ""),
            license=data.get("license", ""),
            source=data.get("source", ""),
            translators=list(data.get("translators", [])),
        )


@dataclass
class TechnicalInfo:
    encoding: str = "UTF-8"
    compression: str = "none"
    checksum: str | None = None
    size_bytes: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "TechnicalInfo":
        return cls(
            encoding=data.get("encoding", "UTF-8"),
            compression=data.get("compression", "none"),
            checksum=data.get("checksum"),
            size_bytes=data.get("size_bytes", 0),
        )

    def to_dict(self) -> dict:
        return {
            "encoding": self.encoding,
            "compression": self.compression,
            "checksum": self.checksum,
            "size_bytes": self.size_bytes,
        }


@dataclass
class ContentBookReference:
    """A book file declared by a translation manifest."""

    path: str
    checksum: str | None = None
    size_bytes: int | None = None
    media_type: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "ContentBookReference":
        return cls(
            path=data["path"],
            checksum=data.get("checksum"),
            size_bytes=data.get("size_bytes"),
            media_type=data.get("media_type"),
        )

    @property
    def has_sha256(self) -> bool:
        """True if the declared checksum is a sha256 digest."""
        return bool(self.checksum) and self.checksum.startswith("sha256:")


@dataclass
class ContentInfo:
    books_count: int
    testament_old: int
    testament_new: int
    features: dict[str, bool] = field(default_factory=dict)
    books: list[ContentBookReference] | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "ContentInfo":
        testament = data.get("testament") or {}
        books = data.get("books")
        return cls(
            books_count=data.get("books_count", 0),
            testament_old=testament.get("old", 0),
            testament_new=testament.get("new", 0),
            features=dict(data.get("features") or {}),
            books=(
                [ContentBookReference.from_dict(b) for b in books]
                if isinstance(books, list)
                else None
            ),
        )


@dataclass
class TranslationReference:
    """Entry in a parent manifest's translations list."""

    id: str
    name: str
    directory: str
    language: str
    status: TranslationStatus = "active"
    checksum: str | None = None
    description: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "TranslationReference":
        language = data.get("language", "")
        # Older feeds carry the full language block here
        if isinstance(language, dict):
            language = language.get("code", "")
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            directory=data["directory"],
            language=language,
            status=data.get("status", "active"),
            checksum=data.get("checksum"),
            description=data.get("description"),
        )


@dataclass
class RepositoryIdentity:
    id: str
    name: str
    description: str
    version: str
    created_at: str = ""
    updated_at: str = ""
    type: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "RepositoryIdentity":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            description=data.get("description", ""),
            version=data.get("version", ""),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
            type=data.get("type"),
        )


# ============================================================================
# Manifests (tagged variant)
# ============================================================================


@dataclass
class ParentManifest:
    """Coordinating manifest listing one or more translations."""

    zbrs_version: str
    repository: RepositoryIdentity
    publisher: PublisherInfo
    translations: list[TranslationReference]
    technical: TechnicalInfo
    extensions: dict = field(default_factory=dict)
    raw: dict = field(default_factory=dict, repr=False)

    kind = ManifestKind.PARENT

    @property
    def id(self) -> str:
        return self.repository.id

    @classmethod
    def from_dict(cls, data: dict) -> "ParentManifest":
        return cls(
            zbrs_version=data.get("zbrs_version", ""),
            repository=RepositoryIdentity.from_dict(data["repository"]),
            publisher=PublisherInfo.from_dict(data.get("publisher") or {}),
            translations=[
                TranslationReference.from_dict(t) for t in data.get("translations", [])
            ],
            technical=TechnicalInfo.from_dict(data.get("technical") or {}),
            extensions=dict(data.get("extensions") or {}),
            raw=data,
        )


@dataclass
class TranslationManifest:
    """Manifest of a single translation and its content."""

    zbrs_version: str
    repository: RepositoryIdentity
    language: LanguageInfo
    translation: TranslationInfo
    content: ContentInfo
    technical: TechnicalInfo
    publisher: PublisherInfo | None = None
    extensions: dict = field(default_factory=dict)
    raw: dict = field(default_factory=dict, repr=False)

    kind = ManifestKind.TRANSLATION

    @property
    def id(self) -> str:
        return self.repository.id

    @classmethod
    def from_dict(cls, data: dict) -> "TranslationManifest":
        repository = data["repository"]
        publisher = repository.get("publisher")
        return cls(
            zbrs_version=data.get("zbrs_version", ""),
            repository=RepositoryIdentity.from_dict(repository),
            language=LanguageInfo.from_dict(repository.get("language") or {}),
            translation=TranslationInfo.from_dict(repository.get("translation") or {}),
            content=ContentInfo.from_dict(data.get("content") or {}),
            technical=TechnicalInfo.from_dict(data.get("technical") or {}),
            publisher=PublisherInfo.from_dict(publisher) if publisher else None,
            extensions=dict(data.get("extensions") or {}),
            raw=data,
        )


Manifest = Union[ParentManifest, TranslationManifest]


def decode_manifest(raw: Any) -> Manifest:
    """Decode a raw manifest payload into its tagged variant.

    Raises:
        ManifestKindError: If the payload is neither a parent nor a translation
    """
    kind = classify_manifest(raw)
    if kind is ManifestKind.PARENT:
        return ParentManifest.from_dict(raw)
    if kind is ManifestKind.TRANSLATION:
        return TranslationManifest.from_dict(raw)
    raise ManifestKindError(
        "Manifest is neither a parent repository nor a translation manifest"
    )


# ============================================================================
# Book content
# ============================================================================


@dataclass
class Verse:
    number: int
    text: str
    footnotes: list[dict] = field(default_factory=list)
    cross_references: list[dict] = field(default_factory=list)
    study_notes: list[dict] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "Verse":
        return cls(
            number=data["number"],
            text=data["text"],
            footnotes=list(data.get("footnotes", [])),
            cross_references=list(data.get("cross_references", [])),
            study_notes=list(data.get("study_notes", [])),
        )


@dataclass
class Chapter:
    number: int
    verses: list[Verse]
    title: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "Chapter":
        return cls(
            number=data["number"],
            verses=[Verse.from_dict(v) for v in data.get("verses", [])],
            title=data.get("title"),
        )


@dataclass
class BookInfo:
    id: str
    name: str
    abbreviation: str
    order: int
    testament: Literal["old", "new"]
    chapters_count: int
    verses_count: int
    genre: str | None = None
    author: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "BookInfo":
        return cls(
            id=data["id"],
            name=data["name"],
            abbreviation=data.get("abbreviation", ""),
            order=data["order"],
            testament=data["testament"],
            chapters_count=data["chapters_count"],
            verses_count=data["verses_count"],
            genre=data.get("genre"),
            author=data.get("author"),
        )


@dataclass
class ZBRSBook:
    """A book file: identity, chapters and optional metadata."""

    book: BookInfo
    chapters: list[Chapter]
    outline: list[dict] = field(default_factory=list)
    themes: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "ZBRSBook":
        metadata = data.get("metadata") or {}
        return cls(
            book=BookInfo.from_dict(data["book"]),
            chapters=[Chapter.from_dict(c) for c in data["chapters"]],
            outline=list(metadata.get("outline", [])),
            themes=list(metadata.get("themes", [])),
        )

    @property
    def verse_total(self) -> int:
        return sum(len(c.verses) for c in self.chapters)


# ============================================================================
# Persisted records
# ============================================================================


@dataclass
class RepositoryDbRecord:
    """Repository row handed to the storage contract."""

    id: str
    name: str
    description: str | None
    version: str
    type: RepositoryType
    parent_id: str | None
    language: str | None
    created_at: str
    updated_at: str
    imported_at: str
    metadata: str = "{}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "type": self.type,
            "parent_id": self.parent_id,
            "language": self.language,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "imported_at": self.imported_at,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RepositoryDbRecord":
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description"),
            version=data["version"],
            type=data["type"],
            parent_id=data.get("parent_id"),
            language=data.get("language"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
            imported_at=data.get("imported_at", ""),
            metadata=data.get("metadata") or "{}",
        )


@dataclass
class RepositoryTranslationRecord:
    """Link between a coordinating repository and one of its translations."""

    parent_id: str
    translation_id: str
    directory: str
    language: str | None
    status: str = "active"

    def to_dict(self) -> dict:
        return {
            "parent_id": self.parent_id,
            "translation_id": self.translation_id,
            "directory": self.directory,
            "language": self.language,
            "status": self.status,
        }


# ============================================================================
# Validation results
# ============================================================================


@dataclass
class ValidationIssue:
    """A single validation error or warning."""

    code: str
    message: str
    path: str | None = None
    severity: Severity = "error"
    details: dict | None = None

    def to_dict(self) -> dict:
        result: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
        }
        if self.path is not None:
            result["path"] = self.path
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        location = f" ({self.path})" if self.path else ""
        return f"[{self.code}] {self.message}{location}"


@dataclass
class ValidationResult:
    """Errors and warnings collected by one validation call.

    ``valid`` is derived from ``errors`` so the two can never disagree.
    """

    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def add_error(
        self,
        code: str,
        message: str,
        path: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.errors.append(ValidationIssue(code, message, path, "error", details))

    def add_warning(
        self,
        code: str,
        message: str,
        path: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.warnings.append(ValidationIssue(code, message, path, "warning", details))

    def merge(self, other: "ValidationResult") -> None:
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


@dataclass
class IntegrityCheck:
    file_path: str
    expected_checksum: str
    actual_checksum: str
    valid: bool


# ============================================================================
# Import results
# ============================================================================


@dataclass(frozen=True)
class ImportResult:
    """Outcome of one import invocation. Immutable once returned."""

    success: bool
    repository_id: str
    books_imported: int
    translations_imported: tuple[str, ...] = ()
    translations_skipped: tuple[str, ...] = ()
    errors: tuple[ValidationIssue, ...] = ()
    warnings: tuple[ValidationIssue, ...] = ()
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "repository_id": self.repository_id,
            "books_imported": self.books_imported,
            "translations_imported": list(self.translations_imported),
            "translations_skipped": list(self.translations_skipped),
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "duration_ms": self.duration_ms,
        }


@dataclass
class ImportAccumulator:
    """Mutable state of an import in flight; frozen into an ImportResult."""

    repository_id: str = ""
    books_imported: int = 0
    translations_imported: list[str] = field(default_factory=list)
    translations_skipped: list[str] = field(default_factory=list)
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    def add_error(
        self,
        code: str,
        message: str,
        path: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.errors.append(ValidationIssue(code, message, path, "error", details))

    def add_warning(
        self,
        code: str,
        message: str,
        path: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.warnings.append(ValidationIssue(code, message, path, "warning", details))

    def absorb(self, validation: ValidationResult) -> None:
        self.errors.extend(validation.errors)
        self.warnings.extend(validation.warnings)

    def finish(self, duration_ms: int) -> ImportResult:
        return ImportResult(
            success=not self.errors,
            repository_id=self.repository_id,
            books_imported=self.books_imported,
            translations_imported=tuple(self.translations_imported),
            translations_skipped=tuple(self.translations_skipped),
            errors=tuple(self.errors),
            warnings=tuple(self.warnings),
            duration_ms=duration_ms,
        )


# ============================================================================
# Discovery shapes
# ============================================================================


@dataclass
class RepositoryIndexEntry:
    """A repository advertised by an index feed."""

    id: str
    name: str
    url: str
    language: str = ""
    license: str = ""
    verified: bool = False
    last_updated: str = ""
    description: str | None = None
    tags: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "RepositoryIndexEntry":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            url=data["url"],
            language=data.get("language", ""),
            license=data.get("license", ""),
            verified=bool(data.get("verified", False)),
            last_updated=data.get("last_updated", ""),
            description=data.get("description"),
            tags=list(data.get("tags", [])),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "language": self.language,
            "license": self.license,
            "verified": self.verified,
            "last_updated": self.last_updated,
            "description": self.description,
            "tags": self.tags,
        }


@dataclass
class RepositorySource:
    """An index feed that discovery pulls repositories from."""

    url: str
    name: str
    type: Literal["official", "third-party", "local"] = "third-party"
    enabled: bool = True
    last_checked: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "RepositorySource":
        return cls(
            url=data["url"],
            name=data.get("name", data["url"]),
            type=data.get("type", "third-party"),
            enabled=bool(data.get("enabled", True)),
            last_checked=data.get("last_checked"),
        )

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "name": self.name,
            "type": self.type,
            "enabled": self.enabled,
            "last_checked": self.last_checked,
        }


@dataclass
class ScannedRepository:
    """A manifest found on disk, with its validation."""

    path: str
    manifest: dict
    validation: ValidationResult

    @property
    def kind(self) -> ManifestKind | None:
        return classify_manifest(self.manifest)


@dataclass
class DirectoryScanResult:
    repositories: list[ScannedRepository] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class TranslationScan:
    """Outcome of resolving one translation directory of a parent on disk."""

    reference: TranslationReference
    path: str
    manifest: dict | None = None
    validation: ValidationResult | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return (
            self.error is None
            and self.validation is not None
            and self.validation.valid
        )


@dataclass
class HierarchicalScanResult:
    root: ScannedRepository | None = None
    translations: list[TranslationScan] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def valid_translations(self) -> list[TranslationScan]:
        return [t for t in self.translations if t.ok]
