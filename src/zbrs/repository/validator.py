"""ZBRS manifest, book and URL validation.

Validation runs in a fixed order and short-circuits only on schema failure:
1. JSON Schema (Draft 2020-12) - one SCHEMA_VALIDATION error per violation
2. Shape checks (parent vs. translation structure, duplicate references)
3. Business rules (testament counts, canon, declared size)
4. Security rules (checksums, publisher URL)

The validator never raises for content defects; every defect becomes an
entry in the returned ValidationResult.

Usage:
    validator = ZBRSValidator(SecurityPolicy())
    result = validator.validate_manifest(raw)
    if not result.valid:
        for err in result.errors:
            print(f"ERROR: {err.path}: {err.message}")
"""

from __future__ import annotations

import hashlib
import json
import logging
from importlib import resources
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit
from urllib.request import url2pathname

from jsonschema import Draft202012Validator

from zbrs.repository.models import (
    IntegrityCheck,
    ManifestKind,
    ParentManifest,
    TranslationManifest,
    ValidationResult,
    classify_manifest,
)
from zbrs.repository.policy import SecurityPolicy

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = {"http", "https", "file"}

# Standard Protestant canon
STANDARD_BOOK_COUNT = 66
STANDARD_OLD_TESTAMENT = 39
STANDARD_NEW_TESTAMENT = 27

SCHEMA_FILES = {
    "envelope": "manifest.schema.json",
    "parent": "parent-manifest.schema.json",
    "translation": "translation-manifest.schema.json",
    "book": "book.schema.json",
}

_SCHEMA_CACHE: dict[str, Draft202012Validator] = {}


def strip_bom(text: str) -> str:
    """Remove a leading UTF-8 byte-order mark."""
    return text[1:] if text.startswith("﻿") else text


def load_json_bytes(data: bytes) -> Any:
    """Decode UTF-8 bytes (BOM tolerated) and parse JSON."""
    return json.loads(strip_bom(data.decode("utf-8")))


def sha256_digest(data: bytes) -> str:
    """Format a sha256 digest the way ZBRS manifests declare it."""
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def json_pointer(parts) -> str:
    """Render a jsonschema path deque as a JSON pointer."""
    tokens = [str(p).replace("~", "~0").replace("/", "~1") for p in parts]
    return "/" + "/".join(tokens) if tokens else "/"


def get_schema_validator(name: str) -> Draft202012Validator:
    """Load (once) and compile one of the packaged schemas."""
    if name not in _SCHEMA_CACHE:
        schema_file = resources.files("zbrs.repository") / "schemas" / SCHEMA_FILES[name]
        schema = json.loads(strip_bom(schema_file.read_text(encoding="utf-8")))
        Draft202012Validator.check_schema(schema)
        _SCHEMA_CACHE[name] = Draft202012Validator(schema)
    return _SCHEMA_CACHE[name]


def is_safe_relative_path(path: str) -> bool:
    """Check that a manifest-declared path stays inside its repository.

    Rejects absolute paths, drive letters, URL schemes and any ``..``
    component.
    """
    if not path or path.startswith("/") or path.startswith("\\"):
        return False
    if len(path) >= 2 and path[1] == ":":
        return False
    if "://" in path:
        return False
    normalized = path.replace("\\", "/")
    return ".." not in normalized.split("/")


class ZBRSValidator:
    """Stateless-per-call validator bound to one SecurityPolicy."""

    def __init__(self, policy: SecurityPolicy | None = None):
        self.policy = policy or SecurityPolicy()

    # ------------------------------------------------------------------
    # Manifests
    # ------------------------------------------------------------------

    def validate_manifest(self, manifest: Any) -> ValidationResult:
        """Validate a manifest of either shape."""
        result = ValidationResult()

        if not self._check_schema("envelope", manifest, result, "manifest"):
            return result

        kind = classify_manifest(manifest)
        if kind is ManifestKind.PARENT:
            return self.validate_parent_manifest(manifest)
        if kind is ManifestKind.TRANSLATION:
            return self.validate_translation_manifest(manifest)

        result.add_error(
            "UNKNOWN_MANIFEST_TYPE",
            "Manifest is neither a parent repository nor a translation manifest",
        )
        return result

    def validate_parent_manifest(
        self, manifest: dict | ParentManifest
    ) -> ValidationResult:
        """Validate a parent (multi-translation) manifest."""
        raw = manifest.raw if isinstance(manifest, ParentManifest) else manifest
        result = ValidationResult()

        if not self._check_schema("parent", raw, result, "parent manifest"):
            return result

        self._check_parent_structure(raw, result)
        self._check_size(raw, result)
        self._check_security(raw, ManifestKind.PARENT, result)
        return result

    def validate_translation_manifest(
        self, manifest: dict | TranslationManifest
    ) -> ValidationResult:
        """Validate a single-translation manifest."""
        raw = manifest.raw if isinstance(manifest, TranslationManifest) else manifest
        result = ValidationResult()

        if not self._check_schema("translation", raw, result, "translation manifest"):
            return result

        self._check_translation_structure(raw, result)
        self._check_book_counts(raw, result)
        self._check_size(raw, result)
        self._check_security(raw, ManifestKind.TRANSLATION, result)
        return result

    def _check_schema(
        self, name: str, payload: Any, result: ValidationResult, label: str
    ) -> bool:
        validator = get_schema_validator(name)
        schema_errors = sorted(
            validator.iter_errors(payload),
            key=lambda e: [str(p) for p in e.absolute_path],
        )
        for err in schema_errors:
            pointer = json_pointer(err.absolute_path)
            result.add_error(
                "SCHEMA_VALIDATION",
                f"{label} {pointer}: {err.message}",
                pointer,
            )
        return not schema_errors

    def _check_parent_structure(self, raw: dict, result: ValidationResult) -> None:
        if raw["repository"].get("type") != "parent":
            result.add_error(
                "INVALID_PARENT_TYPE",
                "Parent repository must have type 'parent'",
                "/repository/type",
            )

        translations = raw.get("translations")
        if not isinstance(translations, list):
            result.add_error(
                "MISSING_TRANSLATIONS_ARRAY",
                "Parent repository must have a translations array",
                "/translations",
            )
            translations = []
        elif not translations:
            result.add_warning(
                "EMPTY_TRANSLATIONS_ARRAY",
                "Parent repository has no translations",
                "/translations",
            )

        if not raw.get("publisher"):
            result.add_error(
                "MISSING_PUBLISHER",
                "Parent repository must have publisher information",
                "/publisher",
            )

        duplicate_ids = _duplicates(t.get("id") for t in translations)
        if duplicate_ids:
            result.add_error(
                "DUPLICATE_TRANSLATION_IDS",
                f"Duplicate translation IDs found: {', '.join(duplicate_ids)}",
                "/translations",
                {"duplicates": duplicate_ids},
            )

        duplicate_dirs = _duplicates(t.get("directory") for t in translations)
        if duplicate_dirs:
            result.add_error(
                "DUPLICATE_TRANSLATION_DIRECTORIES",
                f"Duplicate translation directories found: {', '.join(duplicate_dirs)}",
                "/translations",
                {"duplicates": duplicate_dirs},
            )

        for i, translation in enumerate(translations):
            directory = translation.get("directory", "")
            if not is_safe_relative_path(directory):
                result.add_error(
                    "UNSAFE_PATH",
                    f"Translation directory escapes the repository: {directory!r}",
                    f"/translations/{i}/directory",
                )

    def _check_translation_structure(self, raw: dict, result: ValidationResult) -> None:
        repository = raw["repository"]
        if not raw.get("content"):
            result.add_error(
                "MISSING_CONTENT",
                "Translation manifest must have content information",
                "/content",
            )
        if not repository.get("language"):
            result.add_error(
                "MISSING_LANGUAGE",
                "Translation manifest must have language information",
                "/repository/language",
            )
        if not repository.get("translation"):
            result.add_error(
                "MISSING_TRANSLATION_INFO",
                "Translation manifest must have translation information",
                "/repository/translation",
            )

        for i, book in enumerate((raw.get("content") or {}).get("books") or []):
            if not is_safe_relative_path(book.get("path", "")):
                result.add_error(
                    "UNSAFE_PATH",
                    f"Book path escapes the repository: {book.get('path')!r}",
                    f"/content/books/{i}/path",
                )

    def _check_book_counts(self, raw: dict, result: ValidationResult) -> None:
        content = raw.get("content") or {}
        testament = content.get("testament") or {}
        old = testament.get("old", 0)
        new = testament.get("new", 0)
        declared = content.get("books_count", 0)

        if old + new != declared:
            result.add_error(
                "BOOK_COUNT_MISMATCH",
                f"Testament book counts ({old} + {new} = {old + new}) "
                f"don't match total ({declared})",
                "/content/testament",
                {"old": old, "new": new, "books_count": declared},
            )

        if declared == STANDARD_BOOK_COUNT and (
            old != STANDARD_OLD_TESTAMENT or new != STANDARD_NEW_TESTAMENT
        ):
            result.add_warning(
                "NON_STANDARD_CANON",
                "Book counts differ from standard Protestant canon (39 OT + 27 NT)",
                "/content/testament",
            )

    def _check_size(self, raw: dict, result: ValidationResult) -> None:
        size = (raw.get("technical") or {}).get("size_bytes", 0)
        if size > self.policy.max_repository_size:
            result.add_error(
                "REPOSITORY_TOO_LARGE",
                f"Repository size ({size}) exceeds maximum "
                f"({self.policy.max_repository_size})",
                "/technical/size_bytes",
            )

    def _check_security(
        self, raw: dict, kind: ManifestKind, result: ValidationResult
    ) -> None:
        if self.policy.require_checksums:
            if kind is ManifestKind.TRANSLATION:
                if not (raw.get("technical") or {}).get("checksum"):
                    result.add_error(
                        "MISSING_CHECKSUM",
                        "Translation checksum is required by security policy",
                        "/technical/checksum",
                    )
            else:
                for i, translation in enumerate(raw.get("translations") or []):
                    if not translation.get("checksum"):
                        result.add_error(
                            "MISSING_TRANSLATION_CHECKSUM",
                            f"Translation {translation.get('id')} is missing checksum",
                            f"/translations/{i}/checksum",
                        )

        if kind is ManifestKind.PARENT:
            publisher = raw.get("publisher") or {}
            pointer = "/publisher/url"
        else:
            publisher = raw["repository"].get("publisher") or {}
            pointer = "/repository/publisher/url"

        publisher_url = publisher.get("url")
        if not publisher_url:
            return

        try:
            parts = urlsplit(publisher_url)
            host = parts.hostname or ""
        except ValueError as e:
            result.add_error(
                "INVALID_PUBLISHER_URL", f"Invalid publisher URL: {e}", pointer
            )
            return

        if not parts.scheme or not host:
            result.add_error(
                "INVALID_PUBLISHER_URL",
                f"Invalid publisher URL: {publisher_url}",
                pointer,
            )
            return

        if parts.scheme == "http" and not self.policy.allow_http:
            result.add_warning(
                "INSECURE_URL", "Publisher URL uses insecure HTTP protocol", pointer
            )

        if self.policy.is_blocked(host):
            result.add_error(
                "BLOCKED_DOMAIN", f"Publisher domain {host} is blocked", pointer
            )

    # ------------------------------------------------------------------
    # Books
    # ------------------------------------------------------------------

    def validate_book(
        self, book: Any, expected_order: int | None = None
    ) -> ValidationResult:
        """Validate a book file; every defect found is reported."""
        result = ValidationResult()
        self._check_schema("book", book, result, "book")

        if not isinstance(book, dict):
            return result
        info = book.get("book")
        chapters = book.get("chapters")
        if not isinstance(info, dict) or not isinstance(chapters, list):
            return result

        if expected_order is not None and info.get("order") != expected_order:
            result.add_error(
                "INCORRECT_BOOK_ORDER",
                f"Book order {info.get('order')} doesn't match expected {expected_order}",
                "/book/order",
            )

        if len(chapters) != info.get("chapters_count"):
            result.add_error(
                "CHAPTER_COUNT_MISMATCH",
                f"Actual chapters ({len(chapters)}) don't match declared count "
                f"({info.get('chapters_count')})",
                "/book/chapters_count",
            )

        total_verses = 0
        for i, chapter in enumerate(chapters):
            if not isinstance(chapter, dict):
                continue
            if chapter.get("number") != i + 1:
                result.add_error(
                    "INCORRECT_CHAPTER_NUMBER",
                    f"Chapter {i + 1} has incorrect number {chapter.get('number')}",
                    f"/chapters/{i}/number",
                )

            verses = chapter.get("verses")
            if not isinstance(verses, list):
                continue

            for j, verse in enumerate(verses):
                total_verses += 1
                if not isinstance(verse, dict):
                    continue
                if verse.get("number") != j + 1:
                    result.add_error(
                        "INCORRECT_VERSE_NUMBER",
                        f"Chapter {chapter.get('number')}, verse {j + 1} has "
                        f"incorrect number {verse.get('number')}",
                        f"/chapters/{i}/verses/{j}/number",
                    )
                text = verse.get("text")
                if not isinstance(text, str) or not text.strip():
                    result.add_error(
                        "EMPTY_VERSE_TEXT",
                        f"Chapter {chapter.get('number')}, verse {verse.get('number')} "
                        f"has empty text",
                        f"/chapters/{i}/verses/{j}/text",
                    )

        if total_verses != info.get("verses_count"):
            result.add_error(
                "VERSE_COUNT_MISMATCH",
                f"Actual verses ({total_verses}) don't match declared count "
                f"({info.get('verses_count')})",
                "/book/verses_count",
            )

        return result

    # ------------------------------------------------------------------
    # URLs and integrity
    # ------------------------------------------------------------------

    def validate_repository_url(self, url: str) -> ValidationResult:
        """Check a repository URL against the security policy."""
        result = ValidationResult()

        try:
            parts = urlsplit(url)
            host = parts.hostname or ""
        except ValueError as e:
            result.add_error("INVALID_URL", f"Invalid URL format: {e}")
            return result

        if not parts.scheme:
            result.add_error("INVALID_URL", f"Invalid URL format: {url}")
            return result

        scheme = parts.scheme.lower()
        if scheme not in ALLOWED_SCHEMES:
            result.add_error("INVALID_PROTOCOL", f"Unsupported protocol: {scheme}:")
            return result

        if scheme == "http" and not self.policy.allow_http:
            result.add_error(
                "INSECURE_PROTOCOL", "HTTP protocol not allowed by security policy"
            )

        if scheme == "file":
            return result

        if not host:
            result.add_error("INVALID_URL", f"URL has no host: {url}")
            return result

        if self.policy.is_blocked(host):
            result.add_error("BLOCKED_DOMAIN", f"Domain {host} is blocked")

        if not self.policy.is_allowed(host):
            result.add_error(
                "DOMAIN_NOT_ALLOWED", f"Domain {host} is not in allowed list"
            )

        return result

    def validate_file_integrity(
        self, file_path: str | Path, expected_checksum: str
    ) -> IntegrityCheck:
        """Hash a local file and compare it with the expected digest.

        ``file_path`` may be a filesystem path or a ``file://`` URL. Unreadable
        files produce a failed check with an empty actual checksum.
        """
        path_str = str(file_path)
        local = path_str
        if path_str.startswith("file://"):
            local = url2pathname(urlsplit(path_str).path)

        try:
            data = Path(local).read_bytes()
        except OSError as e:
            logger.debug(f"Integrity check could not read {path_str}: {e}")
            return IntegrityCheck(path_str, expected_checksum, "", False)

        return self.check_integrity(data, expected_checksum, path_str)

    def check_integrity(
        self, data: bytes, expected_checksum: str, label: str
    ) -> IntegrityCheck:
        """Compare in-memory bytes with the expected digest."""
        actual = sha256_digest(data)
        return IntegrityCheck(
            file_path=label,
            expected_checksum=expected_checksum,
            actual_checksum=actual,
            valid=actual == expected_checksum,
        )


def _duplicates(values) -> list[str]:
    seen: set = set()
    duplicates: list[str] = []
    for value in values:
        if value in seen and value not in duplicates:
            duplicates.append(value)
        seen.add(value)
    return duplicates
