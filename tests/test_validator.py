"""Tests for manifest, book, URL and integrity validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from builders import (
    TECH_CHECKSUM,
    make_book,
    make_parent_manifest,
    make_reference,
    make_translation_manifest,
)
from zbrs.repository.models import decode_manifest
from zbrs.repository.policy import MIB, SecurityPolicy
from zbrs.repository.validator import (
    ZBRSValidator,
    is_safe_relative_path,
    sha256_digest,
)


def codes(issues) -> list[str]:
    return [i.code for i in issues]


# ============================================================================
# Schema stage
# ============================================================================


class TestSchemaValidation:
    """Schema violations short-circuit with one error each."""

    def test_valid_translation_manifest(self, validator):
        result = validator.validate_manifest(make_translation_manifest())
        assert result.valid, result.errors
        assert result.errors == []

    def test_valid_parent_manifest(self, validator):
        result = validator.validate_manifest(make_parent_manifest())
        assert result.valid, result.errors

    def test_bad_version_pattern_reports_pointer(self, validator):
        raw = make_translation_manifest()
        raw["repository"]["version"] = "1.0"
        result = validator.validate_manifest(raw)

        assert codes(result.errors) == ["SCHEMA_VALIDATION"]
        assert result.errors[0].path == "/repository/version"

    def test_one_error_per_violation(self, validator):
        raw = make_translation_manifest()
        raw["technical"]["encoding"] = "latin-1"
        raw["technical"]["checksum"] = "sha256:XYZ"
        result = validator.validate_translation_manifest(raw)

        assert codes(result.errors) == ["SCHEMA_VALIDATION", "SCHEMA_VALIDATION"]
        assert {e.path for e in result.errors} == {
            "/technical/checksum",
            "/technical/encoding",
        }

    def test_schema_failure_skips_later_rules(self, validator):
        """A schema error stops validation before the business rules run."""
        raw = make_translation_manifest(books_count=5, old=1, new=1)
        raw["zbrs_version"] = "2.0"
        result = validator.validate_manifest(raw)
        assert "BOOK_COUNT_MISMATCH" not in codes(result.errors)

    def test_envelope_missing_fields(self, validator):
        result = validator.validate_manifest({"content": {}})
        assert codes(result.errors) == ["SCHEMA_VALIDATION"] * 3

    def test_unknown_manifest_type(self, validator):
        raw = {"zbrs_version": "1.0", "repository": {"id": "x"}, "technical": {}}
        result = validator.validate_manifest(raw)
        assert codes(result.errors) == ["UNKNOWN_MANIFEST_TYPE"]

    def test_typed_manifest_accepted(self, validator):
        manifest = decode_manifest(make_translation_manifest())
        assert validator.validate_translation_manifest(manifest).valid


# ============================================================================
# Structure and business rules
# ============================================================================


class TestParentStructure:
    """Parent-specific shape checks."""

    def test_wrong_type(self, validator):
        raw = make_parent_manifest()
        raw["repository"]["type"] = "translation"
        result = validator.validate_parent_manifest(raw)
        assert "INVALID_PARENT_TYPE" in codes(result.errors)

    def test_null_publisher(self, validator):
        raw = make_parent_manifest()
        raw["publisher"] = None
        result = validator.validate_parent_manifest(raw)
        assert "MISSING_PUBLISHER" in codes(result.errors)

    def test_empty_translations_is_warning(self, validator):
        result = validator.validate_parent_manifest(make_parent_manifest(translations=[]))
        assert result.valid
        assert codes(result.warnings) == ["EMPTY_TRANSLATIONS_ARRAY"]

    def test_duplicate_ids(self, validator):
        raw = make_parent_manifest(
            translations=[make_reference("kjv", "a"), make_reference("kjv", "b")]
        )
        result = validator.validate_manifest(raw)
        assert "DUPLICATE_TRANSLATION_IDS" in codes(result.errors)
        dup = next(e for e in result.errors if e.code == "DUPLICATE_TRANSLATION_IDS")
        assert dup.details == {"duplicates": ["kjv"]}

    def test_duplicate_directories(self, validator):
        raw = make_parent_manifest(
            translations=[make_reference("kjv", "same"), make_reference("web", "same")]
        )
        result = validator.validate_manifest(raw)
        assert codes(result.errors) == ["DUPLICATE_TRANSLATION_DIRECTORIES"]

    def test_unsafe_directory(self, validator):
        raw = make_parent_manifest(translations=[make_reference("kjv", "../kjv")])
        result = validator.validate_manifest(raw)
        assert codes(result.errors) == ["UNSAFE_PATH"]
        assert result.errors[0].path == "/translations/0/directory"

    def test_missing_translation_checksums(self, validator):
        refs = [make_reference("kjv"), make_reference("web")]
        del refs[1]["checksum"]
        result = validator.validate_manifest(make_parent_manifest(translations=refs))
        assert codes(result.errors) == ["MISSING_TRANSLATION_CHECKSUM"]
        assert result.errors[0].path == "/translations/1/checksum"


class TestTranslationStructure:
    """Translation-specific shape checks and business rules."""

    def test_missing_language_and_translation_info(self, validator):
        raw = make_translation_manifest()
        del raw["repository"]["language"]
        del raw["repository"]["translation"]
        result = validator.validate_translation_manifest(raw)
        assert codes(result.errors) == ["MISSING_LANGUAGE", "MISSING_TRANSLATION_INFO"]

    @pytest.mark.parametrize(
        "old,new,total,mismatch",
        [
            (39, 27, 66, False),
            (2, 0, 2, False),
            (1, 0, 2, True),
            (40, 27, 66, True),
            (0, 0, 0, False),
        ],
    )
    def test_book_count_mismatch_iff_sum_differs(self, validator, old, new, total, mismatch):
        raw = make_translation_manifest(books_count=total, old=old, new=new)
        result = validator.validate_translation_manifest(raw)
        assert ("BOOK_COUNT_MISMATCH" in codes(result.errors)) is mismatch

    def test_non_standard_canon_is_warning(self, validator):
        raw = make_translation_manifest(books_count=66, old=40, new=26)
        result = validator.validate_translation_manifest(raw)
        assert result.valid
        assert codes(result.warnings) == ["NON_STANDARD_CANON"]

    def test_standard_canon_has_no_warning(self, validator):
        raw = make_translation_manifest(books_count=66, old=39, new=27)
        assert validator.validate_translation_manifest(raw).warnings == []

    def test_repository_too_large(self):
        validator = ZBRSValidator(SecurityPolicy(max_repository_size=MIB))
        raw = make_translation_manifest()
        raw["technical"]["size_bytes"] = 2 * MIB
        result = validator.validate_translation_manifest(raw)
        assert codes(result.errors) == ["REPOSITORY_TOO_LARGE"]

    def test_unsafe_book_path(self, validator):
        raw = make_translation_manifest(books=[{"path": "/etc/passwd"}])
        result = validator.validate_translation_manifest(raw)
        assert codes(result.errors) == ["UNSAFE_PATH"]
        assert result.errors[0].path == "/content/books/0/path"


# ============================================================================
# Security rules
# ============================================================================


class TestSecurityRules:
    """Checksum requirements and publisher URL checks."""

    def test_missing_checksum_required(self, validator):
        raw = make_translation_manifest(checksum=None)
        result = validator.validate_translation_manifest(raw)
        assert codes(result.errors) == ["MISSING_CHECKSUM"]
        assert result.errors[0].path == "/technical/checksum"

    def test_missing_checksum_allowed_by_policy(self):
        validator = ZBRSValidator(SecurityPolicy(require_checksums=False))
        raw = make_translation_manifest(checksum=None)
        assert validator.validate_translation_manifest(raw).valid

    def test_insecure_publisher_url_is_warning(self, validator):
        raw = make_translation_manifest(publisher_url="http://publisher.example.org")
        result = validator.validate_translation_manifest(raw)
        assert result.valid
        assert codes(result.warnings) == ["INSECURE_URL"]
        assert result.warnings[0].path == "/repository/publisher/url"

    def test_http_publisher_allowed_by_policy(self):
        validator = ZBRSValidator(SecurityPolicy(allow_http=True))
        raw = make_translation_manifest(publisher_url="http://publisher.example.org")
        assert validator.validate_translation_manifest(raw).warnings == []

    def test_blocked_publisher_domain(self):
        validator = ZBRSValidator(SecurityPolicy(blocked_domains=["evil.example"]))
        raw = make_parent_manifest(
            publisher={"name": "Evil", "url": "https://evil.example/bibles"}
        )
        result = validator.validate_parent_manifest(raw)
        assert codes(result.errors) == ["BLOCKED_DOMAIN"]
        assert result.errors[0].path == "/publisher/url"

    def test_malformed_publisher_url(self, validator):
        raw = make_translation_manifest(publisher_url="not a url")
        result = validator.validate_translation_manifest(raw)
        assert codes(result.errors) == ["INVALID_PUBLISHER_URL"]


# ============================================================================
# Books
# ============================================================================


class TestBookValidation:
    """Book files: every defect reported in one pass."""

    def test_valid_book(self, validator):
        assert validator.validate_book(make_book(verses_per_chapter=(3, 2))).valid

    def test_misnumbered_third_chapter(self, validator):
        book = make_book(verses_per_chapter=(1, 1, 1))
        book["chapters"][2]["number"] = 5
        result = validator.validate_book(book)
        assert codes(result.errors) == ["INCORRECT_CHAPTER_NUMBER"]
        assert result.errors[0].path == "/chapters/2/number"

    def test_expected_order(self, validator):
        result = validator.validate_book(make_book(order=2), expected_order=1)
        assert codes(result.errors) == ["INCORRECT_BOOK_ORDER"]
        assert validator.validate_book(make_book(order=2), expected_order=2).valid

    def test_collects_every_defect(self, validator):
        book = make_book(verses_per_chapter=(2, 1))
        book["book"]["chapters_count"] = 3
        book["book"]["verses_count"] = 10
        book["chapters"][0]["verses"][1]["number"] = 7
        book["chapters"][1]["verses"][0]["text"] = "   "
        result = validator.validate_book(book)

        assert codes(result.errors) == [
            "CHAPTER_COUNT_MISMATCH",
            "INCORRECT_VERSE_NUMBER",
            "EMPTY_VERSE_TEXT",
            "VERSE_COUNT_MISMATCH",
        ]
        assert result.errors[1].path == "/chapters/0/verses/1/number"
        assert result.errors[2].path == "/chapters/1/verses/0/text"

    def test_schema_errors_reported(self, validator):
        result = validator.validate_book({"book": {"id": "GEN"}})
        assert result.errors
        assert set(codes(result.errors)) == {"SCHEMA_VALIDATION"}


# ============================================================================
# URLs
# ============================================================================


class TestRepositoryUrl:
    """Protocol and domain rules."""

    def test_https_allowed(self, validator):
        assert validator.validate_repository_url("https://bibles.example.org/kjv").valid

    def test_http_rejected_by_default(self, validator):
        result = validator.validate_repository_url("http://bibles.example.org/kjv")
        assert codes(result.errors) == ["INSECURE_PROTOCOL"]

    def test_http_allowed_by_policy(self):
        validator = ZBRSValidator(SecurityPolicy(allow_http=True))
        assert validator.validate_repository_url("http://bibles.example.org").valid

    def test_unsupported_protocol(self, validator):
        result = validator.validate_repository_url("ftp://bibles.example.org/kjv")
        assert codes(result.errors) == ["INVALID_PROTOCOL"]

    def test_not_a_url(self, validator):
        result = validator.validate_repository_url("bibles/kjv")
        assert codes(result.errors) == ["INVALID_URL"]

    def test_blocked_and_allow_list(self):
        validator = ZBRSValidator(
            SecurityPolicy(
                allowed_domains=["bibles.example.org"],
                blocked_domains=["evil.example"],
            )
        )
        assert codes(
            validator.validate_repository_url("https://evil.example/x").errors
        ) == ["BLOCKED_DOMAIN", "DOMAIN_NOT_ALLOWED"]
        assert codes(
            validator.validate_repository_url("https://other.example/x").errors
        ) == ["DOMAIN_NOT_ALLOWED"]

    def test_file_urls_skip_domain_rules(self, tmp_path):
        validator = ZBRSValidator(SecurityPolicy(allowed_domains=["bibles.example.org"]))
        assert validator.validate_repository_url(tmp_path.as_uri()).valid


# ============================================================================
# Integrity
# ============================================================================


class TestIntegrity:
    """SHA-256 file integrity checks."""

    def test_round_trip(self, validator, tmp_path: Path):
        data = b'{"book": "Genesis"}'
        path = tmp_path / "gen.json"
        path.write_bytes(data)

        check = validator.validate_file_integrity(path, sha256_digest(data))
        assert check.valid
        assert check.actual_checksum == check.expected_checksum

    def test_mutated_byte_fails(self, validator, tmp_path: Path):
        data = bytearray(b'{"book": "Genesis"}')
        expected = sha256_digest(bytes(data))
        data[3] ^= 0x01
        path = tmp_path / "gen.json"
        path.write_bytes(bytes(data))

        assert not validator.validate_file_integrity(path, expected).valid

    def test_file_url_accepted(self, validator, tmp_path: Path):
        path = tmp_path / "gen.json"
        path.write_bytes(b"abc")
        assert validator.validate_file_integrity(path.as_uri(), sha256_digest(b"abc")).valid

    def test_unreadable_file(self, validator, tmp_path: Path):
        check = validator.validate_file_integrity(tmp_path / "missing.json", TECH_CHECKSUM)
        assert not check.valid
        assert check.actual_checksum == ""

    def test_comparison_is_case_sensitive(self, validator):
        digest = sha256_digest(b"abc")
        assert not validator.check_integrity(b"abc", digest.upper(), "x").valid


class TestSafeRelativePath:
    """Paths declared by manifests must stay inside the repository."""

    @pytest.mark.parametrize("path", ["books/1-gen.json", "kjv", "a/b/c.json"])
    def test_safe(self, path):
        assert is_safe_relative_path(path)

    @pytest.mark.parametrize(
        "path",
        ["", "/abs", "\\abs", "C:\\bible", "../up", "books/../../x", "https://x/y"],
    )
    def test_unsafe(self, path):
        assert not is_safe_relative_path(path)
