"""ZBRS repository pipeline: discovery, validation and import.

- models.py: manifest, book and result data shapes
- policy.py: SecurityPolicy shared by validator and discovery
- validator.py: schema, business-rule and security validation
- discovery.py: index feeds, manifest fetches, downloads, local scans
- importer.py: the import state machine
- service.py: facade wiring the above around one store
"""

from zbrs.repository.discovery import RepositoryDiscoveryService
from zbrs.repository.errors import (
    IntegrityError,
    ManifestKindError,
    NetworkError,
    NotInitializedError,
    ServiceNotInitializedError,
    ZBRSError,
)
from zbrs.repository.importer import RepositoryImporter
from zbrs.repository.models import (
    ImportResult,
    ManifestKind,
    ParentManifest,
    TranslationManifest,
    ValidationIssue,
    ValidationResult,
    decode_manifest,
)
from zbrs.repository.policy import SecurityPolicy
from zbrs.repository.progress import (
    CallbackProgressSink,
    ImportOptions,
    ImportProgress,
    ImportStage,
    ProgressSink,
)
from zbrs.repository.service import RepositoryService
from zbrs.repository.validator import ZBRSValidator

__all__ = [
    "RepositoryDiscoveryService",
    "IntegrityError",
    "ManifestKindError",
    "NetworkError",
    "NotInitializedError",
    "ServiceNotInitializedError",
    "ZBRSError",
    "RepositoryImporter",
    "ImportResult",
    "ManifestKind",
    "ParentManifest",
    "TranslationManifest",
    "ValidationIssue",
    "ValidationResult",
    "decode_manifest",
    "SecurityPolicy",
    "CallbackProgressSink",
    "ImportOptions",
    "ImportProgress",
    "ImportStage",
    "ProgressSink",
    "RepositoryService",
    "ZBRSValidator",
]
