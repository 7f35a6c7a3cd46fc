"""Security policy shared by the validator and discovery service."""

from __future__ import annotations

from typing import Any, List

from pydantic import BaseModel, ConfigDict, Field

MIB = 1024 * 1024


class SecurityPolicy(BaseModel):
    """Process-wide security configuration. Immutable once built."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    allow_http: bool = Field(False, description="Permit plain-HTTP repositories")
    max_repository_size: int = Field(
        1024 * MIB, ge=0, description="Largest declared repository size in bytes"
    )
    max_file_size: int = Field(
        100 * MIB, ge=0, description="Largest single downloaded file in bytes"
    )
    allowed_domains: List[str] = Field(
        default_factory=list, description="If non-empty, only these hosts are allowed"
    )
    blocked_domains: List[str] = Field(
        default_factory=list, description="Hosts that are always rejected"
    )
    require_checksums: bool = Field(
        True, description="Manifests must declare content checksums"
    )

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SecurityPolicy":
        """Build a policy from a config block; missing keys take defaults."""
        return cls.model_validate(data or {})

    def is_blocked(self, host: str) -> bool:
        return host.lower() in {d.lower() for d in self.blocked_domains}

    def is_allowed(self, host: str) -> bool:
        if not self.allowed_domains:
            return True
        return host.lower() in {d.lower() for d in self.allowed_domains}
