"""Pydantic schemas for artifact inspection results."""

from pydantic import BaseModel, Field


class ArtifactMetadata(BaseModel):
    """Manifest metadata normalized from either inspection backend."""

    package_name: str | None = None
    version_code: int | None = None
    version_name: str | None = None
    min_sdk: int | None = None
    target_sdk: int | None = None
    debuggable: bool = False
    permissions: list[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        """True when nothing useful was parsed from the tool output."""
        return self.package_name is None and self.version_code is None and self.target_sdk is None


class ValidationResult(BaseModel):
    """Store-readiness verdict for one artifact. Warnings never affect validity."""

    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    metadata: ArtifactMetadata | None = None

    @classmethod
    def invalid(cls, *errors: str) -> "ValidationResult":
        return cls(valid=False, errors=list(errors))
