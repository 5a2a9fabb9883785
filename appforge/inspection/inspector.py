"""
Store-readiness inspection of Android build artifacts.

Flow:
1. Existence check
2. Manifest extraction (bundletool for .aab, aapt for .apk, each falling
   back to the other)
3. Signing verification (apksigner / jarsigner, best effort)
4. Policy evaluation; every violation is collected

The inspector never raises: unexpected faults become an invalid result so the
build worker can always finish the job and release its lock.
"""

import re
from functools import partial
from pathlib import Path

from appforge.config import InspectionConfig, get_config
from appforge.core.errors import ToolingUnavailableError
from appforge.core.logging import get_logger
from appforge.inspection.aapt import AaptExtractor
from appforge.inspection.base import ManifestExtractor, dedupe
from appforge.inspection.bundletool import BundletoolExtractor
from appforge.inspection.runner import ToolRunner, run_tool
from appforge.schemas.validation import ArtifactMetadata, ValidationResult

logger = get_logger(__name__)

ARTIFACT_NOT_FOUND = "Build artifact not found"
TOOLING_UNAVAILABLE = "Unable to inspect build artifact (missing Android tooling: bundletool/aapt)"
VALIDATION_FAILED = "Build artifact validation failed"

_PERMISSION_PREFIX = "android.permission."
_JAR_UNSIGNED = re.compile(r"jar is unsigned", re.IGNORECASE)


class ArtifactInspector:
    """Extracts manifest metadata from a binary and applies store policy."""

    def __init__(
        self,
        config: InspectionConfig | None = None,
        runner: ToolRunner | None = None,
    ) -> None:
        self.config = config or get_config().inspection
        self.runner = runner or partial(
            run_tool,
            timeout=self.config.tool_timeout_seconds,
            max_output_bytes=self.config.max_output_bytes,
        )
        self.bundletool = BundletoolExtractor()
        self.aapt = AaptExtractor()

    def extractors_for(self, path: Path) -> list[ManifestExtractor]:
        """Backends in the order they are tried for this artifact type."""
        if path.suffix.lower() == ".aab":
            return [self.bundletool, self.aapt]
        return [self.aapt, self.bundletool]

    async def inspect(
        self,
        path: str | Path | None,
        expected_package: str,
        previous_version_code: int | None = None,
    ) -> ValidationResult:
        """
        Inspect one artifact.

        Args:
            path: Artifact on disk (.apk or .aab)
            expected_package: Package name the app is registered under
            previous_version_code: Last published version code, if any

        Returns:
            ValidationResult; ``valid`` is True only when no errors were found
        """
        try:
            return await self._inspect(path, expected_package, previous_version_code)
        except Exception as e:
            logger.bind(path=str(path), error=str(e)).exception("artifact_inspection_crashed")
            return ValidationResult.invalid(VALIDATION_FAILED)

    async def _inspect(
        self,
        path: str | Path | None,
        expected_package: str,
        previous_version_code: int | None,
    ) -> ValidationResult:
        raw_path = str(path).strip() if path else ""
        if not raw_path or not Path(raw_path).is_file():
            return ValidationResult.invalid(ARTIFACT_NOT_FOUND)

        artifact = Path(raw_path)
        metadata = await self.extract_metadata(artifact)
        if metadata is None:
            logger.bind(path=raw_path).warning("artifact_inspection_tooling_unavailable")
            return ValidationResult.invalid(TOOLING_UNAVAILABLE, VALIDATION_FAILED)

        errors: list[str] = []
        warnings: list[str] = []

        await self._check_signing(artifact, errors, warnings)
        self._evaluate_policy(metadata, expected_package, previous_version_code, errors, warnings)

        result = ValidationResult(
            valid=not errors,
            errors=errors,
            warnings=warnings,
            metadata=metadata,
        )
        logger.bind(
            path=raw_path,
            valid=result.valid,
            errors=len(errors),
            warnings=len(warnings),
            package=metadata.package_name,
            version_code=metadata.version_code,
        ).info("artifact_inspected")
        return result

    async def extract_metadata(self, path: Path) -> ArtifactMetadata | None:
        """
        Metadata from the first backend whose output parses to something.

        The next backend is only consulted when the previous one is missing,
        fails, prints nothing or prints nothing recognizable. Outputs are
        never merged; when every backend yields empty metadata the last one is
        returned so policy reports the missing fields.
        """
        empty: ArtifactMetadata | None = None
        for extractor in self.extractors_for(path):
            try:
                raw = await extractor.dump(path, self.runner)
            except ToolingUnavailableError as e:
                logger.bind(tool=e.tool, path=str(path)).debug("manifest_tool_missing")
                continue
            if raw is None:
                logger.bind(tool=extractor.tool_name, path=str(path)).debug("manifest_dump_unavailable")
                continue
            metadata = extractor.extract(raw)
            if metadata.is_empty():
                logger.bind(tool=extractor.tool_name, path=str(path)).debug("manifest_dump_unrecognized")
                empty = metadata
                continue
            return metadata
        return empty

    async def _check_signing(self, path: Path, errors: list[str], warnings: list[str]) -> None:
        suffix = path.suffix.lower()
        if suffix == ".apk":
            tool, kind = "apksigner", "APK"
            args = ["apksigner", "verify", "--verbose", "--print-certs", str(path)]
        elif suffix == ".aab":
            tool, kind = "jarsigner", "AAB"
            args = ["jarsigner", "-verify", "-certs", str(path)]
        else:
            warnings.append("Signing check skipped (unknown artifact type)")
            return

        result = await self.runner(args)
        if result.spawn_failed:
            warnings.append(f"Signing check skipped ({tool} not available)")
            return

        # jarsigner exits 0 for unsigned jars and says so on stdout
        if not result.ok or _JAR_UNSIGNED.search(result.stdout):
            errors.append(f"Artifact is not signed ({kind} signature verification failed)")

    def _evaluate_policy(
        self,
        metadata: ArtifactMetadata,
        expected_package: str,
        previous_version_code: int | None,
        errors: list[str],
        warnings: list[str],
    ) -> None:
        package = (metadata.package_name or "").strip()
        if not package:
            errors.append("Unable to read packageName from artifact")
        elif package != expected_package:
            errors.append("Artifact packageName does not match expected packageName")

        if metadata.version_code is None:
            errors.append("Unable to read versionCode from artifact")
        elif previous_version_code is not None and metadata.version_code <= previous_version_code:
            errors.append("versionCode must be incremented compared to previously published version")

        if metadata.target_sdk is None:
            errors.append("Unable to read targetSdkVersion from artifact")
        elif metadata.target_sdk < self.config.min_target_sdk:
            errors.append(f"targetSdkVersion must be >= {self.config.min_target_sdk}")

        if metadata.min_sdk is not None and metadata.min_sdk < self.config.min_sdk_warning:
            warnings.append(f"minSdkVersion is below {self.config.min_sdk_warning}")

        if metadata.debuggable:
            errors.append("Artifact is debuggable")

        sensitive = self._sensitive_permissions()
        flagged = dedupe(
            [p for p in metadata.permissions if p in sensitive or _short_name(p) in sensitive]
        )
        if flagged:
            warnings.append(f"Dangerous permissions detected: {', '.join(flagged)}")

    def _sensitive_permissions(self) -> set[str]:
        names: set[str] = set()
        for permission in self.config.sensitive_permissions:
            names.add(permission)
            names.add(_short_name(permission))
        return names


def _short_name(permission: str) -> str:
    if permission.startswith(_PERMISSION_PREFIX):
        return permission[len(_PERMISSION_PREFIX) :]
    return permission
