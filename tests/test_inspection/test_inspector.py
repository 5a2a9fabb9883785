"""Tests for ArtifactInspector policy evaluation with scripted tools."""

from pathlib import Path

import pytest

from appforge.config import InspectionConfig
from appforge.core.errors import ToolingUnavailableError
from appforge.inspection.aapt import AaptExtractor
from appforge.inspection.inspector import (
    ARTIFACT_NOT_FOUND,
    TOOLING_UNAVAILABLE,
    VALIDATION_FAILED,
    ArtifactInspector,
)
from appforge.inspection.runner import ToolResult

pytestmark = pytest.mark.asyncio


def badging(
    package: str = "com.appforge.demo",
    version_code: int = 5,
    min_sdk: int = 24,
    target_sdk: int | None = 34,
    permissions: tuple[str, ...] = ("android.permission.INTERNET",),
    debuggable: bool = False,
) -> str:
    lines = [f"package: name='{package}' versionCode='{version_code}' versionName='1.0'"]
    lines.append(f"sdkVersion:'{min_sdk}'")
    if target_sdk is not None:
        lines.append(f"targetSdkVersion:'{target_sdk}'")
    lines.extend(f"uses-permission: name='{p}'" for p in permissions)
    if debuggable:
        lines.append("application-debuggable")
    return "\n".join(lines)


def manifest(package: str = "com.appforge.demo", version_code: int = 5) -> str:
    return (
        f'<manifest android:versionCode="{version_code}" package="{package}">'
        '<uses-sdk android:minSdkVersion="24" android:targetSdkVersion="34"/></manifest>'
    )


SIGNED = ToolResult(ok=True, stdout="Verifies\nVerified using v2 scheme (APK Signature Scheme v2): true")
JAR_VERIFIED = ToolResult(ok=True, stdout="jar verified.")


@pytest.fixture
def apk(tmp_path: Path) -> Path:
    path = tmp_path / "app-release.apk"
    path.write_bytes(b"PK\x03\x04")
    return path


@pytest.fixture
def aab(tmp_path: Path) -> Path:
    path = tmp_path / "app-release.aab"
    path.write_bytes(b"PK\x03\x04")
    return path


@pytest.fixture
def inspector_with(fake_tool_runner):
    """Build an inspector whose tools print the given results."""

    def _build(outputs: dict[str, ToolResult]):
        runner = fake_tool_runner(outputs)
        return ArtifactInspector(InspectionConfig({}), runner=runner), runner

    return _build


class TestArtifactPresence:
    """Tests for the existence check."""

    async def test_missing_artifact(self, tmp_path: Path, inspector_with):
        inspector, runner = inspector_with({})
        result = await inspector.inspect(tmp_path / "nope.apk", "com.appforge.demo")

        assert result.valid is False
        assert result.errors == [ARTIFACT_NOT_FOUND]
        assert runner.calls == []

    async def test_empty_path(self, inspector_with):
        inspector, _ = inspector_with({})
        result = await inspector.inspect(None, "com.appforge.demo")
        assert result.errors == [ARTIFACT_NOT_FOUND]


class TestBackendSelection:
    """Tests for extractor ordering and fallback."""

    async def test_no_tooling(self, apk: Path, inspector_with):
        """Neither backend available is an invalid verdict, not an exception."""
        inspector, _ = inspector_with({})
        result = await inspector.inspect(apk, "com.appforge.demo")

        assert result.valid is False
        assert TOOLING_UNAVAILABLE in result.errors
        assert VALIDATION_FAILED in result.errors

    async def test_apk_prefers_aapt(self, apk: Path, inspector_with):
        inspector, runner = inspector_with(
            {
                "aapt": ToolResult(ok=True, stdout=badging()),
                "bundletool": ToolResult(ok=True, stdout=manifest(package="com.other")),
                "apksigner": SIGNED,
            }
        )
        result = await inspector.inspect(apk, "com.appforge.demo")

        assert result.valid is True
        assert result.metadata.package_name == "com.appforge.demo"
        assert not runner.called("bundletool")

    async def test_falls_back_when_primary_output_is_unrecognized(self, apk: Path, inspector_with):
        """Output that parses to nothing counts as no output."""
        inspector, runner = inspector_with(
            {
                "aapt": ToolResult(ok=True, stdout="W/ziparchive: Unable to open 'AndroidManifest.xml'\n"),
                "bundletool": ToolResult(ok=True, stdout=manifest()),
                "apksigner": SIGNED,
            }
        )
        result = await inspector.inspect(apk, "com.appforge.demo")

        assert runner.called("bundletool")
        assert result.metadata.package_name == "com.appforge.demo"
        assert result.metadata.version_code == 5

    async def test_all_output_unrecognized(self, apk: Path, inspector_with):
        inspector, _ = inspector_with(
            {
                "aapt": ToolResult(ok=True, stdout="garbage"),
                "bundletool": ToolResult(ok=True, stdout="<nothing/>"),
                "apksigner": SIGNED,
            }
        )
        result = await inspector.inspect(apk, "com.appforge.demo")

        assert not result.valid
        assert result.metadata is not None
        assert result.metadata.is_empty()

    async def test_aab_prefers_bundletool(self, aab: Path, inspector_with):
        inspector, runner = inspector_with(
            {
                "aapt": ToolResult(ok=True, stdout=badging(package="com.other")),
                "bundletool": ToolResult(ok=True, stdout=manifest()),
                "jarsigner": JAR_VERIFIED,
            }
        )
        result = await inspector.inspect(aab, "com.appforge.demo")

        assert result.valid is True
        assert result.metadata.package_name == "com.appforge.demo"
        assert not runner.called("aapt")

    async def test_falls_back_when_primary_missing(self, aab: Path, inspector_with):
        """An .aab is parsed by aapt when bundletool cannot run."""
        inspector, _ = inspector_with(
            {"aapt": ToolResult(ok=True, stdout=badging()), "jarsigner": JAR_VERIFIED}
        )
        result = await inspector.inspect(aab, "com.appforge.demo")

        assert result.valid is True
        assert result.metadata.version_code == 5

    async def test_falls_back_when_primary_prints_nothing(self, apk: Path, inspector_with):
        inspector, _ = inspector_with(
            {
                "aapt": ToolResult(ok=True, stdout="   \n"),
                "bundletool": ToolResult(ok=True, stdout=manifest()),
                "apksigner": SIGNED,
            }
        )
        result = await inspector.inspect(apk, "com.appforge.demo")
        assert result.metadata.package_name == "com.appforge.demo"

    async def test_primary_output_is_not_merged(self, apk: Path, inspector_with):
        """Fields missing from the primary output are not filled from the fallback."""
        inspector, runner = inspector_with(
            {
                "aapt": ToolResult(ok=True, stdout=badging(target_sdk=None)),
                "bundletool": ToolResult(ok=True, stdout=manifest()),
                "apksigner": SIGNED,
            }
        )
        result = await inspector.inspect(apk, "com.appforge.demo")

        assert result.metadata.target_sdk is None
        assert "Unable to read targetSdkVersion from artifact" in result.errors
        assert not runner.called("bundletool")

    async def test_missing_tool_is_distinguished(self, apk: Path, fake_tool_runner):
        """A backend that cannot be spawned raises ToolingUnavailableError from dump."""
        runner = fake_tool_runner({})
        with pytest.raises(ToolingUnavailableError) as exc_info:
            await AaptExtractor().dump(apk, runner)
        assert exc_info.value.tool == "aapt"


class TestSigning:
    """Tests for signature verification."""

    async def test_signer_missing_is_warning(self, apk: Path, inspector_with):
        inspector, _ = inspector_with({"aapt": ToolResult(ok=True, stdout=badging())})
        result = await inspector.inspect(apk, "com.appforge.demo")

        assert result.valid is True
        assert "Signing check skipped (apksigner not available)" in result.warnings

    async def test_verification_failure_is_error(self, apk: Path, inspector_with):
        inspector, _ = inspector_with(
            {
                "aapt": ToolResult(ok=True, stdout=badging()),
                "apksigner": ToolResult(ok=False, stderr="DOES NOT VERIFY", returncode=1),
            }
        )
        result = await inspector.inspect(apk, "com.appforge.demo")

        assert result.valid is False
        assert any("not signed" in e for e in result.errors)

    async def test_unsigned_jar_is_error(self, aab: Path, inspector_with):
        """jarsigner exits 0 for unsigned bundles; its message still fails the check."""
        inspector, _ = inspector_with(
            {
                "bundletool": ToolResult(ok=True, stdout=manifest()),
                "jarsigner": ToolResult(ok=True, stdout="jar is unsigned."),
            }
        )
        result = await inspector.inspect(aab, "com.appforge.demo")
        assert result.valid is False

    async def test_unknown_type_is_warning(self, tmp_path: Path, inspector_with):
        artifact = tmp_path / "app.zip"
        artifact.write_bytes(b"PK")
        inspector, _ = inspector_with({"aapt": ToolResult(ok=True, stdout=badging())})
        result = await inspector.inspect(artifact, "com.appforge.demo")

        assert result.valid is True
        assert "Signing check skipped (unknown artifact type)" in result.warnings


class TestPolicy:
    """Tests for store policy rules."""

    @pytest.fixture(autouse=True)
    def _bind_inspector(self, inspector_with):
        self.inspector_with = inspector_with

    async def inspect(self, apk: Path, expected: str = "com.appforge.demo", previous=None, **kwargs):
        inspector, _ = self.inspector_with(
            {"aapt": ToolResult(ok=True, stdout=badging(**kwargs)), "apksigner": SIGNED}
        )
        return await inspector.inspect(apk, expected, previous)

    async def test_compliant_artifact(self, apk: Path):
        result = await self.inspect(apk)

        assert result.valid is True
        assert result.errors == []
        assert result.warnings == []

    async def test_package_mismatch(self, apk: Path):
        result = await self.inspect(apk, expected="com.appforge.other")
        assert "Artifact packageName does not match expected packageName" in result.errors

    async def test_version_code_must_increase(self, apk: Path):
        """Equal to the previous version code is rejected, greater is accepted."""
        same = await self.inspect(apk, previous=5, version_code=5)
        higher = await self.inspect(apk, previous=4, version_code=5)

        assert "versionCode must be incremented compared to previously published version" in same.errors
        assert higher.valid is True

    async def test_target_sdk_floor(self, apk: Path):
        low = await self.inspect(apk, target_sdk=32)
        floor = await self.inspect(apk, target_sdk=33)

        assert "targetSdkVersion must be >= 33" in low.errors
        assert floor.valid is True

    async def test_low_min_sdk_is_warning(self, apk: Path):
        result = await self.inspect(apk, min_sdk=19)

        assert result.valid is True
        assert "minSdkVersion is below 21" in result.warnings

    async def test_debuggable_is_error(self, apk: Path):
        result = await self.inspect(apk, debuggable=True)
        assert "Artifact is debuggable" in result.errors

    async def test_sensitive_permissions_warn(self, apk: Path):
        """Full and short permission names are both flagged; validity is unaffected."""
        result = await self.inspect(
            apk,
            permissions=("android.permission.INTERNET", "android.permission.READ_SMS", "READ_CONTACTS"),
        )

        assert result.valid is True
        assert result.warnings == [
            "Dangerous permissions detected: android.permission.READ_SMS, READ_CONTACTS"
        ]

    async def test_errors_accumulate(self, apk: Path):
        """Every violation is reported, not just the first."""
        result = await self.inspect(
            apk, expected="com.appforge.other", previous=9, target_sdk=30, debuggable=True
        )
        assert len(result.errors) == 4


class TestRobustness:
    """Tests for the never-raise contract."""

    async def test_runner_crash_becomes_invalid(self, apk: Path):
        async def exploding_runner(args: list[str]) -> ToolResult:
            raise RuntimeError("boom")

        inspector = ArtifactInspector(InspectionConfig({}), runner=exploding_runner)
        result = await inspector.inspect(apk, "com.appforge.demo")

        assert result.valid is False
        assert result.errors == [VALIDATION_FAILED]
