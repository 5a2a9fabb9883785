"""Parser for ``bundletool dump manifest`` output (XML element attributes)."""

import re
from pathlib import Path

from appforge.inspection.base import ManifestExtractor, dedupe, to_int
from appforge.schemas.validation import ArtifactMetadata

_FLAGS = re.IGNORECASE
_PACKAGE = re.compile(r'<manifest[^>]*\bpackage\s*=\s*"([^"]+)"', _FLAGS)
_VERSION_CODE = re.compile(r'<manifest[^>]*\bandroid:versionCode\s*=\s*"(\d+)"', _FLAGS)
_VERSION_NAME = re.compile(r'<manifest[^>]*\bandroid:versionName\s*=\s*"([^"]+)"', _FLAGS)
_MIN_SDK = re.compile(r'<uses-sdk[^>]*\bandroid:minSdkVersion\s*=\s*"(\d+)"', _FLAGS)
_TARGET_SDK = re.compile(r'<uses-sdk[^>]*\bandroid:targetSdkVersion\s*=\s*"(\d+)"', _FLAGS)
_DEBUGGABLE = re.compile(r'<application[^>]*\bandroid:debuggable\s*=\s*"(true|false)"', _FLAGS)
_PERMISSION = re.compile(r'<uses-permission[^>]*\bandroid:name\s*=\s*"([^"]+)"', _FLAGS)


def _group(pattern: re.Pattern[str], text: str) -> str | None:
    match = pattern.search(text)
    return match.group(1) if match else None


class BundletoolExtractor(ManifestExtractor):
    """Bundle backend, preferred for AABs."""

    tool_name = "bundletool"

    def command(self, path: Path) -> list[str]:
        return ["bundletool", "dump", "manifest", "--bundle", str(path), "--xpath", "/manifest"]

    def extract(self, raw: str) -> ArtifactMetadata:
        debuggable = _group(_DEBUGGABLE, raw)

        return ArtifactMetadata(
            package_name=_group(_PACKAGE, raw),
            version_code=to_int(_group(_VERSION_CODE, raw)),
            version_name=_group(_VERSION_NAME, raw),
            min_sdk=to_int(_group(_MIN_SDK, raw)),
            target_sdk=to_int(_group(_TARGET_SDK, raw)),
            debuggable=(debuggable or "").lower() == "true",
            permissions=dedupe(_PERMISSION.findall(raw)),
        )
