"""Parser for ``aapt dump badging`` output (``key='value'`` attribute text)."""

import re
from pathlib import Path

from appforge.inspection.base import ManifestExtractor, dedupe, to_int
from appforge.schemas.validation import ArtifactMetadata

_PACKAGE_LINE = re.compile(r"^package:.*$", re.MULTILINE)
_NAME = re.compile(r"\bname='([^']+)'")
_VERSION_CODE = re.compile(r"\bversionCode='([^']+)'")
_VERSION_NAME = re.compile(r"\bversionName='([^']+)'")
_MIN_SDK = re.compile(r"\bsdkVersion:'(\d+)'")
_TARGET_SDK = re.compile(r"\btargetSdkVersion:'(\d+)'")
# aapt prints this bare token only when the app is debuggable
_DEBUGGABLE = re.compile(r"\bapplication-debuggable\b")
_PERMISSION = re.compile(r"uses-permission:\s+name='([^']+)'")


def _group(pattern: re.Pattern[str], text: str) -> str | None:
    match = pattern.search(text)
    return match.group(1) if match else None


class AaptExtractor(ManifestExtractor):
    """Badging backend, preferred for APKs."""

    tool_name = "aapt"

    def command(self, path: Path) -> list[str]:
        return ["aapt", "dump", "badging", str(path)]

    def extract(self, raw: str) -> ArtifactMetadata:
        package_line = _PACKAGE_LINE.search(raw)
        line = package_line.group(0) if package_line else ""

        return ArtifactMetadata(
            package_name=_group(_NAME, line),
            version_code=to_int(_group(_VERSION_CODE, line)),
            version_name=_group(_VERSION_NAME, line),
            min_sdk=to_int(_group(_MIN_SDK, raw)),
            target_sdk=to_int(_group(_TARGET_SDK, raw)),
            debuggable=bool(_DEBUGGABLE.search(raw)),
            permissions=dedupe(_PERMISSION.findall(raw)),
        )
