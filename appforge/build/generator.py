"""
Android wrapper project generation.

Copies the template tree and substitutes placeholders with per-file-type
escaping:
- XML resources: XML entity escaping
- Kotlin sources: Kotlin string-literal escaping
- Everything else (Gradle, ProGuard): raw values

Feature flags map to ``__FEATURE_<FLAG>__`` placeholders. Every flag in the
app configuration must have exactly one placeholder in the template and every
feature placeholder must receive a value.
"""

import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from appforge.core.errors import BuildConfigurationError
from appforge.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TEMPLATE_DIR = Path(__file__).parent / "templates" / "android"
DEFAULT_COLOR = "#2563EB"
PACKAGE_PATH_DIR = "__PACKAGE_PATH__"

_HEX_COLOR = re.compile(r"^#[0-9a-fA-F]{6}([0-9a-fA-F]{2})?$")
_FEATURE_PLACEHOLDER = re.compile(r"__FEATURE_([A-Z0-9_]+?)__")
_TEXT_SUFFIXES = {".xml", ".kt", ".java", ".gradle", ".pro", ".properties", ".kts", ".json"}


@dataclass
class AppBuildConfig:
    """Everything the generator needs to produce one project tree."""

    app_id: str
    app_name: str
    package_name: str
    website_url: str
    version_code: int
    theme_color: str = DEFAULT_COLOR
    features: dict[str, bool] = field(default_factory=dict)
    icon_glyph: str | None = None


def escape_xml(value: str) -> str:
    return (
        value.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def escape_kotlin_string(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("$", "\\$")
        .replace("\r", "\\r")
        .replace("\n", "\\n")
    )


def sanitize_hex_color(value: str | None) -> str:
    candidate = (value or "").strip()
    return candidate if _HEX_COLOR.match(candidate) else DEFAULT_COLOR


def package_name_for(app_id: str, prefix: str = "com.appforge") -> str:
    """Derive a valid Java package name from an app id."""
    suffix = re.sub(r"[^a-z0-9]", "", app_id, flags=re.IGNORECASE)[:8].lower() or "app"
    # Java package segments cannot start with a digit
    if suffix[0].isdigit():
        suffix = "a" + suffix[:7]
    return f"{prefix}.{suffix}"


def feature_placeholder(flag: str) -> str:
    """``pull_to_refresh`` / ``pullToRefresh`` -> ``__FEATURE_PULL_TO_REFRESH__``."""
    snake = re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", flag)
    normalized = re.sub(r"[^A-Za-z0-9]+", "_", snake).strip("_").upper()
    return f"__FEATURE_{normalized}__"


class AndroidProjectGenerator:
    """Produces a ready-to-compile Android project from the template."""

    def __init__(self, template_dir: Path | str | None = None) -> None:
        self.template_dir = Path(template_dir) if template_dir else DEFAULT_TEMPLATE_DIR

    def template_feature_placeholders(self) -> set[str]:
        """All ``__FEATURE_*__`` placeholders present in the template."""
        found: set[str] = set()
        for path in self._text_files(self.template_dir):
            for match in _FEATURE_PLACEHOLDER.finditer(path.read_text(encoding="utf-8")):
                found.add(match.group(0))
        return found

    def feature_replacements(self, features: dict[str, bool]) -> dict[str, str]:
        """
        Map each flag to its placeholder.

        Raises:
            BuildConfigurationError: A flag has no placeholder, two flags share
                one, or a template placeholder has no flag value
        """
        available = self.template_feature_placeholders()
        replacements: dict[str, str] = {}
        owners: dict[str, str] = {}

        for flag, enabled in features.items():
            placeholder = feature_placeholder(flag)
            if placeholder not in available:
                raise BuildConfigurationError(f"Feature flag '{flag}' has no placeholder in the template")
            if placeholder in owners:
                raise BuildConfigurationError(
                    f"Feature flags '{owners[placeholder]}' and '{flag}' map to the same placeholder"
                )
            owners[placeholder] = flag
            replacements[placeholder] = "true" if enabled else "false"

        missing = sorted(available - replacements.keys())
        if missing:
            raise BuildConfigurationError(f"No value for feature placeholders: {', '.join(missing)}")

        return replacements

    def generate(self, config: AppBuildConfig, work_dir: Path) -> Path:
        """
        Write the project tree for ``config`` under ``work_dir``.

        Returns:
            Path of the generated project directory
        """
        if not self.template_dir.is_dir():
            raise BuildConfigurationError(f"Android template not found at {self.template_dir}")
        if config.version_code <= 0:
            raise BuildConfigurationError("versionCode must be a positive integer")

        features = self.feature_replacements(config.features)

        project_dir = work_dir / re.sub(r"[^a-z0-9_.-]+", "-", config.app_id, flags=re.IGNORECASE)
        if project_dir.exists():
            shutil.rmtree(project_dir)
        shutil.copytree(self.template_dir, project_dir)

        package_path = Path(*config.package_name.split("."))
        self._move_package_dirs(project_dir, package_path)

        color = sanitize_hex_color(config.theme_color)
        common = {
            "__PACKAGE_NAME__": config.package_name,
            "__PACKAGE_PATH__": package_path.as_posix(),
            "__VERSION_CODE__": str(config.version_code),
            **features,
        }
        text_values = {
            "__APP_NAME__": config.app_name,
            "__START_URL__": config.website_url,
            "__PRIMARY_COLOR__": color,
            "__ICON_GLYPH__": config.icon_glyph or "",
        }

        for path in self._text_files(project_dir):
            suffix = path.suffix.lower()
            if suffix == ".xml":
                escaped = {k: escape_xml(v) for k, v in text_values.items()}
            elif suffix in (".kt", ".java"):
                escaped = {k: escape_kotlin_string(v) for k, v in text_values.items()}
            else:
                escaped = dict(text_values)
            self._replace_in_file(path, {**common, **escaped})

        logger.bind(
            app_id=config.app_id,
            package=config.package_name,
            version_code=config.version_code,
        ).info("android_project_generated")
        return project_dir

    @staticmethod
    def _move_package_dirs(project_dir: Path, package_path: Path) -> None:
        for placeholder_dir in sorted(project_dir.rglob(PACKAGE_PATH_DIR)):
            if not placeholder_dir.is_dir():
                continue
            target = placeholder_dir.parent / package_path
            target.mkdir(parents=True, exist_ok=True)
            for child in sorted(placeholder_dir.iterdir()):
                shutil.move(str(child), str(target / child.name))
            placeholder_dir.rmdir()

    @staticmethod
    def _text_files(root: Path) -> list[Path]:
        return sorted(p for p in root.rglob("*") if p.is_file() and p.suffix.lower() in _TEXT_SUFFIXES)

    @staticmethod
    def _replace_in_file(path: Path, replacements: dict[str, str]) -> None:
        if not replacements:
            return
        content = path.read_text(encoding="utf-8")
        # One pass, so substituted values are never scanned for placeholders again
        pattern = re.compile("|".join(re.escape(key) for key in sorted(replacements, key=len, reverse=True)))
        updated = pattern.sub(lambda m: replacements[m.group(0)], content)
        if updated != content:
            path.write_text(updated, encoding="utf-8")
