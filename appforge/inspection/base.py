"""Abstract base class for manifest extraction backends."""

from abc import ABC, abstractmethod
from pathlib import Path

from appforge.core.errors import ToolingUnavailableError
from appforge.inspection.runner import ToolRunner
from appforge.schemas.validation import ArtifactMetadata


def dedupe(values: list[str]) -> list[str]:
    """Drop empty and repeated values, keeping first-seen order."""
    return list(dict.fromkeys(v for v in values if v))


def to_int(value: str | None) -> int | None:
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


class ManifestExtractor(ABC):
    """A tool that dumps an artifact's manifest and the parser for its output."""

    tool_name: str = "unknown"

    @abstractmethod
    def command(self, path: Path) -> list[str]:
        """Command line that dumps the manifest of ``path``."""
        pass

    @abstractmethod
    def extract(self, raw: str) -> ArtifactMetadata:
        """
        Parse the tool's raw output.

        Args:
            raw: Text printed by the tool

        Returns:
            ArtifactMetadata with whatever fields could be read
        """
        pass

    async def dump(self, path: Path, runner: ToolRunner) -> str | None:
        """
        Run the tool; None when it fails or prints nothing.

        Raises:
            ToolingUnavailableError: The tool could not be spawned
        """
        result = await runner(self.command(path))
        if result.spawn_failed:
            raise ToolingUnavailableError(self.tool_name)
        if not result.ok:
            return None
        output = result.stdout.strip()
        return output or None
