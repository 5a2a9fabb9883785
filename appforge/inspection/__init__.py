from appforge.inspection.aapt import AaptExtractor
from appforge.inspection.base import ManifestExtractor
from appforge.inspection.bundletool import BundletoolExtractor
from appforge.inspection.inspector import ArtifactInspector
from appforge.inspection.runner import ToolResult, ToolRunner, run_tool

__all__ = [
    "AaptExtractor",
    "ArtifactInspector",
    "BundletoolExtractor",
    "ManifestExtractor",
    "ToolResult",
    "ToolRunner",
    "run_tool",
]
