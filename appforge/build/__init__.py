from appforge.build.generator import AndroidProjectGenerator, AppBuildConfig, package_name_for
from appforge.build.remote import GitHubBuildBridge
from appforge.build.toolchain import GradleBuildResult, run_gradle_build

__all__ = [
    "AndroidProjectGenerator",
    "AppBuildConfig",
    "GitHubBuildBridge",
    "GradleBuildResult",
    "package_name_for",
    "run_gradle_build",
]
