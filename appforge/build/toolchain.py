"""Gradle builds inside the Android builder Docker image."""

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path

from appforge.core.logging import get_logger

logger = get_logger(__name__)

APK_OUTPUT = Path("app/build/outputs/apk/release/app-release.apk")
AAB_OUTPUT = Path("app/build/outputs/bundle/release/app-release.aab")


@dataclass
class GradleBuildResult:
    ok: bool
    output: str

    def apk_path(self, project_dir: Path) -> Path:
        return project_dir / APK_OUTPUT

    def aab_path(self, project_dir: Path) -> Path:
        return project_dir / AAB_OUTPUT


def docker_gradle_command(image: str, project_dir: Path, task: str) -> list[str]:
    return [
        "docker",
        "run",
        "--rm",
        "--user",
        "root",
        "-v",
        f"{project_dir.resolve()}:/work",
        "-w",
        "/work",
        image,
        "bash",
        "-lc",
        f"gradle --no-daemon {task}",
    ]


async def run_gradle_build(
    image: str,
    project_dir: Path,
    task: str = "assembleRelease bundleRelease",
    timeout: float = 20 * 60,
) -> GradleBuildResult:
    """
    Compile the project with Gradle in Docker.

    Never raises for tool problems: a missing docker binary, a timeout or a
    non-zero exit all come back as ``ok=False`` with the reason appended to
    the output.
    """
    if shutil.which("docker") is None:
        return GradleBuildResult(ok=False, output="\n[error] docker is not available\n")

    args = docker_gradle_command(image, project_dir, task)
    logger.bind(image=image, task=task, project=str(project_dir)).info("gradle_build_started")

    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        return GradleBuildResult(ok=False, output=f"\n[error] {e}\n")

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        proc.kill()
        stdout, _ = await proc.communicate()
        output = (stdout or b"").decode("utf-8", errors="replace")
        logger.bind(timeout=timeout).warning("gradle_build_timed_out")
        return GradleBuildResult(ok=False, output=output + f"\n[timeout] exceeded {int(timeout)}s\n")

    output = stdout.decode("utf-8", errors="replace")
    ok = proc.returncode == 0
    logger.bind(returncode=proc.returncode, ok=ok).info("gradle_build_finished")
    return GradleBuildResult(ok=ok, output=output)
