"""Firmware compile and upload through ``arduino-cli``."""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_FQBN = "arduino:avr:uno"
ARDUINO_CLI = "arduino-cli"

ProgressCallback = Callable[[str, bool], None]


@dataclass(slots=True)
class UploadResult:
    """Outcome of a compile + upload run."""

    success: bool
    output: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"success": self.success, "output": "\n".join(self.output), "error": self.error}


def is_error_line(line: str) -> bool:
    """Tool output that mentions an error or failure is reported as an error."""
    lowered = line.lower()
    return "error" in lowered or "failed" in lowered


async def _run(
    args: Sequence[str],
    output: List[str],
    progress: Optional[ProgressCallback],
) -> int:
    logger.debug("Running %s", " ".join(args))
    process = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    assert process.stdout is not None
    while True:
        raw = await process.stdout.readline()
        if not raw:
            break
        line = raw.decode("utf-8", errors="replace").rstrip()
        if not line:
            continue
        output.append(line)
        if progress is not None:
            progress(line, is_error_line(line))
    return await process.wait()


async def upload_firmware(
    sketch_path: str,
    port: str,
    fqbn: str = DEFAULT_FQBN,
    progress: Optional[ProgressCallback] = None,
    cli: str = ARDUINO_CLI,
) -> UploadResult:
    """Compile ``sketch_path`` and upload it to the board on ``port``.

    Args:
        sketch_path: Path of the sketch directory or ``.ino`` file
        port: Serial port the board is attached to
        fqbn: Fully qualified board name
        progress: Called with each output line and whether it looks like an error
        cli: arduino-cli executable

    Returns:
        UploadResult with the collected tool output
    """
    if shutil.which(cli) is None:
        message = f"{cli} is not installed or not in PATH"
        logger.error(message)
        return UploadResult(success=False, error=message)

    output: List[str] = []
    logger.info("Uploading firmware to %s (%s)", port, fqbn)
    with tempfile.TemporaryDirectory(prefix="ardubridge-build-") as build_dir:
        steps = (
            ("Compilation", [cli, "compile", "--fqbn", fqbn, "--build-path", build_dir, sketch_path]),
            ("Upload", [cli, "upload", "-p", port, "--fqbn", fqbn, "--input-dir", build_dir]),
        )
        for label, args in steps:
            try:
                code = await _run(args, output, progress)
            except OSError as exc:
                logger.error("%s failed to start: %s", label, exc)
                return UploadResult(success=False, output=output, error=str(exc))
            if code != 0:
                message = f"{label} failed with exit code {code}"
                logger.error(message)
                return UploadResult(success=False, output=output, error=message)

    logger.info("Firmware uploaded successfully to %s", port)
    return UploadResult(success=True, output=output)
