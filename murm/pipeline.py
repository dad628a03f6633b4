"""Runs the external pipeline command inside a feature worktree.

The pipeline is opaque: it gets the slug on its command line, runs with the
worktree as its working directory, and reports through its exit code only.
All output is appended to a per-feature log with timestamps and stream tags.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from murm.log import verbose_log
from murm.state import utc_now_iso

LOG_FILE_NAME = "pipeline.log"
SLUG_PLACEHOLDER = "{slug}"
READER_JOIN_TIMEOUT_SECONDS = 5

# Environment variables to strip from pipeline child processes
# CLAUDECODE marks a nested Claude Code session; the pipeline must be able to
# start its own.
STRIPPED_ENV_VARS = ["CLAUDECODE"]


@dataclass
class PipelineResult:
    slug: str
    success: bool
    exit_code: Optional[int] = None
    log_path: Optional[str] = None
    error: Optional[str] = None
    timed_out: bool = False
    duration_seconds: float = 0.0
    # monotonic clock reading when the result was produced
    finished_at: float = field(default_factory=time.monotonic)


def build_pipeline_command(template: str, slug: str) -> list[str]:
    """Expand the configured command template for one feature.

    {slug} is substituted wherever it appears; a template without the
    placeholder gets the slug appended as the last argument.
    """
    parts = shlex.split(template)
    if not any(SLUG_PLACEHOLDER in part for part in parts):
        parts.append(slug)
    return [part.replace(SLUG_PLACEHOLDER, slug) for part in parts]


def build_child_env() -> dict[str, str]:
    env = os.environ.copy()
    for var in STRIPPED_ENV_VARS:
        env.pop(var, None)
    return env


class PipelineLog:
    """Append-only feature log, safe to write from the stdout and stderr readers."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def write(self, message: str) -> None:
        with self._lock:
            with open(self.path, "a") as f:
                f.write(f"[{utc_now_iso()}] {message}\n")

    def write_stream_line(self, stream: str, line: str) -> None:
        if not line.strip():
            return
        with self._lock:
            with open(self.path, "a") as f:
                f.write(f"[{utc_now_iso()}] [{stream}] {line.rstrip()}\n")


def stream_output(pipe, stream: str, pipeline_log: PipelineLog, slug: str) -> None:
    """Copy a subprocess pipe into the feature log line by line."""
    try:
        for line in iter(pipe.readline, ""):
            if line:
                pipeline_log.write_stream_line(stream, line)
                verbose_log(line.rstrip(), f"{slug} {stream}")
    except (OSError, ValueError) as e:
        verbose_log(f"Error streaming {stream} for {slug}: {e}", "ERROR")


class PipelineRunner:
    """Spawns one pipeline process per call and waits for it with a timeout."""

    def __init__(self, command_template: str, timeout_seconds: float, root: Path = Path(".")):
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds
        self.root = Path(root)

    def log_path_for(self, worktree_path: str) -> str:
        return str(Path(worktree_path) / LOG_FILE_NAME)

    def run(
        self,
        slug: str,
        worktree_path: str,
        on_spawn: Optional[Callable[[subprocess.Popen], None]] = None,
    ) -> PipelineResult:
        """Run the pipeline for slug and return its result.

        On timeout the result has timed_out=True and the process is left
        running; the caller owns terminating it (it was handed over through
        on_spawn).
        """
        log_path = self.log_path_for(worktree_path)
        cwd = self.root / worktree_path
        pipeline_log = PipelineLog(self.root / log_path)
        cmd = build_pipeline_command(self.command_template, slug)

        pipeline_log.write(f"Pipeline started for {slug}")
        pipeline_log.write(f"Command: {shlex.join(cmd)}")
        pipeline_log.write(f"Working directory: {worktree_path}")

        start_time = time.time()
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                cwd=str(cwd),
                env=build_child_env(),
            )
        except OSError as e:
            pipeline_log.write(f"Pipeline error: {e}")
            return PipelineResult(
                slug=slug,
                success=False,
                log_path=log_path,
                error=str(e),
                duration_seconds=time.time() - start_time,
            )

        verbose_log(f"Spawned pipeline PID {process.pid} for {slug}", "PIPELINE")
        if on_spawn:
            on_spawn(process)

        readers = [
            threading.Thread(
                target=stream_output,
                args=(process.stdout, "stdout", pipeline_log, slug),
                daemon=True,
            ),
            threading.Thread(
                target=stream_output,
                args=(process.stderr, "stderr", pipeline_log, slug),
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        try:
            exit_code = process.wait(timeout=self.timeout_seconds)
        except subprocess.TimeoutExpired:
            minutes = self.timeout_seconds / 60
            pipeline_log.write(f"Pipeline timed out after {minutes:g} minutes")
            return PipelineResult(
                slug=slug,
                success=False,
                log_path=log_path,
                error=f"Pipeline timed out after {minutes:g} minutes",
                timed_out=True,
                duration_seconds=time.time() - start_time,
            )

        for reader in readers:
            reader.join(timeout=READER_JOIN_TIMEOUT_SECONDS)

        pipeline_log.write(f"Pipeline completed with exit code {exit_code}")
        return PipelineResult(
            slug=slug,
            success=exit_code == 0,
            exit_code=exit_code,
            log_path=log_path,
            error=None if exit_code == 0 else f"Pipeline exited with code {exit_code}",
            duration_seconds=time.time() - start_time,
        )
