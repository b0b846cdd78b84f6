#!/usr/bin/env python3
"""
Sandboxed execution of user scripts that print a feed on stdout.

Scripts must live inside the configured scripts directory; anything that
resolves outside it is rejected before a process is started. Every run is
capped at SCRIPT_TIMEOUT seconds whatever the caller's own deadline.
"""

import asyncio
import os
import sys
from asyncio.subprocess import PIPE
from typing import List, Optional

from author_fix import fix_feed_authors
from config import config, get_logger
from errors import FeedParseError, ScriptError, ScriptSecurityError
from feed_parser import FeedParserAdapter, FeedparserAdapter
from models import ParsedFeed
from sanitizer import sanitize_feed_xml
from telemetry import trace_span

logger = get_logger("scripts")

PYTHON_CANDIDATES = ("python", "python3", "py")
OUTPUT_EXCERPT_LENGTH = 500


def is_windows() -> bool:
    return sys.platform.startswith("win")


def resolve_script_path(scripts_dir: str, script_path: str) -> str:
    """Return the absolute path of `script_path` inside `scripts_dir`.

    Raises:
        ScriptSecurityError: when the path escapes the directory, lexically or via symlinks.
    """
    root = os.path.abspath(scripts_dir)
    full_path = os.path.normpath(os.path.join(root, script_path))
    try:
        relative = os.path.relpath(full_path, root)
    except ValueError:
        # Different drive on Windows
        raise ScriptSecurityError(script_path) from None
    if os.path.isabs(relative) or relative == os.pardir or relative.startswith(os.pardir + os.sep):
        raise ScriptSecurityError(script_path)

    real_root = os.path.realpath(root)
    real_path = os.path.realpath(full_path)
    if os.path.commonpath([real_root, real_path]) != real_root:
        raise ScriptSecurityError(script_path)
    return full_path


class ScriptExecutor:
    """Runs scripts from a fixed directory and parses their stdout as a feed."""

    _python_binary: Optional[str] = None

    def __init__(self, scripts_dir: Optional[str] = None, parser: Optional[FeedParserAdapter] = None,
                 timeout: Optional[float] = None):
        self.scripts_dir = scripts_dir or config.SCRIPTS_DIR
        self.parser = parser or FeedparserAdapter()
        self.timeout = timeout or config.SCRIPT_TIMEOUT

    async def _find_python(self) -> str:
        if ScriptExecutor._python_binary:
            return ScriptExecutor._python_binary
        for candidate in PYTHON_CANDIDATES:
            try:
                proc = await asyncio.create_subprocess_exec(candidate, "--version", stdout=PIPE, stderr=PIPE)
                await asyncio.wait_for(proc.communicate(), timeout=5)
            except (OSError, asyncio.TimeoutError):
                continue
            if proc.returncode == 0:
                ScriptExecutor._python_binary = candidate
                return candidate
        raise ScriptError("Python interpreter not found (tried python, python3, py)")

    async def build_command(self, full_path: str) -> List[str]:
        """Interpreter command line for a script, chosen by file extension."""
        ext = os.path.splitext(full_path)[1].lower()
        if ext == ".py":
            return [await self._find_python(), full_path]
        if ext == ".sh":
            if is_windows():
                raise ScriptError("shell scripts are not supported on Windows")
            return ["bash", full_path]
        if ext == ".ps1":
            if is_windows():
                return ["powershell.exe", "-ExecutionPolicy", "Bypass", "-File", full_path]
            return ["pwsh", "-File", full_path]
        if ext == ".js":
            return ["node", full_path]
        if ext == ".rb":
            return ["ruby", full_path]
        return [full_path]

    async def run(self, script_path: str) -> str:
        """Execute the script and return its stdout."""
        full_path = resolve_script_path(self.scripts_dir, script_path)
        if not os.path.isfile(full_path):
            raise ScriptError(f"script not found: {script_path}")

        cmd = await self.build_command(full_path)
        logger.info(f"Running script {script_path} with {cmd[0]}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=PIPE,
                stderr=PIPE,
                cwd=self.scripts_dir,
            )
        except OSError as e:
            raise ScriptError(f"script execution failed: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            await self._kill(proc)
            raise ScriptError(f"script execution timed out after {self.timeout}s") from None
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

        if proc.returncode != 0:
            raise ScriptError(
                f"script execution failed: exit status {proc.returncode}",
                stderr=stderr.decode("utf-8", "replace").strip(),
                stdout=stdout.decode("utf-8", "replace").strip()[:OUTPUT_EXCERPT_LENGTH],
            )
        return stdout.decode("utf-8", "replace")

    async def _kill(self, proc) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()

    @trace_span(
        "execute_script",
        tracer_name="scripts",
        attr_from_args=lambda self, script_path: {"script.path": script_path},
    )
    async def execute(self, script_path: str) -> ParsedFeed:
        """Run `script_path` and parse its output as RSS/Atom."""
        output = await self.run(script_path)
        sanitized = sanitize_feed_xml(output)
        try:
            feed = await self.parser.parse_string(sanitized)
        except FeedParseError as e:
            raise ScriptError(f"failed to parse script output as feed: {e.details}") from e
        fix_feed_authors(feed, sanitized)
        logger.info(f"Script {script_path} produced {len(feed.items)} items")
        return feed
