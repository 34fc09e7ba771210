"""Local ``claude`` command-line executor."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
from collections.abc import AsyncIterator, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..errors import BackendInvocationError, BackendTimeout, QuotaExhaustedError
from ..models import (
    BackendInvocation,
    BackendOutput,
    BackendOutputEvent,
    BackendUsage,
    ErrorEvent,
    ResultEvent,
    TextEvent,
)
from .base import FINISH_REASONS, BackendExecutor, Deadline, is_quota_message, timeout_message

logger = logging.getLogger(__name__)

STREAM_LINE_LIMIT = 16 * 1024 * 1024

_SESSION = re.compile(r"Session ID:\s*([a-f0-9-]+)", re.IGNORECASE)
_TOKENS = re.compile(r"(\d+) prompt \+ (\d+) completion = (\d+) tokens", re.IGNORECASE)


@contextmanager
def prompt_file(prompt: str) -> Iterator[Path]:
    """Transient file holding the rendered prompt; removed on every exit path."""
    fd, name = tempfile.mkstemp(prefix="claude_prompt_", suffix=".txt")
    path = Path(name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(prompt)
        yield path
    finally:
        path.unlink(missing_ok=True)


async def terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()


def parse_payload(stdout: str) -> dict[str, Any] | None:
    """Parse the single JSON result object; tolerate leading log lines."""
    text = stdout.strip()
    if not text:
        return None
    try:
        data = json.loads(text)
        return data if isinstance(data, dict) else None
    except json.JSONDecodeError:
        pass
    for line in reversed(text.splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def output_from_result(payload: dict[str, Any], stderr: str = "") -> BackendOutput:
    result = payload.get("result")
    text = result if isinstance(result, str) else ""

    usage = None
    u = payload.get("usage")
    if isinstance(u, dict) and "input_tokens" in u and "output_tokens" in u:
        usage = BackendUsage(int(u["input_tokens"]), int(u["output_tokens"]))
    else:
        m = _TOKENS.search(stderr)
        if m:
            usage = BackendUsage(int(m.group(1)), int(m.group(2)))

    session_id = payload.get("session_id")
    if not session_id:
        m = _SESSION.search(stderr)
        session_id = m.group(1) if m else None

    return BackendOutput(
        text=text,
        finish_reason=FINISH_REASONS.get(str(payload.get("subtype")), "stop"),
        usage=usage,
        session_id=session_id,
        strategy="cli",
    )


def _error_for(message: str, **diag: Any) -> BackendInvocationError:
    if is_quota_message(message):
        return QuotaExhaustedError(message, strategy="cli", **diag)
    return BackendInvocationError(message, strategy="cli", **diag)


class CliExecutor(BackendExecutor):
    name = "cli"

    def __init__(self, *, cli_path: str = "claude", accept_nonzero_exit: bool = True) -> None:
        self.cli_path = cli_path
        self.accept_nonzero_exit = accept_nonzero_exit

    def command(self, invocation: BackendInvocation, *, streaming: bool) -> list[str]:
        cmd = [self.cli_path, "-p", "--output-format", "stream-json" if streaming else "json"]
        if streaming:
            cmd.append("--verbose")
        cmd += ["--max-turns", str(invocation.max_turns)]
        if invocation.target_model:
            cmd += ["--model", invocation.target_model]
        return cmd

    async def _spawn(
        self, cmd: list[str], prompt_path: Path, cwd: str
    ) -> asyncio.subprocess.Process:
        try:
            with prompt_path.open("rb") as stdin:
                return await asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=stdin,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    limit=STREAM_LINE_LIMIT,
                )
        except FileNotFoundError as e:
            raise BackendInvocationError(
                f"Claude CLI not found at {self.cli_path!r} (or missing working directory {cwd!r})",
                strategy="cli",
            ) from e
        except OSError as e:
            raise BackendInvocationError(f"Failed to launch Claude CLI: {e}", strategy="cli") from e

    def _accept_exit(self, code: int | None) -> bool:
        if not code:
            return True
        if self.accept_nonzero_exit:
            # Compatibility shim: the CLI can exit non-zero on advisory
            # warnings while stdout still carries a valid answer.
            logger.warning("claude CLI exited with status %s but returned a valid payload", code)
            return True
        return False

    async def invoke(self, invocation: BackendInvocation) -> BackendOutput:
        cmd = self.command(invocation, streaming=False)
        with prompt_file(invocation.prompt) as path:
            proc = await self._spawn(cmd, path, invocation.working_directory)
            try:
                out_b, err_b = await asyncio.wait_for(
                    proc.communicate(), timeout=invocation.timeout_s
                )
            except asyncio.TimeoutError:
                raise BackendTimeout(
                    timeout_message(invocation.timeout_s), strategy="cli"
                ) from None
            finally:
                await terminate(proc)

        stdout = out_b.decode("utf-8", errors="replace")
        stderr = err_b.decode("utf-8", errors="replace")
        code = proc.returncode
        diag = {"stdout": stdout, "stderr": stderr, "exit_code": code}

        payload = parse_payload(stdout)
        if payload is None:
            message = stderr.strip() or stdout.strip() or "Claude CLI returned no output"
            if code and is_quota_message(message):
                raise QuotaExhaustedError(message, strategy="cli", **diag)
            raise BackendInvocationError(
                f"Unparseable Claude CLI output (exit status {code})", strategy="cli", **diag
            )

        if payload.get("is_error"):
            raise _error_for(str(payload.get("result") or "Claude CLI reported an error"), **diag)

        if not self._accept_exit(code):
            raise BackendInvocationError(
                f"Claude CLI exited with status {code}", strategy="cli", **diag
            )

        return output_from_result(payload, stderr)

    def parse_stream_line(self, raw: bytes) -> BackendOutputEvent | None:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return None
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("skipping malformed stream line: %.200s", line)
            return None
        if not isinstance(data, dict):
            return None

        kind = data.get("type")
        if kind == "assistant":
            message = data.get("message") or {}
            blocks = message.get("content") if isinstance(message, dict) else None
            texts = [
                b.get("text") or ""
                for b in blocks or []
                if isinstance(b, dict) and b.get("type") == "text"
            ]
            joined = "".join(texts)
            return TextEvent(joined) if joined else None
        if kind == "result":
            if data.get("is_error"):
                msg = str(data.get("result") or "Claude CLI reported an error")
                return ErrorEvent(msg, kind="quota" if is_quota_message(msg) else "backend")
            return ResultEvent(output_from_result(data))
        return None

    async def stream(self, invocation: BackendInvocation) -> AsyncIterator[BackendOutputEvent]:
        deadline = Deadline(invocation.timeout_s)
        cmd = self.command(invocation, streaming=True)
        with prompt_file(invocation.prompt) as path:
            try:
                proc = await self._spawn(cmd, path, invocation.working_directory)
            except BackendInvocationError as e:
                logger.error("claude CLI launch failed: %s", e.message)
                yield ErrorEvent(e.message)
                return

            assert proc.stdout is not None and proc.stderr is not None
            stderr_task = asyncio.create_task(proc.stderr.read())
            final: BackendOutputEvent | None = None
            try:
                while final is None:
                    try:
                        raw = await asyncio.wait_for(
                            proc.stdout.readline(), timeout=deadline.remaining()
                        )
                    except asyncio.TimeoutError:
                        await terminate(proc)
                        logger.warning("claude CLI stream timed out after %gs", deadline.timeout_s)
                        yield ErrorEvent(timeout_message(deadline.timeout_s), kind="timeout")
                        return
                    if not raw:
                        break
                    event = self.parse_stream_line(raw)
                    if event is None:
                        continue
                    if isinstance(event, TextEvent):
                        yield event
                    else:
                        final = event

                try:
                    code = await asyncio.wait_for(proc.wait(), timeout=deadline.remaining())
                except asyncio.TimeoutError:
                    await terminate(proc)
                    yield ErrorEvent(timeout_message(deadline.timeout_s), kind="timeout")
                    return

                if isinstance(final, ResultEvent) and not self._accept_exit(code):
                    final = ErrorEvent(f"Claude CLI exited with status {code}")
                if final is None:
                    stderr = (await stderr_task).decode("utf-8", errors="replace")
                    logger.error(
                        "claude CLI stream ended without a result (status %s): %.500s",
                        code,
                        stderr,
                    )
                    message = stderr.strip() or f"Claude CLI exited with status {code} without a result"
                    final = ErrorEvent(message, kind="quota" if is_quota_message(message) else "backend")
                yield final
            finally:
                await terminate(proc)
                if not stderr_task.done():
                    stderr_task.cancel()
