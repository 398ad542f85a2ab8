"""
Execution engine: runs endpoint code in a short-lived interpreter process.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import shutil
import signal
import tempfile
import time
from typing import Any, Dict, Optional, Tuple

from shared.config import BaseConfig
from shared.errors import (
    ExecutionError,
    ExecutionTimeout,
    LanguageDisabled,
    ProcessSpawnFailure,
    ResultParseFailure,
    UnsupportedLanguage,
    UserCodeException,
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from service_runtime.app.domain.models import ExecutionContext, ExecutionResult
from service_runtime.app.execution.adapters import (
    BashAdapter,
    JavaScriptAdapter,
    LanguageAdapter,
    PythonAdapter,
    canonical_language,
)

SENTINEL = "__RESULT__"
RESULT_LINE = re.compile(r"^__RESULT__(.+)$", re.M)

CONTEXT_FILE_VAR = "RUNTIME_CONTEXT_FILE"
CODE_FILE_VAR = "RUNTIME_CODE_FILE"
WORK_DIR_VAR = "RUNTIME_WORK_DIR"

INHERITED_ENV = ("PATH", "HOME", "LANG", "LC_ALL", "TMPDIR", "TZ", "SYSTEMROOT")


def parse_envelope(raw: str) -> Tuple[int, Any, Dict[str, str]]:
    """Validate the JSON printed after the sentinel."""
    try:
        envelope = json.loads(raw)
    except ValueError as exc:
        raise ResultParseFailure(f"invalid JSON: {exc}") from exc
    if not isinstance(envelope, dict):
        raise ResultParseFailure("envelope is not an object")

    status = envelope.get("status", 200)
    if isinstance(status, bool) or not isinstance(status, int):
        raise ResultParseFailure(f"status is not an integer: {status!r}")
    if not 100 <= status <= 599:
        raise ResultParseFailure(f"status out of range: {status}")

    headers = envelope.get("headers") or {}
    if not isinstance(headers, dict):
        raise ResultParseFailure("headers is not an object")
    return status, envelope.get("body"), {str(k): str(v) for k, v in headers.items()}


class ExecutionEngine:
    """Dispatches code to a language adapter and enforces the deadline.

    Each call gets its own temporary directory holding the harness, the
    user code and the serialized context; the directory is removed on
    every exit path. Failures come back as ``ExecutionResult`` values.
    """

    def __init__(
        self,
        adapters: Dict[str, LanguageAdapter],
        enabled: Optional[Dict[str, bool]] = None,
        default_timeout_ms: int = 5000,
        termination_grace_ms: int = 500,
        temp_dir: Optional[str] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.adapters = adapters
        self.enabled = enabled or {}
        self.default_timeout_ms = default_timeout_ms
        self.termination_grace_ms = termination_grace_ms
        self.temp_dir = temp_dir
        self.metrics = metrics
        self.logger = get_logger("runtime.execution")

    @classmethod
    def from_config(cls, config: BaseConfig, metrics: Optional[MetricsCollector] = None) -> "ExecutionEngine":
        adapters: Dict[str, LanguageAdapter] = {
            "javascript": JavaScriptAdapter(config.node_path),
            "python": PythonAdapter(config.python_path),
            "bash": BashAdapter(config.bash_path),
        }
        return cls(
            adapters=adapters,
            enabled={name: config.language_enabled(name) for name in adapters},
            default_timeout_ms=config.code_timeout_ms,
            termination_grace_ms=config.termination_grace_ms,
            temp_dir=config.temp_dir,
            metrics=metrics,
        )

    def resolve_adapter(self, language: str) -> LanguageAdapter:
        name = canonical_language(language)
        adapter = self.adapters.get(name)
        if adapter is None:
            raise UnsupportedLanguage(language)
        if not self.enabled.get(name, True):
            raise LanguageDisabled(name)
        return adapter

    async def execute(
        self,
        language: str,
        code: str,
        context: ExecutionContext,
        timeout_ms: Optional[int] = None,
    ) -> ExecutionResult:
        """Run ``code`` with ``context`` and return its structured result."""
        timeout_ms = timeout_ms or self.default_timeout_ms
        started = time.perf_counter()
        outcome = "success"
        language_label = canonical_language(language) or "unknown"

        try:
            adapter = self.resolve_adapter(language)
            result = await self._run(adapter, code, context, timeout_ms, started)
            if not result.success:
                outcome = "error"
            return result
        except ExecutionError as exc:
            outcome = exc.kind
            elapsed = self._elapsed_ms(started)
            self.logger.warning(
                "Execution failed",
                language=language,
                error_kind=exc.kind,
                error=exc.message,
                execution_time_ms=elapsed,
            )
            return ExecutionResult.failure(exc, elapsed)
        finally:
            if self.metrics:
                self.metrics.record_execution(language_label, outcome, time.perf_counter() - started)

    async def _run(
        self,
        adapter: LanguageAdapter,
        code: str,
        context: ExecutionContext,
        timeout_ms: int,
        started: float,
    ) -> ExecutionResult:
        workdir = tempfile.mkdtemp(prefix=f"endpoint-{adapter.name}-", dir=self.temp_dir)
        try:
            harness_path = os.path.join(workdir, adapter.harness_name)
            code_path = os.path.join(workdir, "endpoint" + adapter.code_suffix)
            context_path = os.path.join(workdir, "context.json")

            with open(harness_path, "w", encoding="utf-8") as handle:
                handle.write(adapter.harness_source())
            with open(code_path, "w", encoding="utf-8") as handle:
                handle.write(code)
            with open(context_path, "w", encoding="utf-8") as handle:
                json.dump(context.to_dict(), handle, default=str, ensure_ascii=False)

            env = self._child_environment(adapter, context, workdir, context_path, code_path)
            stdout, stderr = await self._spawn(adapter, harness_path, workdir, env, timeout_ms)
            return self._interpret(adapter, stdout, stderr, self._elapsed_ms(started))
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    def _child_environment(
        self,
        adapter: LanguageAdapter,
        context: ExecutionContext,
        workdir: str,
        context_path: str,
        code_path: str,
    ) -> Dict[str, str]:
        env = {name: os.environ[name] for name in INHERITED_ENV if name in os.environ}
        env.update({str(k): str(v) for k, v in context.env.items()})
        env.update(adapter.environment(context))
        env[CONTEXT_FILE_VAR] = context_path
        env[CODE_FILE_VAR] = code_path
        env[WORK_DIR_VAR] = workdir
        return env

    async def _spawn(
        self,
        adapter: LanguageAdapter,
        harness_path: str,
        workdir: str,
        env: Dict[str, str],
        timeout_ms: int,
    ) -> Tuple[str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *adapter.command(harness_path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=workdir,
                env=env,
                start_new_session=True,
            )
        except OSError as exc:
            raise ProcessSpawnFailure(adapter.runtime, exc.strerror or str(exc)) from exc

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as exc:
            self.logger.warning("Execution deadline reached", language=adapter.name, timeout_ms=timeout_ms)
            await self._terminate(process)
            raise ExecutionTimeout(timeout_ms) from exc
        finally:
            if process.returncode is None:
                await self._terminate(process)

        return (
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, then SIGKILL after the grace period."""
        if process.returncode is not None:
            return
        self._signal_group(process.pid, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.termination_grace_ms / 1000)
        except asyncio.TimeoutError:
            self._signal_group(process.pid, signal.SIGKILL)
            await process.wait()

    def _signal_group(self, pid: int, sig: int) -> None:
        try:
            os.killpg(pid, sig)
        except (ProcessLookupError, PermissionError):
            pass

    def _interpret(self, adapter: LanguageAdapter, stdout: str, stderr: str, elapsed_ms: int) -> ExecutionResult:
        matches = list(RESULT_LINE.finditer(stdout))
        if matches:
            last = matches[-1]
            status, body, headers = parse_envelope(last.group(1).strip())
            logs = stdout[: last.start()].strip() or None
            if stderr.strip():
                self.logger.debug("Execution wrote to stderr", language=adapter.name, stderr=stderr.strip()[:500])
            return ExecutionResult(
                status=status,
                body=body,
                headers=headers,
                execution_time_ms=elapsed_ms,
                success=status < 500,
                logs=logs,
            )

        if stderr.strip():
            raise UserCodeException(stderr.strip())

        return ExecutionResult(
            status=200,
            body=adapter.parse_plain_output(stdout.strip()),
            execution_time_ms=elapsed_ms,
            success=True,
        )

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.perf_counter() - started) * 1000)
