"""
Language adapters: how each interpreter is launched around the harness.
"""

from __future__ import annotations

import json
import re
from importlib import resources
from typing import Any, Dict, List

from service_runtime.app.domain.models import ExecutionContext

HARNESS_PACKAGE = "service_runtime.app.execution.harness"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class LanguageAdapter:
    """Base adapter. Subclasses name the harness template and interpreter command."""

    name: str = ""
    runtime: str = ""
    harness_name: str = ""
    code_suffix: str = ".txt"

    def __init__(self, executable: str):
        self.executable = executable

    def harness_source(self) -> str:
        return resources.files(HARNESS_PACKAGE).joinpath(self.harness_name).read_text(encoding="utf-8")

    def command(self, harness_path: str) -> List[str]:
        return [self.executable, harness_path]

    def environment(self, context: ExecutionContext) -> Dict[str, str]:
        """Interpreter-specific variables added to the child environment."""
        return {}

    def parse_plain_output(self, stdout: str) -> Any:
        """Body used when the harness exited without printing a sentinel."""
        return stdout or None


class PythonAdapter(LanguageAdapter):
    name = "python"
    runtime = "Python"
    harness_name = "runner.py"
    code_suffix = ".py"

    def environment(self, context: ExecutionContext) -> Dict[str, str]:
        return {
            "PYTHONIOENCODING": "utf-8",
            "PYTHONUTF8": "1",
            "PYTHONDONTWRITEBYTECODE": "1",
        }


class JavaScriptAdapter(LanguageAdapter):
    name = "javascript"
    runtime = "Node.js"
    harness_name = "runner.cjs"
    code_suffix = ".js"

    def environment(self, context: ExecutionContext) -> Dict[str, str]:
        return {"NODE_ENV": "sandbox"}


class BashAdapter(LanguageAdapter):
    """Bash exposes the context as JSON text in variables plus ``param_<name>``."""

    name = "bash"
    runtime = "Bash"
    harness_name = "runner.sh"
    code_suffix = ".sh"

    def command(self, harness_path: str) -> List[str]:
        return [self.executable, "--noprofile", "--norc", harness_path]

    def environment(self, context: ExecutionContext) -> Dict[str, str]:
        env = {
            "request": json.dumps(context.request, default=str),
            "params": json.dumps(context.params, default=str),
            "query": json.dumps(context.query, default=str),
            "body": json.dumps(context.body, default=str),
            "headers": json.dumps(context.headers, default=str),
        }
        for name, value in context.params.items():
            if _IDENTIFIER.match(name):
                env[f"param_{name}"] = str(value)
        return env

    def parse_plain_output(self, stdout: str) -> Any:
        if not stdout:
            return None
        try:
            return json.loads(stdout)
        except ValueError:
            return stdout


LANGUAGE_ALIASES = {
    "javascript": "javascript",
    "js": "javascript",
    "python": "python",
    "py": "python",
    "bash": "bash",
    "sh": "bash",
    "shell": "bash",
}


def canonical_language(language: str) -> str:
    """Map an alias to its canonical name, or return ``""`` when unknown."""
    return LANGUAGE_ALIASES.get((language or "").strip().lower(), "")
