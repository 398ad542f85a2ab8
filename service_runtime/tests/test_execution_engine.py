"""
Unit tests for the execution engine and its harnesses.
"""

import os
import shutil
import sys
import time

import pytest
from unittest.mock import MagicMock, patch

sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_runtime.app.domain.models import ExecutionContext
from service_runtime.app.execution.adapters import (
    BashAdapter,
    JavaScriptAdapter,
    PythonAdapter,
    canonical_language,
)
from service_runtime.app.execution.engine import ExecutionEngine, parse_envelope
from shared.errors import ResultParseFailure

NODE = shutil.which("node")
BASH = shutil.which("bash")

requires_node = pytest.mark.skipif(NODE is None, reason="node is not installed")
requires_bash = pytest.mark.skipif(BASH is None, reason="bash is not installed")


def make_context(**overrides):
    values = {
        "request": {"method": "POST", "path": "/users/42", "url": "/api/users/42?verbose=1", "ip": "127.0.0.1"},
        "params": {"id": "42"},
        "query": {"verbose": "1"},
        "body": {"name": "Ada"},
        "headers": {"x-test": "yes"},
        "env": {},
    }
    values.update(overrides)
    return ExecutionContext(**values)


@pytest.fixture
def engine(tmp_path):
    adapters = {
        "python": PythonAdapter(sys.executable),
        "javascript": JavaScriptAdapter(NODE or "node"),
        "bash": BashAdapter(BASH or "bash"),
    }
    return ExecutionEngine(adapters, default_timeout_ms=5000, termination_grace_ms=200, temp_dir=str(tmp_path))


class TestLanguageResolution:
    """Test cases for language names and toggles."""

    @pytest.mark.parametrize("name,expected", [
        ("javascript", "javascript"),
        ("JS", "javascript"),
        ("python", "python"),
        ("py", "python"),
        ("bash", "bash"),
        ("sh", "bash"),
        ("shell", "bash"),
        ("ruby", ""),
        ("powershell", ""),
    ])
    def test_aliases(self, name, expected):
        assert canonical_language(name) == expected

    @pytest.mark.asyncio
    async def test_unsupported_language_never_spawns(self, engine):
        with patch("asyncio.create_subprocess_exec") as mock_spawn:
            result = await engine.execute("ruby", "puts 1", make_context())

        mock_spawn.assert_not_called()
        assert result.status == 400
        assert result.success is False
        assert result.error_kind == "unsupported"
        assert result.body == {"error": "Unsupported language: ruby"}

    @pytest.mark.asyncio
    async def test_disabled_language(self, engine):
        engine.enabled["python"] = False

        with patch("asyncio.create_subprocess_exec") as mock_spawn:
            result = await engine.execute("py", "respond('x')", make_context())

        mock_spawn.assert_not_called()
        assert result.status == 503
        assert result.error_kind == "disabled"

    @pytest.mark.asyncio
    async def test_missing_interpreter(self, tmp_path):
        engine = ExecutionEngine({"python": PythonAdapter("/nonexistent/bin/python")}, temp_dir=str(tmp_path))

        result = await engine.execute("python", "respond('x')", make_context())

        assert result.status == 500
        assert result.error_kind == "spawn"
        assert "Python runtime not available" in result.body["error"]
        assert os.listdir(tmp_path) == []


class TestEnvelopeParsing:
    """Test cases for the sentinel envelope."""

    def test_valid_envelope(self):
        status, body, headers = parse_envelope('{"status": 201, "body": {"a": 1}, "headers": {"X-A": 1}}')

        assert status == 201
        assert body == {"a": 1}
        assert headers == {"X-A": "1"}

    @pytest.mark.parametrize("raw", [
        "not json",
        "[1, 2]",
        '{"status": "200"}',
        '{"status": 99}',
        '{"status": 600}',
        '{"status": true}',
        '{"status": 200, "headers": []}',
    ])
    def test_invalid_envelopes(self, raw):
        with pytest.raises(ResultParseFailure):
            parse_envelope(raw)


class TestPythonExecution:
    """Test cases for the Python harness."""

    @pytest.mark.asyncio
    async def test_respond_text(self, engine):
        result = await engine.execute("python", "respond('hello')", make_context())

        assert result.status == 200
        assert result.body == "hello"
        assert result.success is True
        assert result.execution_time_ms >= 0

    @pytest.mark.asyncio
    async def test_json_helper(self, engine):
        result = await engine.execute("python", "json({'id': params['id']}, 201)", make_context())

        assert result.status == 201
        assert result.body == {"id": "42"}
        assert result.headers == {"Content-Type": "application/json"}

    @pytest.mark.asyncio
    async def test_context_is_bound(self, engine):
        code = (
            "json({'method': request['method'], 'query': query['verbose'],"
            " 'name': body['name'], 'header': headers['x-test']})"
        )

        result = await engine.execute("python", code, make_context())

        assert result.body == {"method": "POST", "query": "1", "name": "Ada", "header": "yes"}

    @pytest.mark.asyncio
    async def test_hostile_context_is_data(self, engine):
        payload = "'''\"\"\"\\ ${x} `uname`\n__RESULT__{}"
        context = make_context(body={"text": payload})

        result = await engine.execute("python", "respond(body['text'])", context)

        assert result.status == 200
        assert result.body == payload

    @pytest.mark.asyncio
    async def test_first_respond_wins(self, engine):
        result = await engine.execute("python", "respond('first')\nrespond('second', 500)", make_context())

        assert result.status == 200
        assert result.body == "first"

    @pytest.mark.asyncio
    async def test_exception_becomes_500(self, engine):
        result = await engine.execute("python", "raise ValueError('boom')", make_context())

        assert result.status == 500
        assert result.body == {"error": "boom"}
        assert result.success is False
        assert result.error_message == "boom"

    @pytest.mark.asyncio
    async def test_exception_after_respond_keeps_response(self, engine):
        result = await engine.execute("python", "respond('done')\nraise RuntimeError('late')", make_context())

        assert result.status == 200
        assert result.body == "done"

    @pytest.mark.asyncio
    async def test_invalid_status_becomes_500(self, engine):
        result = await engine.execute("python", "respond('x', 'abc')", make_context())

        assert result.status == 500
        assert result.body == {"error": "status must be an integer, got 'abc'"}
        assert result.success is False

    @pytest.mark.asyncio
    async def test_out_of_range_status_becomes_500(self, engine):
        result = await engine.execute("python", "json({'ok': True}, 700)", make_context())

        assert result.status == 500
        assert result.body == {"error": "status must be between 100 and 599, got 700"}

    @pytest.mark.asyncio
    async def test_rejected_respond_does_not_count(self, engine):
        code = "try:\n    respond('x', None)\nexcept TypeError:\n    respond('fixed', 202)"

        result = await engine.execute("python", code, make_context())

        assert result.status == 202
        assert result.body == "fixed"

    @pytest.mark.asyncio
    async def test_no_content(self, engine):
        result = await engine.execute("python", "respond(None, 204)", make_context())

        assert result.status == 204
        assert result.body is None
        assert result.success is True

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, engine):
        result = await engine.execute("python", "import sys\nsys.exit(3)", make_context())

        assert result.status == 500
        assert result.body == {"error": "exit status 3"}

    @pytest.mark.asyncio
    async def test_prints_become_logs(self, engine):
        result = await engine.execute("python", "print('debug line')\nrespond('ok')", make_context())

        assert result.body == "ok"
        assert result.logs == "debug line"

    @pytest.mark.asyncio
    async def test_no_respond_returns_null(self, engine):
        result = await engine.execute("python", "x = 1", make_context())

        assert result.status == 200
        assert result.body is None

    @pytest.mark.asyncio
    async def test_route_env_is_visible(self, engine):
        context = make_context(env={"GREETING": "bonjour"})

        result = await engine.execute("python", "import os\nrespond(os.environ['GREETING'])", context)

        assert result.body == "bonjour"

    @pytest.mark.asyncio
    async def test_route_env_cannot_override_control_variables(self, engine):
        context = make_context(env={"RUNTIME_CONTEXT_FILE": "/etc/passwd"})

        result = await engine.execute("python", "respond(params['id'])", context)

        assert result.body == "42"

    @pytest.mark.asyncio
    async def test_non_json_body_is_stringified(self, engine):
        result = await engine.execute("python", "import datetime\nrespond(datetime.date(2024, 1, 2))", make_context())

        assert result.body == "2024-01-02"

    @pytest.mark.asyncio
    async def test_malformed_sentinel(self, engine):
        code = "import os, sys\nsys.stdout.write('__RESULT__{broken\\n')\nsys.stdout.flush()\nos._exit(0)"

        result = await engine.execute("python", code, make_context())

        assert result.status == 500
        assert result.error_kind == "parse"

    @pytest.mark.asyncio
    async def test_stderr_without_sentinel(self, engine):
        code = "import os, sys\nsys.stderr.write('fatal problem')\nsys.stderr.flush()\nos._exit(1)"

        result = await engine.execute("python", code, make_context())

        assert result.status == 500
        assert result.body == {"error": "fatal problem"}
        assert result.error_kind == "stderr"

    @pytest.mark.asyncio
    async def test_plain_stdout_without_sentinel(self, engine):
        code = "import os, sys\nsys.stdout.write('  plain  ')\nsys.stdout.flush()\nos._exit(0)"

        result = await engine.execute("python", code, make_context())

        assert result.status == 200
        assert result.body == "plain"

    @pytest.mark.asyncio
    async def test_timeout(self, engine, tmp_path):
        started = time.monotonic()

        result = await engine.execute("python", "import time\ntime.sleep(30)", make_context(), timeout_ms=300)

        assert time.monotonic() - started < 5
        assert result.status == 500
        assert result.success is False
        assert result.error_kind == "timeout"
        assert result.body == {"error": "Execution timed out after 300 ms"}
        assert os.listdir(tmp_path) == []

    @pytest.mark.asyncio
    async def test_timeout_kills_process_group(self, engine):
        code = (
            "import subprocess, sys, time\n"
            "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'])\n"
            "time.sleep(30)"
        )
        started = time.monotonic()

        result = await engine.execute("python", code, make_context(), timeout_ms=500)

        assert time.monotonic() - started < 5
        assert result.error_kind == "timeout"

    @pytest.mark.asyncio
    async def test_temp_dir_removed(self, engine, tmp_path):
        await engine.execute("python", "respond('x')", make_context())
        await engine.execute("python", "raise Exception()", make_context())

        assert os.listdir(tmp_path) == []

    @pytest.mark.asyncio
    async def test_records_metrics(self, tmp_path):
        metrics = MagicMock()
        engine = ExecutionEngine({"python": PythonAdapter(sys.executable)}, temp_dir=str(tmp_path), metrics=metrics)

        await engine.execute("python", "respond('x')", make_context())
        await engine.execute("ruby", "x", make_context())

        outcomes = [call.args[:2] for call in metrics.record_execution.call_args_list]
        assert outcomes == [("python", "success"), ("unknown", "unsupported")]


@requires_node
class TestJavaScriptExecution:
    """Test cases for the Node harness."""

    @pytest.mark.asyncio
    async def test_respond(self, engine):
        result = await engine.execute("javascript", "respond('hi from node')", make_context())

        assert result.status == 200
        assert result.body == "hi from node"

    @pytest.mark.asyncio
    async def test_json_with_params(self, engine):
        result = await engine.execute("js", "json({ id: params.id, name: body.name }, 201)", make_context())

        assert result.status == 201
        assert result.body == {"id": "42", "name": "Ada"}

    @pytest.mark.asyncio
    async def test_await_is_supported(self, engine):
        code = "await new Promise((resolve) => setTimeout(resolve, 10));\nrespond('later');"

        result = await engine.execute("javascript", code, make_context())

        assert result.body == "later"

    @pytest.mark.asyncio
    async def test_throw(self, engine):
        result = await engine.execute("javascript", "throw new Error('kaboom')", make_context())

        assert result.status == 500
        assert result.body == {"error": "kaboom"}

    @pytest.mark.asyncio
    async def test_require_and_logs(self, engine):
        code = "const path = require('path');\nconsole.log('joined');\nrespond(path.join('a', 'b'));"

        result = await engine.execute("javascript", code, make_context())

        assert result.body == "a/b"
        assert result.logs == "joined"

    @pytest.mark.asyncio
    async def test_first_respond_wins(self, engine):
        result = await engine.execute("javascript", "respond('one'); respond('two', 500);", make_context())

        assert result.status == 200
        assert result.body == "one"

    @pytest.mark.asyncio
    async def test_invalid_status_becomes_500(self, engine):
        result = await engine.execute("javascript", "respond('x', 'abc');", make_context())

        assert result.status == 500
        assert result.body == {"error": 'status must be an integer, got "abc"'}

    @pytest.mark.asyncio
    async def test_fire_and_forget_respond_is_awaited(self, engine):
        result = await engine.execute("javascript", "setTimeout(() => respond('late'), 20);", make_context())

        assert result.status == 200
        assert result.body == "late"

    @pytest.mark.asyncio
    async def test_reports_immediately_after_respond(self, engine):
        code = "respond('now');\nsetTimeout(() => console.log('settled'), 50);"

        result = await engine.execute("javascript", code, make_context())

        assert result.body == "now"
        assert "settled" not in (result.logs or "")

    @pytest.mark.asyncio
    async def test_timeout(self, engine):
        result = await engine.execute("javascript", "while (true) {}", make_context(), timeout_ms=300)

        assert result.error_kind == "timeout"


@requires_bash
class TestBashExecution:
    """Test cases for the Bash harness."""

    @pytest.mark.asyncio
    async def test_respond(self, engine):
        result = await engine.execute("bash", 'respond "hello from bash"', make_context())

        assert result.status == 200
        assert result.body == "hello from bash"

    @pytest.mark.asyncio
    async def test_respond_escapes_body(self, engine):
        result = await engine.execute("sh", "respond \"$(printf 'a\"b\\\\c\\nd')\" 202", make_context())

        assert result.status == 202
        assert result.body == 'a"b\\c\nd'

    @pytest.mark.asyncio
    async def test_json_helper(self, engine):
        result = await engine.execute("bash", "json '{\"ok\": true}' 201", make_context())

        assert result.status == 201
        assert result.body == {"ok": True}

    @pytest.mark.asyncio
    async def test_params_and_context_variables(self, engine):
        result = await engine.execute("bash", 'respond "$param_id|$params"', make_context())

        assert result.body == '42|{"id": "42"}'

    @pytest.mark.asyncio
    async def test_plain_stdout_is_json_decoded(self, engine):
        result = await engine.execute("shell", "echo '{\"x\": 1}'", make_context())

        assert result.status == 200
        assert result.body == {"x": 1}

    @pytest.mark.asyncio
    async def test_plain_stdout_text(self, engine):
        result = await engine.execute("bash", "echo plain text", make_context())

        assert result.body == "plain text"

    @pytest.mark.asyncio
    async def test_failure_reports_stderr(self, engine):
        result = await engine.execute("bash", 'echo "bad thing" >&2\nexit 3', make_context())

        assert result.status == 500
        assert result.body == {"error": "bad thing"}

    @pytest.mark.asyncio
    async def test_failure_without_stderr(self, engine):
        result = await engine.execute("bash", "exit 4", make_context())

        assert result.status == 500
        assert result.body == {"error": "exit status 4"}
