# -*- coding: utf-8 -*-
"""Python harness: loads the request context, runs the endpoint code and
prints the response envelope after the result sentinel."""

import json as _json
import os
import sys
import traceback

SENTINEL = "__RESULT__"

with open(os.environ["RUNTIME_CONTEXT_FILE"], encoding="utf-8") as _handle:
    context = _json.load(_handle)
with open(os.environ["RUNTIME_CODE_FILE"], encoding="utf-8") as _handle:
    _source = _handle.read()

state = {"responded": False}
response = {"status": 200, "body": None, "headers": {}}


def respond(data, status=200, headers=None):
    if state["responded"]:
        return
    if isinstance(status, bool):
        raise TypeError("status must be an integer, got %r" % (status,))
    try:
        code = int(status)
    except (TypeError, ValueError):
        raise TypeError("status must be an integer, got %r" % (status,)) from None
    if not 100 <= code <= 599:
        raise ValueError("status must be between 100 and 599, got %d" % code)
    headers = dict(headers or {})
    state["responded"] = True
    response["status"] = code
    response["body"] = data
    response["headers"] = headers


def json_response(data, status=200):
    respond(data, status, {"Content-Type": "application/json"})


namespace = {
    "__name__": "__endpoint__",
    "request": context.get("request", {}),
    "params": context.get("params", {}),
    "query": context.get("query", {}),
    "body": context.get("body"),
    "headers": context.get("headers", {}),
    "env": context.get("env", {}),
    "context": context,
    "respond": respond,
    "json": json_response,
    "json_response": json_response,
}


def _fail(message):
    if not state["responded"]:
        respond({"error": message}, 500, {"Content-Type": "application/json"})


try:
    exec(compile(_source, "<endpoint>", "exec"), namespace)
except SystemExit as exc:
    if exc.code not in (None, 0):
        _fail("exit status %s" % exc.code)
except BaseException as exc:
    traceback.print_exc(file=sys.stderr)
    _fail(str(exc) or exc.__class__.__name__)

sys.stdout.write("\n" + SENTINEL + _json.dumps(response, default=str, ensure_ascii=False) + "\n")
sys.stdout.flush()
