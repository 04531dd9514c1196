"""Child-process entry point for user scripts.

Reads ``{"script": ..., "json": ...}`` from stdin, executes the script with a
restricted set of built-ins and writes one JSON object to stdout:
``{"ok": true, "output": ..., "logs": ...}`` or ``{"ok": false, "error": ...}``.

Standard library only: this file is executed directly by a fresh interpreter
and must not import the engine package.
"""

import contextlib
import datetime
import io
import json
import math
import re
import sys

# Quoted strings are matched first so "$json" inside a literal stays as written
_DOLLAR_TOKEN = re.compile(
    r"""("(?:\\.|[^"\\\n])*"|'(?:\\.|[^'\\\n])*')|\$([A-Za-z_][A-Za-z0-9_]*)"""
)


class JsonObject(dict):
    """Dict that also allows attribute access (``$json.count``)."""

    def __getattr__(self, name):
        try:
            return self[name]
        except KeyError:
            raise AttributeError(name) from None

    def __setattr__(self, name, value):
        self[name] = value

    def __delattr__(self, name):
        try:
            del self[name]
        except KeyError:
            raise AttributeError(name) from None


SAFE_BUILTINS = {
    "len": len,
    "range": range,
    "min": min,
    "max": max,
    "sum": sum,
    "abs": abs,
    "round": round,
    "sorted": sorted,
    "enumerate": enumerate,
    "zip": zip,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "list": list,
    "dict": dict,
    "set": set,
    "tuple": tuple,
    "isinstance": isinstance,
    "print": print,
    "True": True,
    "False": False,
    "None": None,
    "Exception": Exception,
    "ValueError": ValueError,
    "KeyError": KeyError,
    "TypeError": TypeError,
}


def run_script(script, payload):
    """Execute script against payload and return the output value."""
    source = _DOLLAR_TOKEN.sub(
        lambda m: m.group(1) if m.group(1) else "_dollar_" + m.group(2), script
    )
    data = json.loads(json.dumps(payload), object_hook=JsonObject)
    if not isinstance(data, JsonObject):
        data = JsonObject(value=data)

    scope = {
        "__builtins__": SAFE_BUILTINS,
        "math": math,
        "json": json,
        "datetime": datetime,
        "_dollar_json": data,
        "result": None,
    }
    exec(compile(source, "<script>", "exec"), scope)
    result = scope.get("result")
    return scope["_dollar_json"] if result is None else result


def main():
    request = json.loads(sys.stdin.read() or "{}")
    logs = io.StringIO()
    try:
        with contextlib.redirect_stdout(logs):
            output = run_script(request.get("script", ""), request.get("json") or {})
        response = {"ok": True, "output": output, "logs": logs.getvalue()}
        encoded = json.dumps(response, default=str)
    except Exception as e:
        encoded = json.dumps(
            {"ok": False, "error": f"{type(e).__name__}: {e}", "logs": logs.getvalue()}
        )
    sys.stdout.write(encoded + "\n")
    sys.stdout.flush()


if __name__ == "__main__":
    main()
