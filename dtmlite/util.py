"""Helpers shared by the server: paths, time, sql scripts and the http app."""

from __future__ import annotations

import functools
import json
import logging
import os
import time
from datetime import datetime, timedelta
from typing import Any, Callable

import requests
from flask import Flask, Response, request

from dtmlite.errors import RESULT_FAILURE, RESULT_ONGOING, RESULT_SUCCESS, is_failure, is_ongoing

logger = logging.getLogger(__name__)

HTTP_OK = 200
HTTP_CONFLICT = 409
HTTP_TOO_EARLY = 425
HTTP_INTERNAL_ERROR = 500


def must_getwd() -> str:
    """Return the current working directory."""
    return os.getcwd()


def get_sql_dir() -> str:
    """Return the directory of the sql scripts, looked up from the working directory."""
    wd = must_getwd()
    if os.path.basename(wd) == "test":
        wd = os.path.dirname(wd)
    return wd + "/sqls"


class Recovered:
    """Context manager that swallows an exception and keeps it in ``error``."""

    def __init__(self) -> None:
        self.error: BaseException | None = None

    def __enter__(self) -> Recovered:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is not None and isinstance(exc, Exception):
            self.error = exc
            return True
        return False


def recover_panic() -> Recovered:
    """Return a context manager that captures any error raised inside it."""
    return Recovered()


def get_next_time(seconds: int) -> datetime:
    """Return the time that lies the given number of seconds from now."""
    return datetime.now() + timedelta(seconds=seconds)


def split_sql_script(content: str, skip_drop: bool) -> list[str]:
    """Split a script into its statements, leaving out blanks and, if asked, drops."""
    statements = (part.strip() for part in content.split(";"))
    return [s for s in statements if s and not (skip_drop and "drop" in s)]


def handler_result(value: Any) -> tuple[int, Any]:
    """Turn what a handler returned (or raised) into an http status and json body."""
    status = HTTP_OK
    err: BaseException | None = None

    if isinstance(value, requests.Response):
        status = value.status_code
        try:
            value = json.loads(value.content)
        except ValueError as exc:
            value, err = None, exc

    if isinstance(value, BaseException) and err is None:
        err = value

    if err is not None:
        body: dict[str, Any] = {}
        if is_failure(err):
            status = HTTP_CONFLICT
            body["dtm_result"] = RESULT_FAILURE
        elif is_ongoing(err):
            status = HTTP_TOO_EARLY
            body["dtm_result"] = RESULT_ONGOING
        else:
            status = HTTP_INTERNAL_ERROR
        body["message"] = str(err)
        return status, body
    if value is None:
        return status, {"dtm_result": RESULT_SUCCESS}
    return status, value


def _json_text(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def wrap_handler(fn: Callable[..., Any]) -> Callable[..., Response]:
    """Wrap a view so that its result or error becomes a json response."""

    @functools.wraps(fn)
    def view(*args: Any, **kwargs: Any) -> Response:
        began = time.monotonic()
        try:
            value = fn(*args, **kwargs)
        except Exception as exc:  # a failing handler is reported, not propagated
            value = exc
        status, body = handler_result(value)
        text = _json_text(body)
        elapsed = int((time.monotonic() - began) * 1000)
        log = logger.info if status in (HTTP_OK, HTTP_TOO_EARLY) else logger.error
        log("%2dms %d %s %s %s", elapsed, status, request.method, request.full_path, text)
        return Response(text, status=status, mimetype="application/json")

    return view


def create_app() -> Flask:
    """Create the http app with request logging and the ping route."""
    app = Flask("dtmlite")

    @app.before_request
    def _log_request() -> None:
        body = request.get_data(cache=True, as_text=True)
        logger.debug("begin %s %s body: %s", request.method, request.url, body)

    @app.route(
        "/api/ping",
        methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    )
    def ping() -> Response:
        return Response(_json_text({"msg": "pong"}), status=HTTP_OK, mimetype="application/json")

    return app