"""The admin web ui: served from a built directory, or proxied to the hosted one."""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

import requests
from flask import Flask, Response, request, send_from_directory

from dtmlite.util import create_app

logger = logging.getLogger(__name__)

DEFAULT_HTTP_PORT = 36789
DEFAULT_DIST_DIR = "admin/dist"
PROXY_TARGET_KEY = "ADMIN_PROXY_TARGET"

_HOP_HEADERS = {
    "connection",
    "content-encoding",
    "content-length",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}


def proxy_target(lang: str | None) -> str:
    """Return the host the admin ui is proxied to for the given locale."""
    if lang and lang.startswith("zh_CN"):
        return "cn-admin.dtm.pub"
    return "admin.dtm.pub"


def _serve_local(app: Flask, dist: Path) -> None:
    index_text = (dist / "index.html").read_text(encoding="utf-8")
    assets = dist / "assets"

    def render_index(name: str = "") -> Response:
        return Response(index_text, status=200, content_type="text/html;charset=utf-8")

    def serve_asset(name: str) -> Response:
        return send_from_directory(assets, name)

    app.add_url_rule("/assets/<path:name>", "admin_assets", serve_asset)
    app.add_url_rule("/admin/", "admin_index", render_index)
    app.add_url_rule("/admin/<path:name>", "admin_page", render_index)
    app.add_url_rule("/", "admin_root", render_index)


def _proxy_view(target: str):
    def proxy_admin(name: str = "") -> Response:
        url = f"http://{target}{request.path}"
        headers = {
            k: v for k, v in request.headers.items() if k.lower() not in _HOP_HEADERS
        }
        headers["Host"] = target
        logger.debug("proxy admin to %s", target)
        try:
            upstream = requests.request(
                request.method,
                url,
                params=request.args.to_dict(flat=False),
                headers=headers,
                data=request.get_data(),
                allow_redirects=False,
                timeout=30,
            )
        except requests.RequestException as err:
            logger.warning("http: proxy error: %s", err)
            return Response(f"http proxy error {err}")
        out_headers = [
            (k, v) for k, v in upstream.headers.items() if k.lower() not in _HOP_HEADERS
        ]
        return Response(upstream.content, status=upstream.status_code, headers=out_headers)

    return proxy_admin


def add_admin(app: Flask, dist_dir: str | os.PathLike[str], http_port: int) -> str:
    """Add the admin routes; return the proxy target, or "" when served from files."""
    dist = Path(dist_dir)
    if (dist / "index.html").is_file():
        _serve_local(app, dist)
        target = ""
        logger.info("admin is served from dir '%s'", dist)
    else:
        target = proxy_target(os.environ.get("LANG"))
        view = _proxy_view(target)
        app.add_url_rule("/", "admin_root", view)
        app.add_url_rule("/assets/<path:name>", "admin_assets", view)
        app.add_url_rule("/admin/", "admin_index", view)
        app.add_url_rule("/admin/<path:name>", "admin_page", view)
        logger.info("admin is proxied to %s", target)
    app.config[PROXY_TARGET_KEY] = target
    logger.info("admin is running at: http://localhost:%d", http_port)
    return target


def main(argv: list[str] | None = None) -> int:
    """Start the http app with the admin ui and serve until interrupted."""
    parser = argparse.ArgumentParser(prog="dtmlite", description="Run the transaction server.")
    parser.add_argument("--port", type=int, default=DEFAULT_HTTP_PORT, help="http port")
    parser.add_argument("--dist", default=DEFAULT_DIST_DIR, help="built admin ui directory")
    parser.add_argument("--host", default="0.0.0.0", help="address to listen on")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)
    app = create_app()
    add_admin(app, args.dist, args.port)
    try:
        app.run(host=args.host, port=args.port)
    except KeyboardInterrupt:
        pass
    logger.info("Shutdown dtm server...")
    return 0