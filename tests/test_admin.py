from unittest import mock

import pytest
import requests
import responses

from dtmlite.admin import PROXY_TARGET_KEY, add_admin, main, proxy_target
from dtmlite.util import create_app


@pytest.fixture
def mocked():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


def _dist(tmp_path):
    dist = tmp_path / "dist"
    (dist / "assets").mkdir(parents=True)
    (dist / "index.html").write_text("<html>index</html>", encoding="utf-8")
    (dist / "assets" / "app.js").write_text("console.log(1)", encoding="utf-8")
    return dist


def test_proxy_target_by_lang():
    assert proxy_target("zh_CN.UTF-8") == "cn-admin.dtm.pub"
    assert proxy_target("en_US.UTF-8") == "admin.dtm.pub"
    assert proxy_target(None) == "admin.dtm.pub"


def test_serves_local_index(tmp_path):
    app = create_app()
    target = add_admin(app, _dist(tmp_path), 36789)
    assert target == ""
    assert app.config[PROXY_TARGET_KEY] == ""
    client = app.test_client()
    for path in ("/", "/admin/", "/admin/some/page"):
        resp = client.get(path)
        assert resp.status_code == 200
        assert resp.get_data(as_text=True) == "<html>index</html>"
        assert resp.headers["content-type"] == "text/html;charset=utf-8"


def test_serves_local_assets(tmp_path):
    app = create_app()
    add_admin(app, _dist(tmp_path), 36789)
    client = app.test_client()
    resp = client.get("/assets/app.js")
    assert resp.status_code == 200
    assert resp.get_data(as_text=True) == "console.log(1)"
    assert client.get("/assets/missing.js").status_code == 404


def test_ping_still_works(tmp_path):
    app = create_app()
    add_admin(app, _dist(tmp_path), 36789)
    resp = app.test_client().get("/api/ping")
    assert resp.get_json() == {"msg": "pong"}


def test_proxies_when_no_dist(tmp_path, monkeypatch, mocked):
    monkeypatch.setenv("LANG", "en_US.UTF-8")
    mocked.add(responses.GET, "http://admin.dtm.pub/assets/app.js", body="remote js", status=200)
    app = create_app()
    target = add_admin(app, tmp_path / "nothing", 36789)
    assert target == "admin.dtm.pub"
    resp = app.test_client().get("/assets/app.js")
    assert resp.status_code == 200
    assert resp.get_data(as_text=True) == "remote js"
    assert mocked.calls[0].request.headers["Host"] == "admin.dtm.pub"


def test_proxies_to_cn_target(tmp_path, monkeypatch, mocked):
    monkeypatch.setenv("LANG", "zh_CN.UTF-8")
    mocked.add(responses.GET, "http://cn-admin.dtm.pub/admin/x", body="cn page", status=404)
    app = create_app()
    assert add_admin(app, tmp_path, 36789) == "cn-admin.dtm.pub"
    resp = app.test_client().get("/admin/x")
    assert resp.status_code == 404
    assert resp.get_data(as_text=True) == "cn page"


def test_proxy_error_is_reported(tmp_path, monkeypatch, mocked):
    monkeypatch.setenv("LANG", "C")
    mocked.add(responses.GET, "http://admin.dtm.pub/", body=requests.ConnectionError("boom"))
    app = create_app()
    add_admin(app, tmp_path, 36789)
    resp = app.test_client().get("/")
    assert resp.get_data(as_text=True).startswith("http proxy error")
    assert "boom" in resp.get_data(as_text=True)


def test_main_runs_app_on_port(tmp_path):
    dist = _dist(tmp_path)
    with mock.patch("flask.Flask.run") as run:
        code = main(["--port", "40001", "--dist", str(dist)])
    assert code == 0
    assert run.call_args.kwargs["port"] == 40001