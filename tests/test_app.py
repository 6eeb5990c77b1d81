import base64

import pytest
from prometheus_client import CollectorRegistry

from fail2ban_exporter import (
    DEFAULT_SOCKET_PATH,
    BasicAuth,
    Config,
    Fail2BanCollector,
    create_app,
    main,
    parse_args,
    parse_listen_address,
)


class StubCollector(Fail2BanCollector):
    """Collector whose health is fixed and which emits nothing."""

    def __init__(self, healthy):
        super().__init__("/var/run/fail2ban/fail2ban.sock", "1.0.0")
        self.healthy = healthy

    def is_healthy(self):
        return self.healthy

    def collect(self):
        return iter(())


def call(app, path, authorization=None):
    captured = {}

    def start_response(status, headers, exc_info=None):
        captured["status"] = status
        captured["headers"] = dict(headers)

    environ = {
        "PATH_INFO": path,
        "REQUEST_METHOD": "GET",
        "QUERY_STRING": "",
        "SERVER_NAME": "localhost",
        "SERVER_PORT": "9191",
        "wsgi.url_scheme": "http",
    }
    if authorization is not None:
        environ["HTTP_AUTHORIZATION"] = authorization
    body = b"".join(app(environ, start_response))
    return captured["status"], captured["headers"], body


@pytest.mark.parametrize("healthy, status", [(True, "200 OK"), (False, "503 Service Unavailable")])
def test_health_endpoint(healthy, status):
    """Test /health reflects the collector's health check"""
    collector = StubCollector(healthy)
    app = create_app(collector, CollectorRegistry())
    assert call(app, "/health")[0] == status


def test_metrics_endpoint():
    """Test /metrics is served from the registry"""
    registry = CollectorRegistry()
    collector = StubCollector(True)
    registry.register(collector)
    status, headers, _ = call(create_app(collector, registry), "/metrics")
    assert status.startswith("200")
    assert headers["Content-Type"].startswith("text/plain")


def test_index_and_not_found():
    """Test the index page links to metrics and unknown paths are 404"""
    app = create_app(StubCollector(True), CollectorRegistry())
    status, _, body = call(app, "/")
    assert status == "200 OK"
    assert b"/metrics" in body
    assert call(app, "/nope")[0] == "404 Not Found"


def test_parse_listen_address():
    """Test host:port parsing"""
    assert parse_listen_address(":9191") == ("", 9191)
    assert parse_listen_address("127.0.0.1:8080") == ("127.0.0.1", 8080)
    assert parse_listen_address("[::1]:9191") == ("::1", 9191)


@pytest.mark.parametrize("value", ["9191", "localhost:http", "localhost:70000"])
def test_parse_listen_address_invalid(value):
    """Test malformed listen addresses are rejected"""
    with pytest.raises(ValueError):
        parse_listen_address(value)


def test_config_defaults(monkeypatch):
    """Test defaults when no environment is set"""
    for key in ("F2B_SOCKET_PATH", "F2B_EXIT_ON_SOCKET_CONN_ERROR", "F2B_GEO_ENABLED", "F2B_GEO_DB_PATH"):
        monkeypatch.delenv(key, raising=False)
    config = Config.from_env()
    assert config.socket_path == DEFAULT_SOCKET_PATH
    assert config.exit_on_socket_conn_error is False
    assert config.geo.enabled is False


def test_config_from_env(monkeypatch):
    """Test environment variables populate the config"""
    monkeypatch.setenv("F2B_SOCKET_PATH", "/run/f2b.sock")
    monkeypatch.setenv("F2B_EXIT_ON_SOCKET_CONN_ERROR", "yes")
    monkeypatch.setenv("F2B_GEO_ENABLED", "true")
    monkeypatch.setenv("F2B_GEO_PROVIDER", "MaxMind")
    monkeypatch.setenv("F2B_GEO_DB_PATH", "/var/lib/GeoIP/GeoLite2-City.mmdb")
    monkeypatch.setenv("F2B_SOCKET_TIMEOUT", "2.5")
    config = Config.from_env()
    assert config.socket_path == "/run/f2b.sock"
    assert config.exit_on_socket_conn_error is True
    assert config.socket_timeout == 2.5
    assert config.geo.enabled is True
    assert config.geo.provider == "maxmind"
    assert config.geo.db_path == "/var/lib/GeoIP/GeoLite2-City.mmdb"


def test_parse_args_overrides():
    """Test CLI flags are parsed"""
    args = parse_args(["--socket", "/tmp/f2b.sock", "--geo-enabled", "--exit-on-socket-connection-error"])
    assert args.socket == "/tmp/f2b.sock"
    assert args.geo_enabled is True
    assert args.exit_on_socket_connection_error is True
    assert args.listen_address is None


def basic(user, password):
    return "Basic " + base64.b64encode(f"{user}:{password}".encode()).decode()


@pytest.fixture
def auth_app():
    registry = CollectorRegistry()
    collector = StubCollector(True)
    registry.register(collector)
    return create_app(collector, registry, auth=BasicAuth("prometheus", "s3cret"))


@pytest.mark.parametrize(
    "authorization",
    [None, basic("prometheus", "wrong"), basic("admin", "s3cret"), "Basic !!!notbase64", "Bearer abc", "Basic " + base64.b64encode(b"nocolon").decode()],
)
def test_metrics_requires_basic_auth(auth_app, authorization):
    """Test /metrics rejects missing or wrong credentials"""
    status, headers, _ = call(auth_app, "/metrics", authorization)
    assert status == "401 Unauthorized"
    assert headers["WWW-Authenticate"].startswith("Basic")


def test_metrics_with_basic_auth(auth_app):
    """Test /metrics is served with the right credentials"""
    status, _, _ = call(auth_app, "/metrics", basic("prometheus", "s3cret"))
    assert status.startswith("200")


def test_health_and_index_skip_basic_auth(auth_app):
    """Test /health and the index page stay reachable without credentials"""
    assert call(auth_app, "/health")[0] == "200 OK"
    assert call(auth_app, "/")[0] == "200 OK"


def test_basic_auth_password_with_colon():
    """Test only the first colon separates user from password"""
    assert BasicAuth("user", "pa:ss").check(basic("user", "pa:ss"))


def test_config_auth_and_textfile_from_env(monkeypatch):
    """Test basic auth and textfile settings are read from the environment"""
    monkeypatch.setenv("F2B_WEB_BASICAUTH_USER", "prometheus")
    monkeypatch.setenv("F2B_WEB_BASICAUTH_PASS", "s3cret")
    monkeypatch.setenv("F2B_COLLECTOR_TEXT_PATH", "/var/lib/fail2ban-exporter")
    config = Config.from_env()
    assert config.basic_auth_user == "prometheus"
    assert config.basic_auth_pass == "s3cret"
    assert config.textfile_dir == "/var/lib/fail2ban-exporter"


def test_parse_args_auth_and_textfile():
    """Test basic auth and textfile flags are parsed"""
    args = parse_args(["--web-basic-auth-user", "u", "--web-basic-auth-pass", "p", "--textfile-dir", "/tmp/prom"])
    assert args.web_basic_auth_user == "u"
    assert args.web_basic_auth_pass == "p"
    assert args.textfile_dir == "/tmp/prom"


def test_main_rejects_half_configured_auth(monkeypatch):
    """Test main refuses to start with only a basic auth user"""
    monkeypatch.delenv("F2B_WEB_BASICAUTH_PASS", raising=False)
    monkeypatch.setenv("F2B_WEB_BASICAUTH_USER", "prometheus")
    assert main(["--dry-run"]) == 1
