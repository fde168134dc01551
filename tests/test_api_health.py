import redis


class _Redis:
    def __init__(self, healthy: bool):
        self.healthy = healthy

    def ping(self):
        if not self.healthy:
            raise redis.ConnectionError("connection refused")
        return True


def test_health_ok(client, monkeypatch):
    monkeypatch.setattr(redis, "from_url", lambda *args, **kwargs: _Redis(True))

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "checks": {"db": True, "redis": True}}
    assert "set-cookie" not in response.headers


def test_health_degraded_without_redis(client, monkeypatch):
    monkeypatch.setattr(redis, "from_url", lambda *args, **kwargs: _Redis(False))

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "degraded", "checks": {"db": True, "redis": False}}


def test_serve_binds_http_addr(monkeypatch):
    import uvicorn

    import lobster.main as main_module

    calls = []
    monkeypatch.setattr(main_module, "settings", main_module.settings.model_copy(update={"http_addr": "127.0.0.1:9000"}))
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))

    main_module.serve()

    assert calls == [("lobster.main:app", {"host": "127.0.0.1", "port": 9000, "proxy_headers": False})]
