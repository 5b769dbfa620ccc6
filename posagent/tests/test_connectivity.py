import urllib.error

from posagent.workers import connectivity as connectivity_mod
from posagent.workers.connectivity import ConnectivityMonitor, server_health


def test_server_health_without_url_is_down():
    res = server_health("")
    assert res["ok"] is False
    assert res["error"] == "missing api_base_url"


def test_server_health_reads_ok_flag(monkeypatch):
    seen = []

    def fake_fetch(url, timeout_s=1.0):
        seen.append(url)
        return {"ok": False, "status": "degraded"}

    monkeypatch.setattr(connectivity_mod, "_fetch_json_timeout", fake_fetch)
    res = server_health("http://server/")
    assert seen == ["http://server/health"]
    assert res["ok"] is False
    assert res["error"] is None


def test_server_health_network_error(monkeypatch):
    def fake_fetch(url, timeout_s=1.0):
        raise urllib.error.URLError("no route to host")

    monkeypatch.setattr(connectivity_mod, "_fetch_json_timeout", fake_fetch)
    res = server_health("http://server")
    assert res["ok"] is False
    assert "no route to host" in res["error"]


def test_subscribers_fire_only_on_transitions():
    mon = ConnectivityMonitor(initial=False)
    seen = []
    mon.subscribe(seen.append)

    assert mon.set_online(False) is False
    assert mon.set_online(True) is True
    assert mon.set_online(True) is False
    assert mon.set_online(False) is True
    assert seen == [True, False]


def test_probe_updates_state(monkeypatch):
    monkeypatch.setattr(connectivity_mod, "_fetch_json_timeout", lambda url, timeout_s=1.0: {"status": "ok"})
    mon = ConnectivityMonitor("http://server")
    assert mon.online is False
    assert mon.probe() is True
    assert mon.online is True
    assert mon.last_probe["url"] == "http://server/health"


def test_broken_listener_does_not_block_others():
    mon = ConnectivityMonitor(initial=False)
    seen = []

    def broken(_online):
        raise RuntimeError("ui gone")

    mon.subscribe(broken)
    mon.subscribe(seen.append)
    mon.set_online(True)
    assert seen == [True]
