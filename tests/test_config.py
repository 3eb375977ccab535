from shared.config import BridgeSettings, env, load_settings


def test_defaults(monkeypatch):
    for key in ("LEASE_TIMEOUT_SEC", "MAX_BATCH_SIZE", "SUCCESS_CODES",
                "BRIDGE_CONNECTIONS", "BRIDGE_ROUTES", "DEFAULT_SIGNAL_TYPES"):
        monkeypatch.delenv(key, raising=False)
    s = load_settings()
    assert s.lease_timeout_sec == 30.0
    assert s.max_batch_size == 10
    assert s.success_codes == frozenset({0, 10008, 10009})
    assert s.connections == ()
    assert s.routes == {}
    assert s.default_signal_types == ("BUY", "SELL", "CLOSE")


def test_overrides(monkeypatch):
    monkeypatch.setenv("LEASE_TIMEOUT_SEC", "5")
    monkeypatch.setenv("MAX_BATCH_SIZE", "3")
    monkeypatch.setenv("SUCCESS_CODES", "10009, 0")
    monkeypatch.setenv("BRIDGE_CONNECTIONS", "mt5-a, mt5-b,")
    monkeypatch.setenv("BRIDGE_ROUTES", "room1:mt5-a, broken ,room2:mt5-b")
    monkeypatch.setenv("DEFAULT_SIGNAL_TYPES", "buy,sell")
    s = load_settings()
    assert s.lease_timeout_sec == 5.0
    assert s.max_batch_size == 3
    assert s.success_codes == frozenset({0, 10009})
    assert s.connections == ("mt5-a", "mt5-b")
    assert s.routes == {"room1": "mt5-a", "room2": "mt5-b"}
    assert s.default_signal_types == ("BUY", "SELL")


def test_bad_number_falls_back(monkeypatch):
    monkeypatch.setenv("MAX_BATCH_SIZE", "lots")
    assert load_settings().max_batch_size == BridgeSettings().max_batch_size


def test_env_bool_cast(monkeypatch):
    monkeypatch.setenv("DRY_RUN", "yes")
    assert env("DRY_RUN", False, bool) is True


def test_attempt_workers(monkeypatch):
    monkeypatch.delenv("INGEST_ATTEMPT_WORKERS", raising=False)
    assert load_settings().ingest_attempt_workers == 16
    monkeypatch.setenv("INGEST_ATTEMPT_WORKERS", "4")
    assert load_settings().ingest_attempt_workers == 4
