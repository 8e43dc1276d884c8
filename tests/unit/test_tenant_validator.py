import json
import os

from backend.core.tenant.validator import TenantAllowlist

T1 = "11111111-1111-1111-1111-111111111111"
T2 = "22222222-2222-2222-2222-222222222222"


def test_env_allowlist():
    loader = TenantAllowlist(csv=T1, path="", app_env="production")
    assert loader.validate(T1).ok
    assert loader.validate(T1.upper()).tenant_id == T1
    assert loader.validate("bad-uuid").reason == "malformed"
    assert loader.validate(None).reason == "missing"
    assert loader.validate(T2).reason == "unknown"
    assert loader.info() == ("env", 1)


def test_file_allowlist_json(tmp_path):
    p = tmp_path / "tenants.json"
    p.write_text(json.dumps({"tenants": [T2, "garbage"]}))
    loader = TenantAllowlist(csv="", path=str(p), app_env="production")
    assert loader.validate(T2).ok
    assert not loader.validate(T1).ok
    assert loader.info() == ("file", 1)


def test_empty_allowlist_admits_any_uuid_in_development():
    loader = TenantAllowlist(csv="", path="", app_env="development")
    assert loader.validate(T2).ok
    assert loader.validate("not-a-uuid").reason == "malformed"


def test_empty_allowlist_rejects_outside_development():
    loader = TenantAllowlist(csv="", path="", app_env="production")
    assert loader.validate(T1).reason == "unknown"


def test_file_reload_on_change(tmp_path, monkeypatch):
    p = tmp_path / "tenants.json"
    p.write_text(json.dumps([T1]))
    loader = TenantAllowlist(csv="", path=str(p), refresh_sec=1, app_env="production")
    assert not loader.validate(T2).ok

    p.write_text(json.dumps([T1, T2]))
    stat = p.stat()
    os.utime(p, (stat.st_atime, stat.st_mtime + 10))
    monkeypatch.setattr(loader, "_last_load", 0.0)
    assert loader.validate(T2).ok
