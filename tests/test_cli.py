from __future__ import annotations

import json
import sys
import types

import click
import pytest
from click.testing import CliRunner

from mosaic_pipeline import cli as cli_mod
from mosaic_pipeline.queue.models import Task
from mosaic_pipeline.queue.store import queue_keys
from tests._helpers.redis import fake_client, fake_server, sync_client


@pytest.fixture()
def server(monkeypatch: pytest.MonkeyPatch):
    srv = fake_server()
    monkeypatch.setattr(cli_mod, "build_redis_client", lambda url=None: fake_client(srv))
    return srv


def _invoke(*args: str):
    return CliRunner().invoke(cli_mod.cli, list(args), catch_exceptions=False)


def test_enqueue_then_stats(server) -> None:
    res = _invoke(
        "enqueue", "images", "image_processing", "--payload", '{"image_id": "abc"}', "--priority", "7"
    )
    assert res.exit_code == 0, res.output
    task = json.loads(res.output)
    assert task["type"] == "image_processing"
    assert task["priority"] == 7
    assert task["payload"] == {"image_id": "abc"}

    r = sync_client(server)
    assert r.llen(queue_keys("images").band(7)) == 1

    res = _invoke("stats", "--json")
    assert res.exit_code == 0, res.output
    body = json.loads(res.output)
    assert body["images"]["pending_tasks"] == 1
    assert body["ai_images"]["pending_tasks"] == 0

    res = _invoke("stats")
    assert "images: pending=1 delayed=0 completed=0 failed=0" in res.output


def test_enqueue_rejects_bad_payload(server) -> None:
    res = CliRunner().invoke(cli_mod.cli, ["enqueue", "images", "x", "--payload", "[1, 2]"])
    assert res.exit_code != 0
    res = CliRunner().invoke(cli_mod.cli, ["enqueue", "images", "x", "--payload", "{nope"])
    assert res.exit_code != 0
    res = CliRunner().invoke(cli_mod.cli, ["enqueue", "images", "x", "--priority", "11"])
    assert res.exit_code != 0


def test_delayed_enqueue_and_adhoc_stats(server) -> None:
    res = _invoke("enqueue", "reports", "build", "--delay", "3600")
    assert res.exit_code == 0, res.output
    res = _invoke("stats", "--json", "--queue", "reports")
    body = json.loads(res.output)
    assert body["reports"]["delayed_tasks"] == 1

    res = _invoke("sweep", "reports")
    assert res.output.strip() == "moved=0"


def test_sweep_moves_due_tasks(server) -> None:
    r = sync_client(server)
    t = Task(id="due1", type="x", priority=4)
    r.zadd(queue_keys("images").delayed, {t.to_json(): 1.0})
    res = _invoke("sweep", "images")
    assert res.output.strip() == "moved=1"
    assert r.llen(queue_keys("images").band(4)) == 1


def test_requeue(server) -> None:
    r = sync_client(server)
    t = Task(id="f1", type="email_sending", priority=3, retries=5, max_retries=5, error="x")
    r.zadd(queue_keys("images").failed, {t.to_json(): 1.0})

    res = CliRunner().invoke(cli_mod.cli, ["requeue", "images", "missing"])
    assert res.exit_code == 1
    assert "not found" in res.output

    res = _invoke("requeue", "images", "f1")
    assert res.exit_code == 0, res.output
    assert json.loads(res.output)["retries"] == 0
    assert r.zcard(queue_keys("images").failed) == 0
    assert r.llen(queue_keys("images").band(3)) == 1


def test_cleanup(server) -> None:
    r = sync_client(server)
    old = Task(id="c1", type="x")
    r.zadd(queue_keys("ai_images").completed, {old.to_json(): 1.0})
    res = _invoke("cleanup")
    assert res.exit_code == 0, res.output
    body = json.loads(res.output)
    assert body["ai_images"] == {"completed": 1, "failed": 0}
    assert body["images"] == {"completed": 0, "failed": 0}


def test_config_report_hides_secrets(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REDIS_PASSWORD", "hunter2-super-secret")
    from mosaic_pipeline.config import get_settings

    get_settings.cache_clear()
    res = _invoke("config")
    assert res.exit_code == 0
    assert "hunter2-super-secret" not in res.output
    body = json.loads(res.output)
    assert body["secrets"]["redis_password"] == "SET"
    assert body["public"]["queue_key_prefix"] == "test"


def test_worker_rejects_bad_services_target() -> None:
    res = CliRunner().invoke(cli_mod.cli, ["worker", "--services", "no_colon_here"])
    assert res.exit_code != 0
    assert "module:callable" in res.output


def test_load_services(monkeypatch: pytest.MonkeyPatch) -> None:
    mod = types.ModuleType("mq_fake_services")
    mod.build = lambda: ("svc", "mailer")
    mod.bad = lambda: "just-one"
    monkeypatch.setitem(sys.modules, "mq_fake_services", mod)
    assert cli_mod._load_services("mq_fake_services:build") == ("svc", "mailer")
    with pytest.raises(click.BadParameter, match="must return"):
        cli_mod._load_services("mq_fake_services:bad")
