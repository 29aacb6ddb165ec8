import base64
import hashlib
import json
import time
from pathlib import Path

import httpx
import pytest
import respx

from codex_pool.accounts.types import ManagedAccount
from codex_pool.usage import snapshot_tracker as snapshot_tracker_module
from codex_pool.usage.snapshot_tracker import (
    SNAPSHOT_RETENTION_MS,
    STALENESS_TTL_MS,
    WHAM_USAGE_URL,
    UsageSnapshotTracker,
    snapshot_key,
)
from codex_pool.usage.types import UsageWindow


def _build_jwt(payload: dict) -> str:
    header = {"alg": "HS256", "typ": "JWT"}

    def b64url(data: dict) -> str:
        raw = json.dumps(data, separators=(",", ":")).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")

    return f"{b64url(header)}.{b64url(payload)}.sig"


def _account(**overrides) -> ManagedAccount:
    fields = dict(
        index=0,
        refresh_token="rt_a",
        email="A@Example.com",
        account_id="acct_1",
        plan_type="plus",
    )
    fields.update(overrides)
    return ManagedAccount(**fields)


@pytest.fixture
def clock(monkeypatch):
    state = {"now": int(time.time() * 1000)}
    monkeypatch.setattr(snapshot_tracker_module, "now_ms", lambda: state["now"])
    return state


def test_snapshot_key_prefers_identity_triple():
    assert snapshot_key(_account()) == "acct_1|a@example.com|plus"


def test_snapshot_key_falls_back_to_refresh_token_hash():
    account = _account(plan_type=None)

    assert snapshot_key(account) == hashlib.sha256(b"rt_a").hexdigest()


@pytest.mark.asyncio
async def test_headers_are_parsed_and_clamped(tmp_path: Path, clock):
    tracker = UsageSnapshotTracker(tmp_path / "snapshots.json")
    account = _account()

    snapshot = await tracker.record_from_headers(
        account,
        {
            "X-Codex-Primary-Used-Percent": "150",
            "X-Codex-Primary-Window-Minutes": "300",
            "X-Codex-Primary-Reset-At": "1893456000",
            "x-codex-secondary-used-percent": "-50",
            "x-codex-secondary-window-minutes": "-10",
            "x-codex-secondary-reset-at": "1893456000000",
            "x-codex-credits-has-credits": "true",
            "x-codex-credits-unlimited": "0",
            "x-codex-credits-balance": "42",
        },
    )

    assert snapshot.primary.used_percent == 100
    assert snapshot.primary.window_minutes == 300
    assert snapshot.primary.reset_at == 1893456000 * 1000
    assert snapshot.secondary.used_percent == 0
    assert snapshot.secondary.window_minutes == 0
    assert snapshot.secondary.reset_at == 1893456000000
    assert snapshot.credits.has_credits is True
    assert snapshot.credits.unlimited is False
    assert snapshot.credits.balance == "42"
    assert snapshot.updated_at == clock["now"]


@pytest.mark.asyncio
async def test_partial_headers_keep_previous_values(tmp_path: Path, clock):
    tracker = UsageSnapshotTracker(tmp_path / "snapshots.json")
    account = _account()
    await tracker.record_from_headers(
        account,
        {
            "x-codex-primary-used-percent": "10",
            "x-codex-primary-window-minutes": "300",
            "x-codex-primary-reset-at": "1893456000",
            "x-codex-secondary-used-percent": "5",
        },
    )

    clock["now"] += 1000
    snapshot = await tracker.record_from_headers(
        account, {"x-codex-primary-used-percent": "20.5", "x-codex-primary-window-minutes": "abc"}
    )

    assert snapshot.primary.used_percent == 20.5
    assert snapshot.primary.window_minutes == 300
    assert snapshot.primary.reset_at == 1893456000 * 1000
    assert snapshot.secondary.used_percent == 5
    assert snapshot.credits is None


@pytest.mark.asyncio
async def test_snapshot_staleness(tmp_path: Path, clock):
    tracker = UsageSnapshotTracker(tmp_path / "snapshots.json")
    account = _account()
    await tracker.record_from_headers(account, {"x-codex-primary-used-percent": "10"})

    assert (await tracker.get_snapshot(account)).is_stale is False

    clock["now"] += STALENESS_TTL_MS + 1
    assert (await tracker.get_snapshot(account)).is_stale is True


@pytest.mark.asyncio
async def test_get_snapshot_returns_copy(tmp_path: Path, clock):
    tracker = UsageSnapshotTracker(tmp_path / "snapshots.json")
    account = _account()
    await tracker.record_from_headers(account, {"x-codex-primary-used-percent": "10"})

    copy_one = await tracker.get_snapshot(account)
    copy_one.primary.used_percent = 99

    assert (await tracker.get_snapshot(account)).primary.used_percent == 10
    assert await tracker.get_snapshot(_account(account_id="other")) is None


@pytest.mark.asyncio
async def test_save_is_idempotent(tmp_path: Path, clock):
    path = tmp_path / "snapshots.json"
    tracker = UsageSnapshotTracker(path)
    await tracker.record_from_headers(_account(), {"x-codex-primary-used-percent": "10"})
    first = path.read_text(encoding="utf-8")

    assert await tracker.save() is True
    assert path.read_text(encoding="utf-8") == first


@pytest.mark.asyncio
async def test_save_keeps_newer_disk_entries_and_foreign_keys(tmp_path: Path, clock):
    path = tmp_path / "snapshots.json"
    tracker = UsageSnapshotTracker(path)
    account = _account()
    key = snapshot_key(account)
    await tracker.record_from_headers(account, {"x-codex-primary-used-percent": "10"})

    # Another process writes a newer entry for the same key and one of its own
    newer = {
        "accountId": "acct_1",
        "email": "a@example.com",
        "plan": "plus",
        "updatedAt": clock["now"] + 60000,
        "primary": {"usedPercent": 90, "windowMinutes": 300, "resetAt": 0},
        "secondary": None,
        "credits": None,
    }
    foreign = dict(newer, accountId="acct_2", updatedAt=clock["now"])
    path.write_text(json.dumps([[key, newer], ["other-key", foreign]]), encoding="utf-8")

    assert await tracker.save() is True

    on_disk = dict((k, v) for k, v in json.loads(path.read_text(encoding="utf-8")))
    assert on_disk[key]["primary"]["usedPercent"] == 90
    assert "other-key" in on_disk
    assert (await tracker.get_snapshot(account)).primary.used_percent == 90


@pytest.mark.asyncio
async def test_update_recorded_during_save_is_not_lost(tmp_path: Path, clock, monkeypatch):
    path = tmp_path / "snapshots.json"
    tracker = UsageSnapshotTracker(path)
    other = _account(refresh_token="rt_b", email="b@example.com", account_id="acct_2")
    real_to_thread = snapshot_tracker_module.asyncio.to_thread
    raced = []

    async def racing_to_thread(fn, *args, **kwargs):
        # Another request lands after the in-memory copy was taken
        if fn == tracker._merge_and_write and not raced:
            raced.append(True)
            tracker._store(other, UsageWindow(used_percent=55, window_minutes=300), None, None)
        return await real_to_thread(fn, *args, **kwargs)

    monkeypatch.setattr(snapshot_tracker_module.asyncio, "to_thread", racing_to_thread)

    await tracker.record_from_headers(_account(), {"x-codex-primary-used-percent": "10"})

    assert raced
    snapshots = await tracker.get_all_snapshots()
    assert snapshots[snapshot_key(other)].primary.used_percent == 55
    assert snapshot_key(_account()) in snapshots

    assert await tracker.save() is True
    on_disk = dict((k, v) for k, v in json.loads(path.read_text(encoding="utf-8")))
    assert on_disk[snapshot_key(other)]["primary"]["usedPercent"] == 55


@pytest.mark.asyncio
async def test_save_prunes_old_entries(tmp_path: Path, clock):
    path = tmp_path / "snapshots.json"
    ancient = {"accountId": "old", "updatedAt": clock["now"] - SNAPSHOT_RETENTION_MS - 1}
    path.write_text(json.dumps([["old-key", ancient]]), encoding="utf-8")
    tracker = UsageSnapshotTracker(path)

    await tracker.record_from_headers(_account(), {"x-codex-primary-used-percent": "10"})

    keys = [k for k, _ in json.loads(path.read_text(encoding="utf-8"))]
    assert keys == [snapshot_key(_account())]
    assert "old-key" not in await tracker.get_all_snapshots()


@pytest.mark.asyncio
async def test_loads_existing_file_lazily(tmp_path: Path, clock):
    path = tmp_path / "snapshots.json"
    account = _account()
    entry = {
        "accountId": "acct_1",
        "updatedAt": clock["now"],
        "primary": {"usedPercent": 33, "windowMinutes": 300, "resetAt": 0},
    }
    path.write_text(json.dumps([[snapshot_key(account), entry], "junk"]), encoding="utf-8")

    tracker = UsageSnapshotTracker(path)

    assert (await tracker.get_snapshot(account)).primary.used_percent == 33


@pytest.mark.asyncio
async def test_file_is_owner_only(tmp_path: Path, clock):
    path = tmp_path / "snapshots.json"
    tracker = UsageSnapshotTracker(path)
    await tracker.record_from_headers(_account(), {"x-codex-primary-used-percent": "10"})

    assert path.stat().st_mode & 0o777 == 0o600


@pytest.mark.asyncio
async def test_save_failure_is_not_raised(tmp_path: Path, clock):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    tracker = UsageSnapshotTracker(blocker / "snapshots.json")

    snapshot = await tracker.record_from_headers(
        _account(), {"x-codex-primary-used-percent": "10"}
    )

    assert snapshot.primary.used_percent == 10
    assert await tracker.save() is False


# =============================================================================
# RENDERING
# =============================================================================


@pytest.mark.asyncio
async def test_render_unknown_when_no_snapshot(tmp_path: Path, clock):
    tracker = UsageSnapshotTracker(tmp_path / "snapshots.json")

    lines = await tracker.render(_account())

    assert len(lines) == 2
    assert lines[0].startswith("  5h limit:")
    assert lines[0].endswith("[" + "-" * 20 + "] unknown")
    assert lines[1].startswith("  Weekly limit:")


@pytest.mark.asyncio
async def test_render_bars_and_credits(tmp_path: Path, clock):
    tracker = UsageSnapshotTracker(tmp_path / "snapshots.json")
    account = _account()
    await tracker.record_from_headers(
        account,
        {
            "x-codex-primary-used-percent": "25",
            "x-codex-primary-window-minutes": "300",
            "x-codex-secondary-used-percent": "100",
            "x-codex-secondary-window-minutes": "10080",
            "x-codex-credits-has-credits": "true",
            "x-codex-credits-balance": "7",
        },
    )

    lines = await tracker.render(account)

    assert lines[0].startswith("  5h limit:        [" + "#" * 15 + "-" * 5 + "] 75% left")
    assert lines[1].startswith("  Weekly limit:    [" + "-" * 20 + "] 0% left")
    assert lines[2] == "  Credits  7 credits"


@pytest.mark.asyncio
async def test_render_marks_stale_and_unlimited(tmp_path: Path, clock):
    tracker = UsageSnapshotTracker(tmp_path / "snapshots.json")
    account = _account()
    await tracker.record_from_headers(
        account,
        {"x-codex-primary-used-percent": "50", "x-codex-credits-unlimited": "true"},
    )
    clock["now"] += STALENESS_TTL_MS + 1

    lines = await tracker.render(account)

    assert lines[0].endswith(" (stale)")
    assert lines[1].endswith("] unknown")
    assert lines[2] == "  Credits  unlimited (stale)"


@pytest.mark.asyncio
async def test_render_includes_reset_time(tmp_path: Path, clock):
    tracker = UsageSnapshotTracker(tmp_path / "snapshots.json")
    account = _account()
    reset_at = clock["now"] + 2 * 60 * 60 * 1000
    await tracker.record_from_headers(
        account,
        {"x-codex-primary-used-percent": "50", "x-codex-primary-reset-at": str(reset_at)},
    )

    lines = await tracker.render(account)

    assert "(resets " in lines[0]
    assert " on " not in lines[0]


# =============================================================================
# BACKEND QUERY
# =============================================================================


@pytest.mark.asyncio
async def test_fetch_from_backend_maps_wham_payload(tmp_path: Path, clock):
    tracker = UsageSnapshotTracker(tmp_path / "snapshots.json")
    account = _account()
    token = _build_jwt({"sub": "x"})

    with respx.mock(assert_all_called=True) as mock_router:
        route = mock_router.get(WHAM_USAGE_URL)

        def responder(request: httpx.Request) -> httpx.Response:
            assert request.headers["authorization"] == f"Bearer {token}"
            assert request.headers["openai-account-id"] == "acct_1"
            return httpx.Response(
                200,
                json={
                    "plan_type": "plus",
                    "rate_limit": {
                        "primary_window": {
                            "used_percent": 40,
                            "limit_window_seconds": 18000,
                            "reset_at": 1893456000,
                        },
                        "secondary_window": {
                            "used_percent": 5,
                            "limit_window_seconds": 604800,
                            "reset_at": 1893456000,
                        },
                    },
                    "credits": {"has_credits": True, "unlimited": False, "balance": 12.5},
                },
            )

        route.mock(side_effect=responder)

        async with httpx.AsyncClient() as client:
            ok = await tracker.fetch_from_backend(account, token, client=client)

    assert ok is True
    snapshot = await tracker.get_snapshot(account)
    assert snapshot.primary.used_percent == 40
    assert snapshot.primary.window_minutes == 300
    assert snapshot.primary.reset_at == 1893456000 * 1000
    assert snapshot.secondary.window_minutes == 10080
    assert snapshot.credits.balance == "12.5"


@pytest.mark.asyncio
async def test_fetch_from_backend_failure_returns_false(tmp_path: Path, clock):
    tracker = UsageSnapshotTracker(tmp_path / "snapshots.json")

    with respx.mock(assert_all_called=True) as mock_router:
        mock_router.get(WHAM_USAGE_URL).mock(return_value=httpx.Response(500))

        async with httpx.AsyncClient() as client:
            ok = await tracker.fetch_from_backend(_account(), _build_jwt({}), client=client)

    assert ok is False
    assert await tracker.get_snapshot(_account()) is None
