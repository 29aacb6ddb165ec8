from pathlib import Path

import pytest

from codex_pool.accounts import selector as selector_module
from codex_pool.accounts.selector import AccountSelector
from codex_pool.accounts.store import AccountStore
from codex_pool.accounts.types import MultiAccountConfig, now_ms


def _make_pool(tmp_path: Path, count: int, strategy: str = "sticky", **config_kwargs):
    config = MultiAccountConfig(strategy=strategy, **config_kwargs)
    store = AccountStore(file_path=tmp_path / "accounts.json", config=config)
    for i in range(count):
        store.add_or_update_account(f"rt_{i}", email=f"user{i}@example.com")
    selector = AccountSelector(store, pid=0)
    return store, selector


def test_sticky_returns_same_account_every_call(tmp_path: Path):
    _, selector = _make_pool(tmp_path, 3)

    picks = [selector.select_account().index for _ in range(5)]

    assert picks == [0, 0, 0, 0, 0]


def test_round_robin_cycles_and_wraps(tmp_path: Path):
    _, selector = _make_pool(tmp_path, 3, strategy="round-robin")

    picks = [selector.select_account().index for _ in range(4)]

    assert picks == [0, 1, 2, 0]


def test_hybrid_sticky_within_process_and_spreads_across_processes(tmp_path: Path):
    seed, _ = _make_pool(tmp_path, 2, strategy="hybrid")
    config = seed.config

    first_store = AccountStore(file_path=seed.file_path, config=config)
    first_store.load()
    first = AccountSelector(first_store, pid=0)
    first_pick = first.select_account()
    assert [first.select_account().index for _ in range(3)] == [first_pick.index] * 3

    second_store = AccountStore(file_path=seed.file_path, config=config)
    second_store.load()
    second = AccountSelector(second_store, pid=0)

    assert second.select_account().index != first_pick.index


def test_pid_offset_shifts_starting_account(tmp_path: Path):
    config = MultiAccountConfig(pid_offset_enabled=True)
    store = AccountStore(file_path=tmp_path / "accounts.json", config=config)
    for i in range(3):
        store.add_or_update_account(f"rt_{i}")

    selector = AccountSelector(store, pid=5)

    assert selector.select_account().index == 2


def test_rate_limited_account_is_skipped_and_demotion_sticks(tmp_path: Path):
    store, selector = _make_pool(tmp_path, 2)
    a, b = store.accounts

    store.mark_rate_limited(a, 60000, "m")

    assert selector.select_account("m") is b
    assert selector.select_account("m") is b
    # Other models are unaffected by a per-model limit
    assert selector.select_account("other") is b


def test_global_rate_limit_applies_to_all_models(tmp_path: Path):
    store, selector = _make_pool(tmp_path, 2, per_model_rate_limits=False)
    a, b = store.accounts

    store.mark_rate_limited(a, 60000, "m")

    assert a.global_rate_limit_reset is not None
    assert a.rate_limit_resets == {}
    assert selector.select_account("anything") is b


def test_round_robin_skips_limited_until_reset(tmp_path: Path, monkeypatch):
    store, selector = _make_pool(tmp_path, 3, strategy="round-robin")
    a, b, c = store.accounts
    start = now_ms()
    monkeypatch.setattr(selector_module, "now_ms", lambda: start)

    store.mark_rate_limited(b, 60000, "m")

    picks = [selector.select_account("m") for _ in range(4)]
    assert picks == [a, c, a, c]

    monkeypatch.setattr(selector_module, "now_ms", lambda: start + 120000)
    later = [selector.select_account("m") for _ in range(3)]
    assert b in later


def test_fallback_picks_soonest_reset(tmp_path: Path):
    store, selector = _make_pool(tmp_path, 3)
    a, b, c = store.accounts
    store.mark_rate_limited(a, 300000, "m")
    store.mark_rate_limited(b, 60000, "m")
    store.mark_rate_limited(c, 120000, "m")

    assert selector.select_account("m") is b
    assert store.active_index == 1


def test_fallback_tie_goes_to_lowest_index(tmp_path: Path):
    store, selector = _make_pool(tmp_path, 3)
    reset = now_ms() + 60000
    for account in store.accounts:
        account.global_rate_limit_reset = reset
    store.active_index = 2

    assert selector.select_account().index == 0


def test_failure_ceiling_excludes_from_scan_and_fallback(tmp_path: Path):
    store, selector = _make_pool(tmp_path, 2)
    a, b = store.accounts
    a.consecutive_failures = 3
    store.mark_rate_limited(b, 60000, "m")

    # b is limited but still the only fallback candidate
    assert selector.select_account("m") is b

    b.consecutive_failures = 3
    assert selector.select_account("m") is None


def test_empty_pool_returns_none(tmp_path: Path):
    _, selector = _make_pool(tmp_path, 0)

    assert selector.select_account() is None
    assert selector.round_robin_cursor == 0


def test_selection_stamps_last_used(tmp_path: Path):
    store, selector = _make_pool(tmp_path, 1)
    store.accounts[0].last_used = 0

    account = selector.select_account()

    assert account.last_used > 0


def test_removal_resets_cursor_into_range(tmp_path: Path):
    store, selector = _make_pool(tmp_path, 3, strategy="round-robin")
    for _ in range(3):
        selector.select_account()
    store.active_index = 2

    store.remove_account(store.accounts[2])

    assert store.active_index == 1
    assert 0 <= selector.round_robin_cursor < store.count
    assert selector.select_account() is not None


def test_round_robin_fallback_advances_cursor_past_fallback(tmp_path: Path):
    store, selector = _make_pool(tmp_path, 3, strategy="round-robin")
    a, b, c = store.accounts
    store.mark_rate_limited(a, 300000, "m")
    store.mark_rate_limited(b, 60000, "m")
    store.mark_rate_limited(c, 120000, "m")

    assert selector.select_account("m") is b
    assert selector.round_robin_cursor == 2

    # Another model is unaffected; the scan resumes after the fallback
    assert selector.select_account("other") is c


def test_sticky_fallback_leaves_cursor_alone(tmp_path: Path):
    store, selector = _make_pool(tmp_path, 3)
    selector.select_account()
    cursor = selector.round_robin_cursor
    a, b, c = store.accounts
    store.mark_rate_limited(a, 300000, "m")
    store.mark_rate_limited(b, 60000, "m")
    store.mark_rate_limited(c, 120000, "m")

    assert selector.select_account("m") is store.accounts[1]
    assert selector.round_robin_cursor == cursor


def test_peek_account_does_not_touch_selection_state(tmp_path: Path):
    store, selector = _make_pool(tmp_path, 3, strategy="round-robin")
    selector.select_account()
    cursor = selector.round_robin_cursor
    store.active_index = 1
    store.accounts[1].consecutive_failures = 3
    last_used = [account.last_used for account in store.accounts]

    assert selector.peek_account() is store.accounts[2]
    assert selector.round_robin_cursor == cursor
    assert store.active_index == 1
    assert [account.last_used for account in store.accounts] == last_used


def test_peek_account_none_when_all_disabled(tmp_path: Path):
    store, selector = _make_pool(tmp_path, 2)
    for account in store.accounts:
        account.consecutive_failures = 3

    assert selector.peek_account() is None
