from tracksync.store.state import SyncState

ACCOUNT = "acct@example.com"


def test_unknown_account_starts_initial(state_store):
    state = state_store.load(ACCOUNT)

    assert state.initial
    assert state.pending_deletion_ids == set()
    assert state.pending_imports == {}


def test_commit_then_load(state_store):
    state_store.commit(ACCOUNT, SyncState(largest_change_id=42, pending_imports={"f9": 1}))

    state = state_store.load(ACCOUNT)

    assert state.largest_change_id == 42
    assert state.pending_imports == {"f9": 1}
    assert not state.initial


def test_commit_never_lowers_cursor(state_store):
    state_store.commit(ACCOUNT, SyncState(largest_change_id=50))

    committed = state_store.commit(ACCOUNT, SyncState(largest_change_id=40))
    assert committed.largest_change_id == 50

    committed = state_store.commit(ACCOUNT, SyncState(largest_change_id=None))
    assert committed.largest_change_id == 50
    assert state_store.load(ACCOUNT).largest_change_id == 50


def test_deletion_queued_during_cycle_survives_commit(state_store):
    state_store.queue_deletion(ACCOUNT, "old")
    loaded = state_store.load(ACCOUNT)

    state_store.queue_deletion(ACCOUNT, "queued-mid-cycle")
    state_store.commit(
        ACCOUNT,
        SyncState(largest_change_id=10, pending_deletion_ids=loaded.pending_deletion_ids - {"old"}),
        flushed_ids={"old"},
    )

    assert state_store.load(ACCOUNT).pending_deletion_ids == {"queued-mid-cycle"}


def test_queue_deletion_ignores_empty_id(state_store):
    state_store.queue_deletion(ACCOUNT, "")

    assert state_store.load(ACCOUNT).pending_deletion_ids == set()


def test_accounts_are_isolated(state_store):
    state_store.commit("a", SyncState(largest_change_id=5))
    state_store.queue_deletion("b", "f1")

    assert state_store.load("a").pending_deletion_ids == set()
    assert state_store.load("b").initial


def test_reset_forgets_cursor_but_keeps_deletions(state_store):
    state_store.queue_deletion(ACCOUNT, "f1")
    state_store.commit(ACCOUNT, SyncState(largest_change_id=7, pending_imports={"f2": 1}))

    state_store.reset(ACCOUNT)

    state = state_store.load(ACCOUNT)
    assert state.initial
    assert state.pending_imports == {}
    assert state.pending_deletion_ids == {"f1"}
