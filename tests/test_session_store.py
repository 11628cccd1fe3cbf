import threading

from session_store import QUESTION_ORDER, SessionStore


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_ensure_returns_the_same_session_for_a_call():
    store = SessionStore()
    assert store.ensure("CA1") is store.ensure("CA1")
    assert len(store) == 1


def test_calls_do_not_see_each_others_answers():
    store = SessionStore()
    store.set_answer("CA1", "name", "Priya")
    store.set_answer("CA2", "name", "Ravi")
    assert store.snapshot("CA1")["name"] == "Priya"
    assert store.snapshot("CA2")["name"] == "Ravi"


def test_expected_question_follows_dialog_order():
    store = SessionStore()
    assert store.expected_question("CA1") == "language"
    store.set_language("CA1", "Marathi")
    for question in QUESTION_ORDER[1:]:
        assert store.expected_question("CA1") == question
        store.set_answer("CA1", question, "")
    assert store.expected_question("CA1") is None


def test_drain_removes_session_and_next_event_starts_fresh():
    store = SessionStore()
    store.set_language("CA1", "Hindi")
    store.set_answer("CA1", "name", "Priya")

    drained = store.drain("CA1")
    assert drained["name"] == "Priya"
    assert drained["language"] == "Hindi"
    assert "CA1" not in store

    fresh = store.ensure("CA1")
    assert fresh.answers == {}
    assert fresh.language is None


def test_drain_of_unknown_call_returns_none():
    assert SessionStore().drain("missing") is None


def test_snapshot_keeps_the_session():
    store = SessionStore()
    store.set_answer("CA1", "email", "a@b.c")
    assert store.snapshot("CA1")["email"] == "a@b.c"
    assert "CA1" in store


def test_sweep_evicts_only_idle_sessions():
    clock = FakeClock()
    store = SessionStore(ttl_seconds=60, clock=clock)
    store.ensure("old")
    clock.now += 50
    store.ensure("recent")
    clock.now += 20

    assert store.sweep() == 1
    assert "old" not in store
    assert "recent" in store


def test_answers_refresh_the_idle_timer():
    clock = FakeClock()
    store = SessionStore(ttl_seconds=60, clock=clock)
    store.ensure("CA1")
    clock.now += 50
    store.set_answer("CA1", "name", "Priya")
    clock.now += 50
    assert store.sweep() == 0


def test_concurrent_calls_keep_their_own_answers():
    store = SessionStore()
    call_ids = [f"CA{i}" for i in range(20)]

    def answer(call_id):
        for question in QUESTION_ORDER[1:]:
            store.set_answer(call_id, question, f"{call_id}-{question}")

    threads = [threading.Thread(target=answer, args=(call_id,)) for call_id in call_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    for call_id in call_ids:
        snapshot = store.snapshot(call_id)
        assert snapshot["name"] == f"{call_id}-name"
        assert snapshot["mode"] == f"{call_id}-mode"


def test_sweeper_can_be_started_and_stopped():
    store = SessionStore()
    store.start_sweeper(interval_seconds=3600)
    store.start_sweeper(interval_seconds=3600)
    store.stop_sweeper()
    store.stop_sweeper()


def test_write_racing_a_sweep_is_not_lost(monkeypatch):
    clock = FakeClock()
    store = SessionStore(ttl_seconds=60, clock=clock)
    store.ensure("CA1")
    clock.now += 120

    ensure = store.ensure
    swept = []

    def ensure_then_sweep(call_id):
        session = ensure(call_id)
        if not swept:
            swept.append(store.sweep())
        return session

    monkeypatch.setattr(store, "ensure", ensure_then_sweep)
    store.set_answer("CA1", "name", "Priya")

    assert swept == [1]
    assert "CA1" in store
    assert store.snapshot("CA1")["name"] == "Priya"


def test_sweep_skips_a_session_in_use():
    clock = FakeClock()
    store = SessionStore(ttl_seconds=60, clock=clock)
    store.ensure("CA1")
    clock.now += 120

    holding = threading.Event()
    release = threading.Event()

    def hold():
        with store.locked("CA1"):
            holding.set()
            release.wait(5)

    worker = threading.Thread(target=hold)
    worker.start()
    holding.wait(5)
    try:
        assert store.sweep() == 0
        assert "CA1" in store
    finally:
        release.set()
        worker.join()

    assert store.sweep() == 1
