import json
from decimal import Decimal

import pytest

from orderwatch.core.errors import InvalidStateError, PersistenceError, ValidationError
from orderwatch.orders.models import OrderDraft, OrderStatus
from orderwatch.persistence.audit import Audit
from orderwatch.persistence.json_store import InMemoryRepository, JsonFileRepository
from orderwatch.persistence.trigger_store import TriggerStore


def _draft(**overrides) -> OrderDraft:
    kwargs = dict(
        symbol="BTCUSDT",
        side="SELL",
        order_type="STOP_LOSS",
        quantity="0.01",
        trigger_price="40000",
    )
    kwargs.update(overrides)
    return OrderDraft.build(**kwargs)


class _BrokenRepo:
    def __init__(self):
        self.attempts = 0

    def load(self):
        raise PersistenceError("disk gone")

    def save(self, records):
        self.attempts += 1
        raise PersistenceError("disk full")


class _RecordingAudit(Audit):
    """Audit without sinks; keeps every event in memory."""

    def __init__(self):
        super().__init__()
        self.events = []

    def event(self, **kw):
        self.events.append(kw)


@pytest.fixture
def store():
    return TriggerStore(InMemoryRepository())


def test_create_assigns_increasing_ids_and_persists(store):
    a = store.create(_draft())
    b = store.create(_draft(symbol="ETHUSDT"))
    assert (a, b) == (1, 2)
    assert store.repo.save_calls == 2

    o = store.get(a)
    assert o.status is OrderStatus.PENDING
    assert o.create_time
    assert o.trigger_time is None


def test_get_returns_copies(store):
    oid = store.create(_draft())
    o = store.get(oid)
    o.status = OrderStatus.EXECUTED
    assert store.get(oid).status is OrderStatus.PENDING


def test_queries(store):
    store.create(_draft(symbol="BTCUSDT", quantity="0.5", trigger_price="100"))
    store.create(_draft(symbol="ethusdt", quantity="2", trigger_price="10"))
    done = store.create(_draft(symbol="BTCUSDT"))
    store.cancel(done)

    assert [o.symbol for o in store.list_by_symbol("btcusdt")] == ["BTCUSDT", "BTCUSDT"]
    assert [o.id for o in store.list_by_status("cancelled")] == [done]
    assert store.active_count() == 2
    assert store.total_active_value() == Decimal("70")


def test_update_fields_on_pending(store):
    oid = store.create(_draft())
    assert store.update_fields(oid, {"triggerPrice": "39000", "remark": "tighter"}) is True
    o = store.get(oid)
    assert o.trigger_price == Decimal("39000")
    assert o.remark == "tighter"


def test_update_unknown_id_returns_false(store):
    assert store.update_fields(99, {"remark": "x"}) is False


@pytest.mark.parametrize(
    "patch",
    [
        {},
        {"status": "EXECUTED"},
        {"quantity": "0"},
        {"triggerPrice": "-1"},
        {"triggerPrice": "NaN"},
        {"type": "STOP_LIMIT"},  # would need an orderPrice
    ],
)
def test_update_rejects_bad_patch_without_mutating(store, patch):
    oid = store.create(_draft())
    before = store.get(oid)
    with pytest.raises(ValidationError):
        store.update_fields(oid, patch)
    assert store.get(oid) == before


def test_update_trading_fields_after_trigger_is_refused(store):
    oid = store.create(_draft())
    store.mark_triggered(oid)
    with pytest.raises(InvalidStateError):
        store.update_fields(oid, {"quantity": "1"})
    # display-only fields stay editable
    assert store.update_fields(oid, {"remark": "checked manually"}) is True


def test_cancel_pending_removes_it_from_active_set(store):
    oid = store.create(_draft())
    other = store.create(_draft(symbol="ETHUSDT"))

    assert store.cancel(oid) is True
    assert store.get(oid).status is OrderStatus.CANCELLED
    assert [o.id for o in store.list_active()] == [other]


def test_cancel_refuses_non_pending(store):
    oid = store.create(_draft())
    store.mark_triggered(oid)
    with pytest.raises(InvalidStateError):
        store.cancel(oid)
    assert store.get(oid).status is OrderStatus.TRIGGERED
    assert store.cancel(404) is False


def test_delete_triggered_is_refused_and_record_kept(store):
    oid = store.create(_draft())
    store.mark_triggered(oid)
    before = store.get(oid)

    with pytest.raises(InvalidStateError):
        store.delete(oid)
    assert store.get(oid) == before


def test_delete_terminal_record(store):
    oid = store.create(_draft())
    store.cancel(oid)
    assert store.delete(oid) is True
    assert store.get(oid) is None
    assert store.delete(oid) is False


def test_mark_triggered_claims_once(store):
    oid = store.create(_draft())
    first = store.mark_triggered(oid)
    assert first is not None
    assert first.status is OrderStatus.TRIGGERED
    assert first.trigger_time
    assert store.mark_triggered(oid) is None


def test_mark_executed_and_failed(store):
    a = store.create(_draft())
    b = store.create(_draft())
    store.mark_triggered(a)
    store.mark_triggered(b)

    done = store.mark_executed(a, "987654")
    assert done.status is OrderStatus.EXECUTED
    assert done.exchange_order_id == "987654"
    assert done.execute_time

    failed = store.mark_failed(b, "rejected by exchange: [-2019] Margin is insufficient.")
    assert failed.status is OrderStatus.FAILED
    assert "Margin" in failed.fail_reason

    with pytest.raises(InvalidStateError):
        store.mark_executed(b, "1")


def test_save_load_round_trip(tmp_path):
    path = tmp_path / "orders.json"
    s1 = TriggerStore(JsonFileRepository(str(path)))
    a = s1.create(_draft(remark="first"))
    b = s1.create(_draft(order_type="STOP_LIMIT", order_price="39950.5", side="BUY"))
    s1.mark_triggered(a)
    s1.mark_executed(a, "42")

    s2 = TriggerStore(JsonFileRepository(str(path)))
    assert s2.load_from_disk() == 2
    assert s2.list() == s1.list()
    assert s2.get(b).order_price == Decimal("39950.5")

    # ids continue after the highest loaded id
    assert s2.create(_draft()) == 3

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw[0]["triggerPrice"] == "40000"
    assert raw[0]["exchangeOrderId"] == "42"


def test_missing_file_loads_empty(tmp_path):
    s = TriggerStore(JsonFileRepository(str(tmp_path / "nope.json")))
    assert s.load_from_disk() == 0
    assert s.list() == []


def test_corrupt_file_loads_empty(tmp_path):
    path = tmp_path / "orders.json"
    path.write_text("{not json", encoding="utf-8")
    s = TriggerStore(JsonFileRepository(str(path)))
    assert s.load_from_disk() == 0
    assert s.create(_draft()) == 1


def test_undecodable_file_loads_empty(tmp_path):
    path = tmp_path / "orders.json"
    path.write_bytes(b"\xff\xfe[garbage\x80")
    with pytest.raises(PersistenceError):
        JsonFileRepository(str(path)).load()

    s = TriggerStore(JsonFileRepository(str(path)))
    assert s.load_from_disk() == 0
    assert s.list() == []


def test_bad_and_duplicate_rows_are_skipped():
    repo = InMemoryRepository(
        [
            {"id": 1, "symbol": "BTCUSDT", "side": "SELL", "type": "STOP_LOSS", "quantity": "1", "triggerPrice": "10"},
            {"id": 1, "symbol": "ETHUSDT", "side": "SELL", "type": "STOP_LOSS", "quantity": "1", "triggerPrice": "10"},
            {"id": 2, "symbol": "BTCUSDT", "side": "SIDEWAYS", "type": "STOP_LOSS"},
            {"symbol": "no id"},
            {"id": 3, "symbol": "BTCUSDT", "side": "SELL", "type": "STOP_LOSS", "quantity": "NaN", "triggerPrice": "10"},
            {"id": 4, "symbol": "BTCUSDT", "side": "SELL", "type": "STOP_LOSS", "quantity": "1", "triggerPrice": "Infinity"},
            {"id": 5, "symbol": "XRPUSDT", "side": "BUY", "type": "TAKE_PROFIT", "quantity": "3", "triggerPrice": "0.5"},
        ]
    )
    s = TriggerStore(repo)
    assert s.load_from_disk() == 2
    assert s.get(1).symbol == "BTCUSDT"
    assert s.create(_draft()) == 6


def test_triggered_records_on_load_are_reported_not_reset():
    audit = _RecordingAudit()
    repo = InMemoryRepository(
        [
            {"id": 4, "symbol": "BTCUSDT", "side": "SELL", "type": "STOP_LOSS",
             "quantity": "1", "triggerPrice": "10", "status": "TRIGGERED"},
        ]
    )
    s = TriggerStore(repo, audit=audit)
    s.load_from_disk()

    assert s.get(4).status is OrderStatus.TRIGGERED
    stuck = [e for e in audit.events if e["action"] == "STUCK_TRIGGERED_ON_LOAD"]
    assert stuck and stuck[0]["details"]["ids"] == [4]


def test_save_failure_keeps_memory_state():
    repo = _BrokenRepo()
    audit = _RecordingAudit()
    s = TriggerStore(repo, audit=audit)

    assert s.load_from_disk() == 0
    oid = s.create(_draft())
    assert s.get(oid).status is OrderStatus.PENDING
    assert repo.attempts == 1
    assert any(e["action"] == "SAVE_FAILED" and e["event_type"] == "ERROR" for e in audit.events)
    assert s.save_to_disk() is False
