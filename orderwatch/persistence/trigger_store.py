# orderwatch/persistence/trigger_store.py
from __future__ import annotations

import logging
import threading
from dataclasses import replace
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from orderwatch.core.errors import (
    InvalidStateError,
    PersistenceError,
    ValidationError,
)
from orderwatch.orders.models import (
    ConditionalOrder,
    OrderDraft,
    OrderSide,
    OrderStatus,
    OrderType,
    parse_enum,
    to_decimal,
    utc_now_iso,
)
from orderwatch.orders.state_machine import ensure_transition, is_active
from orderwatch.persistence.json_store import RecordRepository

log = logging.getLogger("orderwatch.store")

# patch key (lower-cased, camelCase or snake_case) -> attribute
_PATCH_FIELDS = {
    "symbol": "symbol",
    "side": "side",
    "type": "order_type",
    "order_type": "order_type",
    "quantity": "quantity",
    "triggerprice": "trigger_price",
    "trigger_price": "trigger_price",
    "orderprice": "order_price",
    "order_price": "order_price",
    "remark": "remark",
}

# fields that stay editable once a record has left PENDING
_DISPLAY_FIELDS = {"remark"}


class TriggerStore:
    """
    Sole owner of conditional-order state.

    Every read and write goes through one re-entrant lock, so the monitor
    sweep and external callers (HTTP surface) never race on the list. Each
    mutation rewrites the whole file through the repository. Callers always
    receive copies; the live records never leave the store.
    """

    def __init__(
        self,
        repo: RecordRepository,
        *,
        audit=None,
        now: Callable[[], str] = utc_now_iso,
    ):
        self.repo = repo
        self.audit = audit
        self._now = now
        self._lock = threading.RLock()
        self._orders: Dict[int, ConditionalOrder] = {}
        self._next_id = 1

    # ---------------- persistence ----------------

    def load_from_disk(self) -> int:
        """Replace in-memory state with the repository contents. Never raises."""
        try:
            rows = self.repo.load()
        except PersistenceError as e:
            self._report("error", "LOAD_FAILED", f"conditional orders could not be loaded, starting empty: {e}")
            rows = []

        loaded: Dict[int, ConditionalOrder] = {}
        for row in rows:
            try:
                order = ConditionalOrder.from_dict(row)
            except (KeyError, TypeError, ValueError) as e:
                log.warning("skipping unreadable conditional order %r: %s", row, e)
                continue
            if order.id in loaded:
                log.warning("duplicate conditional order id %s in file; keeping the first", order.id)
                continue
            loaded[order.id] = order

        with self._lock:
            self._orders = loaded
            self._next_id = max(loaded, default=0) + 1

        stuck = [o.id for o in loaded.values() if o.status is OrderStatus.TRIGGERED]
        if stuck:
            # no resume-on-restart: these need a manual check against the exchange
            self._report(
                "warn",
                "STUCK_TRIGGERED_ON_LOAD",
                "left TRIGGERED by a previous run, not resubmitted",
                ids=stuck,
            )

        log.info("loaded %d conditional orders (next id %d)", len(loaded), self._next_id)
        return len(loaded)

    def save_to_disk(self) -> bool:
        with self._lock:
            rows = [o.to_dict() for o in self._orders.values()]
            try:
                self.repo.save(rows)
            except PersistenceError as e:
                # in-memory state stays authoritative; disk catches up on the next save
                self._report("error", "SAVE_FAILED", f"conditional orders could not be saved: {e}")
                return False
        return True

    # ---------------- queries ----------------

    def list(self) -> List[ConditionalOrder]:
        with self._lock:
            return [o.copy() for o in self._orders.values()]

    def get(self, order_id: int) -> Optional[ConditionalOrder]:
        with self._lock:
            o = self._orders.get(int(order_id))
            return o.copy() if o else None

    def list_active(self) -> List[ConditionalOrder]:
        return [o for o in self.list() if is_active(o.status)]

    def list_by_symbol(self, symbol: str) -> List[ConditionalOrder]:
        sym = (symbol or "").strip().upper()
        return [o for o in self.list() if o.symbol == sym]

    def list_by_status(self, status: Any) -> List[ConditionalOrder]:
        st = parse_enum(OrderStatus, status, "status")
        return [o for o in self.list() if o.status is st]

    def active_count(self) -> int:
        return len(self.list_active())

    def total_active_value(self) -> Decimal:
        return sum(
            (o.quantity * o.trigger_price for o in self.list_active()),
            Decimal("0"),
        )

    # ---------------- user operations ----------------

    def create(self, draft: OrderDraft) -> int:
        draft.validate()

        with self._lock:
            order_id = self._next_id
            self._next_id += 1

            order = ConditionalOrder(
                id=order_id,
                symbol=draft.symbol,
                side=draft.side,
                order_type=draft.order_type,
                quantity=draft.quantity,
                trigger_price=draft.trigger_price,
                order_price=draft.order_price,
                status=OrderStatus.PENDING,
                create_time=self._now(),
                remark=draft.remark,
            )
            self._orders[order_id] = order
            self.save_to_disk()

        if order.order_type is OrderType.TRAILING_STOP:
            log.warning(
                "conditional order %s is TRAILING_STOP; it is stored but never fires locally",
                order_id,
            )
        log.info(
            "created conditional order %s %s %s %s qty=%s trigger=%s",
            order_id, order.symbol, order.side.value, order.order_type.value,
            order.quantity, order.trigger_price,
        )
        self._audit("INFO", "ORDER_CREATED", order=order)
        return order_id

    def update_fields(self, order_id: int, patch: Dict[str, Any]) -> bool:
        changes = self._normalize_patch(patch)

        with self._lock:
            current = self._orders.get(int(order_id))
            if current is None:
                log.warning("update: conditional order %s not found", order_id)
                return False

            trading = set(changes) - _DISPLAY_FIELDS
            if trading and current.status is not OrderStatus.PENDING:
                raise InvalidStateError(
                    f"conditional order {order_id} is {current.status.value}; "
                    f"only {sorted(_DISPLAY_FIELDS)} can change"
                )

            candidate = replace(current, **changes)
            OrderDraft(
                symbol=candidate.symbol,
                side=candidate.side,
                order_type=candidate.order_type,
                quantity=candidate.quantity,
                trigger_price=candidate.trigger_price,
                order_price=candidate.order_price,
                remark=candidate.remark,
            ).validate()

            self._orders[candidate.id] = candidate
            self.save_to_disk()

        log.info("updated conditional order %s fields=%s", order_id, sorted(changes))
        self._audit("INFO", "ORDER_UPDATED", order=candidate, details={"fields": sorted(changes)})
        return True

    def cancel(self, order_id: int) -> bool:
        with self._lock:
            order = self._orders.get(int(order_id))
            if order is None:
                log.warning("cancel: conditional order %s not found", order_id)
                return False
            if order.status is not OrderStatus.PENDING:
                raise InvalidStateError(
                    f"conditional order {order_id} is {order.status.value}; only PENDING can be cancelled"
                )
            self._transition(order, OrderStatus.CANCELLED)
            self.save_to_disk()
            snapshot = order.copy()

        log.info("cancelled conditional order %s", order_id)
        self._audit("INFO", "ORDER_CANCELLED", order=snapshot)
        return True

    def delete(self, order_id: int) -> bool:
        with self._lock:
            order = self._orders.get(int(order_id))
            if order is None:
                log.warning("delete: conditional order %s not found", order_id)
                return False
            if is_active(order.status):
                raise InvalidStateError(
                    f"conditional order {order_id} is {order.status.value}; active orders cannot be deleted"
                )
            del self._orders[order.id]
            self.save_to_disk()

        log.info("deleted conditional order %s", order_id)
        self._audit("INFO", "ORDER_DELETED", order=order)
        return True

    # ---------------- monitor transitions ----------------

    def mark_triggered(self, order_id: int) -> Optional[ConditionalOrder]:
        """
        Claim a PENDING record for submission (PENDING -> TRIGGERED), persisted
        before returning. Returns None when the record is gone or no longer
        PENDING, so a record can be claimed at most once.
        """
        with self._lock:
            order = self._orders.get(int(order_id))
            if order is None or order.status is not OrderStatus.PENDING:
                return None
            self._transition(order, OrderStatus.TRIGGERED)
            order.trigger_time = self._now()
            self.save_to_disk()
            return order.copy()

    def mark_executed(self, order_id: int, exchange_order_id: str) -> ConditionalOrder:
        with self._lock:
            order = self._require(order_id)
            self._transition(order, OrderStatus.EXECUTED)
            order.exchange_order_id = str(exchange_order_id)
            order.execute_time = self._now()
            order.fail_reason = None
            self.save_to_disk()
            return order.copy()

    def mark_failed(self, order_id: int, reason: str) -> ConditionalOrder:
        with self._lock:
            order = self._require(order_id)
            self._transition(order, OrderStatus.FAILED)
            order.fail_reason = reason
            self.save_to_disk()
            return order.copy()

    # ---------------- internals ----------------

    def _require(self, order_id: int) -> ConditionalOrder:
        order = self._orders.get(int(order_id))
        if order is None:
            raise InvalidStateError(f"conditional order {order_id} not found")
        return order

    @staticmethod
    def _transition(order: ConditionalOrder, target: OrderStatus) -> None:
        ensure_transition(order.status, target)
        order.status = target

    @staticmethod
    def _normalize_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
        if not patch:
            raise ValidationError("empty patch")

        out: Dict[str, Any] = {}
        for key, value in patch.items():
            attr = _PATCH_FIELDS.get(str(key).strip().lower())
            if attr is None:
                raise ValidationError(f"field {key!r} is not editable")

            if attr == "symbol":
                value = str(value or "").strip().upper()
            elif attr == "side":
                value = parse_enum(OrderSide, value, "side")
            elif attr == "order_type":
                value = parse_enum(OrderType, value, "type")
            elif attr in ("quantity", "trigger_price", "order_price"):
                value = to_decimal(value, key)
            elif attr == "remark":
                value = "" if value is None else str(value)
            out[attr] = value
        return out

    def _report(self, level: str, action: str, message: str, **details: Any) -> None:
        if self.audit is None:
            lvl = logging.ERROR if level == "error" else logging.WARNING
            log.log(lvl, "%s %s %s", action, message, details or "")
            return
        getattr(self.audit, level)(action, message, **details)

    def _audit(
        self,
        level: str,
        action: str,
        order: Optional[ConditionalOrder] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self.audit is None:
            return
        payload = dict(details or {})
        if order is not None:
            payload["status"] = order.status.value
        self.audit.event(
            event_type=level,
            action=action,
            order_id=order.id if order else None,
            symbol=order.symbol if order else None,
            details=payload,
        )
