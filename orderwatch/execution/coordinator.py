from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from orderwatch.execution.gateway import SubmitResult
from orderwatch.ops.context import clear_sweep_id, set_sweep_id
from orderwatch.orders.models import ConditionalOrder, OrderStatus, utc_now_iso
from orderwatch.orders.trigger import should_fire

log = logging.getLogger("orderwatch.monitor")


@dataclass
class RecordOutcome:
    order_id: int
    symbol: str
    action: str  # HOLD | NO_PRICE | EXECUTED | FAILED | STILL_TRIGGERED | NOT_PENDING | ERROR
    price: Optional[str] = None
    exchange_order_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class SweepResult:
    sweep_id: Optional[str]
    skipped: bool = False
    evaluated: int = 0
    triggered: int = 0
    executed: int = 0
    failed: int = 0
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    outcomes: List[RecordOutcome] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "sweep_id": self.sweep_id,
            "skipped": self.skipped,
            "evaluated": self.evaluated,
            "triggered": self.triggered,
            "executed": self.executed,
            "failed": self.failed,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "outcomes": [o.__dict__ for o in self.outcomes],
        }


class ExecutionCoordinator:
    """
    One sweep over the active conditional orders.

    Sweeps never overlap: run_once() try-acquires a single-slot lock and drops
    the tick when a previous sweep still holds it. A fired record is moved to
    TRIGGERED (and persisted) before the exchange is called, and only PENDING
    records can be claimed, so each record is submitted at most once.
    """

    def __init__(self, store, oracle, rules, gateway, *, audit=None):
        self.store = store
        self.oracle = oracle
        self.rules = rules
        self.gateway = gateway
        self.audit = audit

        self._sweep_lock = threading.Lock()
        self.sweep_count = 0
        self.skipped_count = 0
        self.last_sweep: Optional[SweepResult] = None

    @property
    def busy(self) -> bool:
        return self._sweep_lock.locked()

    def run_once(self) -> SweepResult:
        if not self._sweep_lock.acquire(blocking=False):
            self.skipped_count += 1
            log.info("sweep skipped: previous sweep still running")
            self._event("SWEEP_SKIPPED", action="SWEEP_ALREADY_RUNNING")
            return SweepResult(sweep_id=None, skipped=True)

        sweep_id = str(uuid.uuid4())
        set_sweep_id(sweep_id)
        try:
            result = SweepResult(sweep_id=sweep_id, started_at=utc_now_iso())
            active = self.store.list_active()
            self._event("SWEEP_START", details={"active": len(active)})

            prices: Dict[str, Decimal] = {}
            for order in active:
                try:
                    outcome = self._process(order, prices)
                except Exception as e:
                    # never abort the sweep for one record
                    log.exception("conditional order %s: unexpected error", order.id)
                    outcome = RecordOutcome(order.id, order.symbol, "ERROR", reason=repr(e))

                result.outcomes.append(outcome)
                if outcome.action not in ("STILL_TRIGGERED", "NOT_PENDING"):
                    result.evaluated += 1
                if outcome.action in ("EXECUTED", "FAILED"):
                    result.triggered += 1
                if outcome.action == "EXECUTED":
                    result.executed += 1
                elif outcome.action == "FAILED":
                    result.failed += 1

            result.finished_at = utc_now_iso()
            self.sweep_count += 1
            self.last_sweep = result
            self._event(
                "SWEEP_END",
                details={
                    "evaluated": result.evaluated,
                    "triggered": result.triggered,
                    "executed": result.executed,
                    "failed": result.failed,
                },
            )
            if result.triggered:
                log.info(
                    "sweep %s: %d evaluated, %d executed, %d failed",
                    sweep_id, result.evaluated, result.executed, result.failed,
                )
            return result

        finally:
            clear_sweep_id()
            self._sweep_lock.release()

    def _process(self, order: ConditionalOrder, prices: Dict[str, Decimal]) -> RecordOutcome:
        if order.status is OrderStatus.TRIGGERED:
            # left over from an interrupted submission; never resubmitted automatically
            log.debug("conditional order %s still TRIGGERED, not re-evaluated", order.id)
            return RecordOutcome(order.id, order.symbol, "STILL_TRIGGERED")

        if order.status is not OrderStatus.PENDING:
            return RecordOutcome(order.id, order.symbol, "NOT_PENDING")

        # one price lookup per symbol per sweep
        price = prices.get(order.symbol)
        if price is None:
            price = self.oracle.latest_price(order.symbol)
            prices[order.symbol] = price

        if price <= 0:
            return RecordOutcome(order.id, order.symbol, "NO_PRICE")

        if not should_fire(order.order_type, order.side, order.trigger_price, price):
            return RecordOutcome(order.id, order.symbol, "HOLD", price=str(price))

        claimed = self.store.mark_triggered(order.id)
        if claimed is None:
            # cancelled or claimed by someone else since list_active()
            return RecordOutcome(order.id, order.symbol, "NOT_PENDING", price=str(price))

        log.info(
            "conditional order %s fired: %s %s %s trigger=%s price=%s",
            claimed.id, claimed.symbol, claimed.side.value, claimed.order_type.value,
            claimed.trigger_price, price,
        )
        self._event(
            "ORDER",
            action="ORDER_TRIGGERED",
            order=claimed,
            details={"price": str(price), "trigger_price": str(claimed.trigger_price)},
        )

        try:
            rule = self.rules.get_rule(claimed.symbol)
            result = self.gateway.submit(claimed, rule, reference_price=price)
        except Exception as e:
            # a TRIGGERED record must always end in EXECUTED or FAILED
            log.exception("conditional order %s: submission raised", claimed.id)
            result = SubmitResult(False, None, f"{type(e).__name__}: {e}")

        if result.ok:
            done = self.store.mark_executed(claimed.id, result.exchange_order_id)
            self._event(
                "ORDER",
                action="ORDER_EXECUTED",
                order=done,
                details={"exchange_order_id": done.exchange_order_id, "request": result.request},
            )
            return RecordOutcome(
                done.id, done.symbol, "EXECUTED",
                price=str(price), exchange_order_id=done.exchange_order_id,
            )

        done = self.store.mark_failed(claimed.id, result.reason)
        if self.audit is None:
            log.error("conditional order %s failed: %s", done.id, result.reason)
        else:
            self.audit.error(
                "ORDER_FAILED",
                result.reason or "",
                order_id=done.id,
                symbol=done.symbol,
                request=result.request,
            )
        return RecordOutcome(done.id, done.symbol, "FAILED", price=str(price), reason=result.reason)

    def _event(
        self,
        event_type: str,
        action: Optional[str] = None,
        order: Optional[ConditionalOrder] = None,
        details: Optional[dict] = None,
    ) -> None:
        if self.audit is None:
            return
        self.audit.event(
            event_type=event_type,
            action=action,
            order_id=order.id if order else None,
            symbol=order.symbol if order else None,
            details=details or {},
        )
