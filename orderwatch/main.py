import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from orderwatch.core import errors
from orderwatch.core.config import settings
from orderwatch.exchange.binance.client import BinanceFuturesClient
from orderwatch.execution.coordinator import ExecutionCoordinator
from orderwatch.execution.gateway import ExchangeGateway
from orderwatch.market.price_oracle import PriceOracle
from orderwatch.orders.models import OrderDraft, OrderStatus
from orderwatch.persistence.audit import Audit
from orderwatch.persistence.db import DB
from orderwatch.persistence.json_store import JsonFileRepository
from orderwatch.persistence.trigger_store import TriggerStore
from orderwatch.runner.scheduler import MonitorScheduler
from orderwatch.symbols.rules_cache import SymbolRulesCache

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger("orderwatch.api")


app = FastAPI(title="OrderWatch conditional orders")


# =========================
# Wiring
# =========================
@dataclass
class Services:
    client: Any
    audit: Audit
    store: TriggerStore
    rules: SymbolRulesCache
    oracle: PriceOracle
    gateway: ExchangeGateway
    coordinator: ExecutionCoordinator
    scheduler: MonitorScheduler


services: Optional[Services] = None


def build_services(cfg=settings) -> Services:
    client = BinanceFuturesClient(
        api_key=cfg.BINANCE_API_KEY,
        api_secret=cfg.BINANCE_API_SECRET,
        base_url=cfg.BINANCE_FAPI_BASE_URL,
        recv_window=cfg.BINANCE_RECV_WINDOW,
        timeout=cfg.HTTP_TIMEOUT_SECONDS,
    )
    audit = Audit(DB(cfg.AUDIT_DB_PATH), jsonl_path=cfg.AUDIT_JSONL_PATH)

    store = TriggerStore(JsonFileRepository(cfg.CONDITIONAL_ORDERS_FILE), audit=audit)
    store.load_from_disk()

    rules = SymbolRulesCache(client, cfg.SYMBOL_CACHE_FILE)
    rules.load_from_disk()

    oracle = PriceOracle(client)
    gateway = ExchangeGateway(client, settings=cfg, audit=audit)
    coordinator = ExecutionCoordinator(store, oracle, rules, gateway, audit=audit)
    scheduler = MonitorScheduler(coordinator, cfg.MONITOR_INTERVAL_SECONDS, audit=audit)

    return Services(
        client=client,
        audit=audit,
        store=store,
        rules=rules,
        oracle=oracle,
        gateway=gateway,
        coordinator=coordinator,
        scheduler=scheduler,
    )


def get_services() -> Services:
    global services
    if services is None:
        services = build_services()
    return services


# =========================
# Lifecycle
# =========================
@app.on_event("startup")
async def _startup_validate_config():
    """Fail-fast config validation at startup."""
    try:
        warnings = settings.validate_runtime()
    except ValueError as e:
        log.error("%s", e)
        raise
    for w in warnings:
        log.warning("[CONFIG WARNING] %s", w)


@app.on_event("startup")
async def _startup_services():
    svc = get_services()

    # server clock offset for signed requests; trading still works without it
    try:
        svc.client.sync_time()
    except errors.OrderWatchError as e:
        log.warning("server time sync failed: %s", e)

    if settings.MONITOR_AUTOSTART:
        svc.scheduler.start()


@app.on_event("shutdown")
async def _shutdown_scheduler():
    if services is not None and services.scheduler.running:
        services.scheduler.stop()


# =========================
# Error mapping
# =========================
@app.exception_handler(errors.ValidationError)
async def _validation_error(request: Request, exc: errors.ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(errors.InvalidStateError)
async def _invalid_state(request: Request, exc: errors.InvalidStateError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


def _not_found(order_id: int) -> HTTPException:
    return HTTPException(status_code=404, detail=f"conditional order {order_id} not found")


# =========================
# Request models
# =========================
class OrderCreate(BaseModel):
    symbol: str
    side: str
    type: str
    quantity: Decimal
    triggerPrice: Decimal
    orderPrice: Optional[Decimal] = None
    remark: str = ""


class ExchangeCancel(BaseModel):
    symbol: str
    exchangeOrderId: str


# =========================
# Service
# =========================
@app.get("/")
def root():
    return {
        "status": "ok",
        "exchange": f"binance-futures-{settings.BINANCE_ENV}",
        "api_key_loaded": bool(settings.BINANCE_API_KEY),
        "api_secret_loaded": bool(settings.BINANCE_API_SECRET),
    }


@app.get("/health")
def health():
    svc = get_services()
    return {
        "status": "ok",
        "monitor_running": svc.scheduler.running,
        "active_orders": svc.store.active_count(),
        "cached_symbols": len(svc.rules.cached_symbols()),
        "rules_last_update": svc.rules.last_update,
    }


# =========================
# Conditional orders
# =========================
@app.get("/orders")
def list_orders(status: Optional[str] = None, symbol: Optional[str] = None):
    store = get_services().store
    if status:
        orders = store.list_by_status(status)
    elif symbol:
        orders = store.list_by_symbol(symbol)
    else:
        orders = store.list()
    if status and symbol:
        sym = symbol.strip().upper()
        orders = [o for o in orders if o.symbol == sym]
    return {"count": len(orders), "orders": [o.to_dict() for o in orders]}


@app.get("/orders/summary")
def orders_summary():
    store = get_services().store
    counts = {s.value: len(store.list_by_status(s)) for s in OrderStatus}
    return {
        "active_count": store.active_count(),
        "total_active_value": str(store.total_active_value()),
        "by_status": counts,
    }


@app.post("/orders", status_code=201)
def create_order(body: OrderCreate):
    draft = OrderDraft.build(
        symbol=body.symbol,
        side=body.side,
        order_type=body.type,
        quantity=body.quantity,
        trigger_price=body.triggerPrice,
        order_price=body.orderPrice,
        remark=body.remark,
    )
    store = get_services().store
    order_id = store.create(draft)
    return store.get(order_id).to_dict()


@app.get("/orders/{order_id}")
def get_order(order_id: int):
    order = get_services().store.get(order_id)
    if order is None:
        raise _not_found(order_id)
    return order.to_dict()


@app.patch("/orders/{order_id}")
def update_order(order_id: int, patch: Dict[str, Any] = Body(...)):
    store = get_services().store
    if not store.update_fields(order_id, patch):
        raise _not_found(order_id)
    return store.get(order_id).to_dict()


@app.post("/orders/{order_id}/cancel")
def cancel_order(order_id: int):
    store = get_services().store
    if not store.cancel(order_id):
        raise _not_found(order_id)
    return store.get(order_id).to_dict()


@app.delete("/orders/{order_id}")
def delete_order(order_id: int):
    if not get_services().store.delete(order_id):
        raise _not_found(order_id)
    return {"status": "deleted", "id": order_id}


# =========================
# Monitor
# =========================
@app.post("/monitor/start")
def monitor_start(interval_seconds: Optional[float] = None):
    scheduler = get_services().scheduler
    if interval_seconds is not None and interval_seconds <= 0:
        raise HTTPException(status_code=400, detail="interval_seconds must be > 0")
    started = scheduler.start(interval_seconds)
    return {"status": "started" if started else "already_running", **scheduler.status()}


@app.post("/monitor/stop")
def monitor_stop():
    scheduler = get_services().scheduler
    stopped = scheduler.stop()
    return {"status": "stopped" if stopped else "not_running", **scheduler.status()}


@app.get("/monitor/status")
def monitor_status():
    svc = get_services()
    last = svc.coordinator.last_sweep
    return {
        **svc.scheduler.status(),
        "sweep_in_progress": svc.coordinator.busy,
        "last_sweep": last.as_dict() if last else None,
    }


@app.post("/monitor/run-once")
def monitor_run_once():
    return get_services().coordinator.run_once().as_dict()


# =========================
# Market / symbol rules
# =========================
@app.get("/market/price")
def market_price(symbol: str = "BTCUSDT"):
    price = get_services().oracle.latest_price(symbol)
    return {"symbol": symbol.upper(), "price": str(price), "ok": price > 0}


@app.get("/market/quote")
def market_quote(symbol: str = "BTCUSDT"):
    q = get_services().oracle.quote(symbol)
    return {
        "symbol": q.symbol,
        "price": str(q.price),
        "change_percent": str(q.change_percent),
        "fetched_at": q.fetched_at,
        "ok": q.ok,
    }


@app.get("/symbols/rule")
def symbols_rule(symbol: str = "BTCUSDT"):
    try:
        rule = get_services().rules.get_rule(symbol)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return rule.to_dict()


@app.post("/symbols/refresh")
def symbols_refresh():
    rules = get_services().rules
    try:
        count = rules.refresh()
    except (errors.OrderWatchError, ValueError) as e:
        raise HTTPException(status_code=502, detail=f"exchangeInfo refresh failed: {e}")
    return {"status": "refreshed", "symbols": count, "last_update": rules.last_update}


# =========================
# Exchange passthrough
# =========================
@app.get("/exchange/open-orders")
def exchange_open_orders(symbol: Optional[str] = None):
    try:
        orders = get_services().gateway.open_orders(symbol)
    except errors.OrderWatchError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"count": len(orders), "orders": orders}


@app.get("/exchange/order")
def exchange_order(symbol: str, order_id: int):
    try:
        return get_services().client.get_order(symbol, order_id)
    except errors.OrderWatchError as e:
        raise HTTPException(status_code=502, detail=str(e))


@app.post("/exchange/cancel")
def exchange_cancel(body: ExchangeCancel):
    ok = get_services().gateway.cancel(body.symbol, body.exchangeOrderId)
    return {"ok": ok, "symbol": body.symbol.upper(), "exchangeOrderId": body.exchangeOrderId}


@app.post("/exchange/cancel-all")
def exchange_cancel_all(symbol: str):
    ok = get_services().gateway.cancel_all(symbol)
    return {"ok": ok, "symbol": symbol.upper()}


# =========================
# Audit trail
# =========================
@app.get("/logs/events/tail")
def logs_events_tail(limit: int = 50):
    if limit < 1:
        limit = 1
    if limit > 500:
        limit = 500

    events = get_services().audit.tail(limit)
    return {"count": len(events), "events": events[::-1]}
