import asyncio
import logging
import threading
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from pymongo.errors import PyMongoError

import config
import database
from backup import backup_filename, build_snapshot
from discounts import accrue, cart_totals, find_coupon, loyalty_eligible, loyalty_progress, normalize_code
from orders import (
    CheckoutError, InvalidStatusTransition, OrderError,
    add_item, build_checkout_order, new_external_order, remove_item, set_status, validate_checkout,
)
from reconciler import ConnectionManager, RealtimeReconciler, dispatch
from schemas import (
    AddItemRequest, CartItem, Category, CategoryIn, ChangeEvent, CheckoutItem, CheckoutRequest,
    Coupon, CouponIn, CouponValidateRequest, DailySpecial, ExternalOrderRequest, LoyaltyConfig,
    LoyaltyUser, OccupiedTable, Order, Product, ProductIn, StatusUpdate, StoreConfig,
)
from slots import InvalidTableNumber, NoFreeSlotError, SlotError, allocate_slot, in_range, reserve_slot
from store import TableStateStore

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

store = TableStateStore()
reconciler = RealtimeReconciler(store)
manager = ConnectionManager()
_watcher_running = False


def _log_dispatch_failure(fut) -> None:
    if not fut.cancelled() and fut.exception() is not None:
        logger.error("Table event dispatch failed", exc_info=fut.exception())


def _watch_tables(loop: asyncio.AbstractEventLoop) -> None:
    global _watcher_running
    _watcher_running = True
    try:
        for event in database.watch_table_changes():
            # hand over to the event loop; the store is only touched there
            fut = asyncio.run_coroutine_threadsafe(dispatch(event, reconciler, manager), loop)
            fut.add_done_callback(_log_dispatch_failure)
    except PyMongoError:
        logger.exception("Table change stream stopped; falling back to local echo")
    finally:
        _watcher_running = False


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        store.load(database.fetch_tables())
    except PyMongoError:
        logger.exception("Initial table load failed; serving the base slots")
    if config.REALTIME_ENABLED:
        loop = asyncio.get_running_loop()
        threading.Thread(target=_watch_tables, args=(loop,), name="table-watcher", daemon=True).start()
    yield


app = FastAPI(title="JG Conveniência API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Erro de conexão com o banco de dados."})


def _millis() -> int:
    return int(time.time() * 1000)


def today_index(now: Optional[datetime] = None) -> int:
    """Day of week with 0=Sunday."""
    now = now or datetime.now()
    return (now.weekday() + 1) % 7


# ============== LOADERS ==================
def load_products(available_only: bool = False) -> List[Product]:
    q: Dict[str, Any] = {"is_available": True} if available_only else {}
    return [Product(**d) for d in database.get_documents("product", q, sort="name")]


def load_product(product_id: str) -> Product:
    doc = database.get_document("product", product_id)
    if not doc:
        raise HTTPException(status_code=404, detail=f"Product {product_id} not found")
    return Product(**doc)


def load_categories() -> List[Category]:
    return [Category(**d) for d in database.get_documents("category", sort="name")]


def load_coupons(active_only: bool = False) -> List[Coupon]:
    q: Dict[str, Any] = {"is_active": True} if active_only else {}
    return [Coupon(**d) for d in database.get_documents("coupon", q, sort="code")]


def load_store_config() -> StoreConfig:
    return StoreConfig(**(database.get_singleton("store_config") or {}))


def load_loyalty_config() -> LoyaltyConfig:
    return LoyaltyConfig(**(database.get_singleton("loyalty_config") or {}))


def load_daily_specials() -> List[DailySpecial]:
    return [DailySpecial(**d) for d in database.get_documents("daily_special", sort="day")]


def load_loyalty_user(phone: str) -> Optional[LoyaltyUser]:
    doc = database.get_document("loyalty_user", phone)
    return LoyaltyUser(**doc) if doc else None


def cart_items(items: List[CheckoutItem]) -> List[CartItem]:
    result: List[CartItem] = []
    for it in items:
        product = load_product(it.product_id)
        if not product.is_available:
            raise HTTPException(status_code=400, detail=f"{product.name} está indisponível.")
        result.append(CartItem(**product.model_dump(), quantity=it.quantity, observation=it.observation))
    return result


# ============== SLOT WRITES ==================
async def commit_table(table_id: int, order: Optional[Order]) -> None:
    """Persist a slot; ``None`` frees it. The local store follows right away."""
    if order is None:
        database.delete_table(table_id)
        event = ChangeEvent(event_type="delete", old={"_id": table_id})
        store.apply_change("delete", table_id)
    else:
        if not order.items and order.order_type == "table":
            raise HTTPException(status_code=400, detail="Pedido sem itens.")
        previous = store.get(table_id)
        table = OccupiedTable(id=table_id, current_order=order)
        row = database.save_table(table)
        kind = "update" if previous is not None and previous.status == "occupied" else "insert"
        event = ChangeEvent(event_type=kind, new=row)
        store.apply_change(kind, table_id, table)
    logger.info("Slot %s %s", table_id, "freed" if order is None else f"holds order {order.id}")
    # with the watcher up, alerts and broadcasts come from the change stream
    if not _watcher_running:
        await dispatch(event, reconciler, manager)


def require_slot(table_id: int):
    table = store.get(table_id)
    if table is None:
        raise HTTPException(status_code=404, detail=f"Table {table_id} not found")
    return table


async def add_to_table(table_id: int, payload: AddItemRequest) -> Order:
    require_slot(table_id)
    product = load_product(payload.product_id)
    try:
        order = add_item(store.order_for(table_id), product, payload.observation, table_id=table_id)
    except (OrderError, SlotError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    await commit_table(table_id, order)
    return order


async def remove_from_table(table_id: int, index: int) -> Optional[Order]:
    require_slot(table_id)
    order = store.order_for(table_id)
    if order is None:
        raise HTTPException(status_code=404, detail=f"Table {table_id} has no open order")
    try:
        updated = remove_item(order, index)
    except IndexError as e:
        raise HTTPException(status_code=404, detail=str(e))
    # removing the last line frees the slot
    await commit_table(table_id, updated)
    return updated


async def free_table(table_id: int) -> None:
    require_slot(table_id)
    await commit_table(table_id, None)


def table_response(table_id: int) -> Dict[str, Any]:
    return store.get(table_id).model_dump(mode="json")


# ============== HEALTH ==================
@app.get("/")
async def root():
    return {"message": "JG Conveniência API running"}


@app.get("/test")
async def test_db():
    try:
        collections = database.list_collections()
        return {
            "backend": "fastapi",
            "database": "mongodb",
            "database_name": config.DATABASE_NAME,
            "connection_status": "ok",
            "collections": collections,
        }
    except PyMongoError as e:
        return {"backend": "fastapi", "database": "mongodb", "connection_status": f"error: {e}"}


# ============== STOREFRONT ==================
@app.get("/menu")
async def get_menu():
    store_config = load_store_config()
    products = load_products(available_only=True)
    today = today_index()
    special = None
    for d in load_daily_specials():
        if d.day == today:
            special = next((p for p in products if p.id == d.product_id), None)
    status_panel = None
    if store_config.status_panel_enabled:
        status_panel = [
            {"id": t.current_order.id, "customer_name": t.current_order.customer_name,
             "status": t.current_order.status}
            for t in store.occupied()
        ]
    return {
        "store": {"name": config.STORE_NAME, "is_open": store_config.is_open},
        "store_config": store_config,
        "categories": load_categories(),
        "items": products,
        "daily_special": special,
        "status_panel": status_panel,
    }


@app.post("/coupons/validate")
async def validate_coupon(payload: CouponValidateRequest):
    coupon = find_coupon(load_coupons(active_only=True), payload.code)
    if coupon is None:
        return {"valid": False, "message": "Cupom não encontrado ou expirado."}
    result: Dict[str, Any] = {"valid": True, "coupon": coupon}
    if payload.items:
        result["totals"] = cart_totals(cart_items(payload.items), [coupon])._asdict()
    return result


@app.post("/checkout")
async def checkout(payload: CheckoutRequest):
    store_config = load_store_config()
    if not store_config.is_open:
        raise HTTPException(status_code=400, detail="Loja fechada no momento.")
    try:
        name, channel = validate_checkout(
            payload.customer_name, payload.order_type, payload.table_number, payload.address, payload.items
        )
    except (CheckoutError, SlotError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not store_config.channel_enabled(channel):
        raise HTTPException(status_code=400, detail="Modalidade indisponível no momento.")

    items = cart_items(payload.items)
    coupons: List[Coupon] = []
    if payload.coupon_code and payload.coupon_code.strip():
        coupon = find_coupon(load_coupons(active_only=True), payload.coupon_code)
        if coupon is None:
            raise HTTPException(status_code=400, detail="Cupom não encontrado ou expirado.")
        coupons.append(coupon)

    try:
        table_id = allocate_slot(store.tables(), channel, payload.table_number)
    except InvalidTableNumber as e:
        raise HTTPException(status_code=400, detail=str(e))

    order = build_checkout_order(
        customer_name=name,
        items=items,
        table_id=table_id,
        order_type=channel,
        payment_method=payload.payment_method,
        coupons=coupons,
        customer_phone=payload.customer_phone,
        address=payload.address,
        observation=payload.observation,
    )
    await commit_table(table_id, order)

    loyalty = None
    loyalty_config = load_loyalty_config()
    if loyalty_config.is_active and order.customer_phone:
        totals = cart_totals(items, coupons)
        amount = loyalty_eligible(items, loyalty_config, totals)
        user = accrue(load_loyalty_user(order.customer_phone), order.customer_phone, name, amount)
        database.upsert_document("loyalty_user", user.phone, user.model_dump())
        loyalty = loyalty_progress(user, loyalty_config)

    logger.info("Order %s placed on slot %s (%s)", order.id, table_id, channel)
    return {"order": order, "loyalty": loyalty}


@app.get("/loyalty/{phone}")
async def get_loyalty(phone: str):
    config_ = load_loyalty_config()
    user = load_loyalty_user(phone)
    return {"user": user, **loyalty_progress(user, config_)}


# ============== BOARD ==================
@app.get("/tables")
async def list_tables():
    return store.board()


@app.post("/tables/refresh")
async def refresh_tables():
    store.load(database.fetch_tables())
    return store.board()


@app.get("/tv")
async def tv_board():
    orders = sorted((t.current_order for t in store.occupied()), key=lambda o: o.timestamp)
    by_status: Dict[str, List[Order]] = {"pending": [], "preparing": [], "ready": [], "delivered": []}
    for o in orders:
        by_status[o.status].append(o)
    return {"orders": orders, "by_status": by_status, "alert": reconciler.current_alert()}


class AudioSettings(BaseModel):
    enabled: Optional[bool] = None
    unlock: bool = False


@app.get("/alerts/current")
async def current_alert():
    return {"alert": reconciler.current_alert()}


@app.post("/alerts/dismiss")
async def dismiss_alert():
    reconciler.dismiss()
    return {"ok": True}


@app.post("/alerts/audio")
async def audio_settings(payload: AudioSettings):
    if payload.enabled is not None:
        reconciler.audio_enabled = payload.enabled
    if payload.unlock:
        reconciler.unlock_audio()
    return {"audio_enabled": reconciler.audio_enabled, "audio_unlocked": reconciler.audio_unlocked}


@app.websocket("/ws/tables")
async def tables_socket(websocket: WebSocket):
    await manager.connect(websocket)
    try:
        await websocket.send_json({"type": "board", "board": store.board()})
        while True:
            message = await websocket.receive_text()
            if message == "unlock-audio":
                reconciler.unlock_audio()
            elif message == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        manager.disconnect(websocket)


# ============== WAITER ==================
def require_dine_in(table_id: int) -> None:
    if not in_range(table_id, "table"):
        raise HTTPException(status_code=404, detail=f"Mesa {table_id} não existe.")


@app.post("/waiter/tables/{table_id}/items")
async def waiter_add_item(table_id: int, payload: AddItemRequest):
    require_dine_in(table_id)
    await add_to_table(table_id, payload)
    return table_response(table_id)


@app.delete("/waiter/tables/{table_id}/items/{index}")
async def waiter_remove_item(table_id: int, index: int):
    require_dine_in(table_id)
    if not load_store_config().waiter_can_cancel_items:
        raise HTTPException(status_code=403, detail="Cancelamento de itens desativado para garçons.")
    await remove_from_table(table_id, index)
    return table_response(table_id)


@app.post("/waiter/tables/{table_id}/free")
async def waiter_free_table(table_id: int):
    require_dine_in(table_id)
    if not load_store_config().waiter_can_finalize:
        raise HTTPException(status_code=403, detail="Fechamento de mesa desativado para garçons.")
    await free_table(table_id)
    return table_response(table_id)


# ============== ADMIN: TABLES & ORDERS ==================
@app.post("/admin/tables/{table_id}/items")
async def admin_add_item(table_id: int, payload: AddItemRequest):
    await add_to_table(table_id, payload)
    return table_response(table_id)


@app.delete("/admin/tables/{table_id}/items/{index}")
async def admin_remove_item(table_id: int, index: int):
    await remove_from_table(table_id, index)
    return table_response(table_id)


@app.post("/admin/tables/{table_id}/status")
async def admin_update_status(table_id: int, payload: StatusUpdate):
    require_slot(table_id)
    order = store.order_for(table_id)
    if order is None:
        raise HTTPException(status_code=404, detail=f"Table {table_id} has no open order")
    try:
        updated = set_status(order, payload.status, strict=config.STRICT_STATUS_TRANSITIONS)
    except InvalidStatusTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    await commit_table(table_id, updated)
    return table_response(table_id)


@app.post("/admin/tables/{table_id}/free")
async def admin_free_table(table_id: int):
    await free_table(table_id)
    return table_response(table_id)


@app.post("/admin/orders/external")
async def admin_external_order(payload: ExternalOrderRequest):
    try:
        table_id = reserve_slot(store.tables(), payload.order_type)
        order = new_external_order(payload.customer_name, payload.order_type, table_id, payload.address)
    except NoFreeSlotError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except (OrderError, SlotError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    await commit_table(table_id, order)
    return table_response(table_id)


# ============== ADMIN: CATALOG ==================
@app.get("/admin/products", response_model=List[Product])
async def admin_list_products():
    return load_products()


@app.post("/admin/products", response_model=Product)
async def admin_save_product(payload: ProductIn):
    product = Product(**{**payload.model_dump(), "id": payload.id or f"p_{_millis()}"})
    database.upsert_document("product", product.id, product.model_dump())
    return product


@app.delete("/admin/products/{product_id}")
async def admin_delete_product(product_id: str):
    if not database.delete_document("product", product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    return {"status": "deleted"}


@app.get("/admin/categories", response_model=List[Category])
async def admin_list_categories():
    return load_categories()


@app.post("/admin/categories", response_model=Category)
async def admin_create_category(payload: CategoryIn):
    category = Category(id=f"cat_{_millis()}", name=payload.name.strip())
    database.upsert_document("category", category.id, category.model_dump())
    return category


@app.delete("/admin/categories/{category_id}")
async def admin_delete_category(category_id: str):
    # products keep pointing at the removed category
    if not database.delete_document("category", category_id):
        raise HTTPException(status_code=404, detail="Category not found")
    return {"status": "deleted"}


def _coupon_from(payload: CouponIn, coupon_id: str) -> Coupon:
    scope_value = "" if payload.scope_type == "all" else ",".join(payload.selected_items)
    return Coupon(
        id=coupon_id,
        code=normalize_code(payload.code),
        percentage=payload.percentage,
        is_active=payload.is_active,
        scope_type=payload.scope_type,
        scope_value=scope_value,
    )


@app.get("/admin/coupons", response_model=List[Coupon])
async def admin_list_coupons():
    return load_coupons()


@app.post("/admin/coupons", response_model=Coupon)
async def admin_create_coupon(payload: CouponIn):
    code = normalize_code(payload.code)
    if any(c.code == code for c in load_coupons()):
        raise HTTPException(status_code=409, detail=f"Cupom {code} já existe.")
    coupon = _coupon_from(payload, f"c_{_millis()}")
    database.upsert_document("coupon", coupon.id, coupon.model_dump())
    return coupon


@app.put("/admin/coupons/{coupon_id}", response_model=Coupon)
async def admin_update_coupon(coupon_id: str, payload: CouponIn):
    if database.get_document("coupon", coupon_id) is None:
        raise HTTPException(status_code=404, detail="Coupon not found")
    code = normalize_code(payload.code)
    if any(c.code == code and c.id != coupon_id for c in load_coupons()):
        raise HTTPException(status_code=409, detail=f"Cupom {code} já existe.")
    coupon = _coupon_from(payload, coupon_id)
    database.upsert_document("coupon", coupon.id, coupon.model_dump())
    return coupon


@app.delete("/admin/coupons/{coupon_id}")
async def admin_delete_coupon(coupon_id: str):
    if not database.delete_document("coupon", coupon_id):
        raise HTTPException(status_code=404, detail="Coupon not found")
    return {"status": "deleted"}


class DailySpecialIn(BaseModel):
    product_id: str


@app.get("/admin/daily-specials", response_model=List[DailySpecial])
async def admin_list_daily_specials():
    return load_daily_specials()


@app.put("/admin/daily-specials/{day}", response_model=DailySpecial)
async def admin_set_daily_special(day: int, payload: DailySpecialIn):
    try:
        special = DailySpecial(day=day, product_id=payload.product_id)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Dia inválido (0=domingo ... 6=sábado).")
    load_product(payload.product_id)
    database.upsert_document("daily_special", day, special.model_dump())
    return special


@app.delete("/admin/daily-specials/{day}")
async def admin_clear_daily_special(day: int):
    database.delete_document("daily_special", day)
    return {"status": "cleared"}


@app.get("/admin/loyalty", response_model=LoyaltyConfig)
async def admin_get_loyalty():
    return load_loyalty_config()


@app.put("/admin/loyalty", response_model=LoyaltyConfig)
async def admin_update_loyalty(payload: LoyaltyConfig):
    database.save_singleton("loyalty_config", payload.model_dump())
    return payload


@app.get("/admin/loyalty/users", response_model=List[LoyaltyUser])
async def admin_list_loyalty_users():
    return [LoyaltyUser(**d) for d in database.get_documents("loyalty_user", sort="name")]


@app.get("/admin/store-config", response_model=StoreConfig)
async def admin_get_store_config():
    return load_store_config()


@app.put("/admin/store-config", response_model=StoreConfig)
async def admin_update_store_config(payload: StoreConfig):
    database.save_singleton("store_config", payload.model_dump())
    return payload


# ============== ADMIN: BACKUP ==================
@app.get("/admin/backup")
async def admin_backup():
    snapshot = build_snapshot(
        tables=store.tables(),
        products=load_products(),
        categories=load_categories(),
        coupons=load_coupons(),
        loyalty=load_loyalty_config(),
        store_config=load_store_config(),
        daily_specials=load_daily_specials(),
    )
    headers = {"Content-Disposition": f'attachment; filename="{backup_filename()}"'}
    return JSONResponse(content=snapshot, headers=headers)


@app.post("/admin/backup/restore")
async def admin_restore_backup():
    raise HTTPException(status_code=501, detail="Restauração de backup ainda não disponível.")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000)
