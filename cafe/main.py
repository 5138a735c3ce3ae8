import asyncio
import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from . import crud, models, schemas
from .auth import (
    Principal,
    bearer_token,
    create_access_token,
    get_current_principal,
    principal_from_token,
    require_roles,
)
from .config import get_settings
from .db import SessionLocal, engine, get_db, get_session_factory
from .errors import Internal, NotFound, ServiceError, Unauthorized
from .orders import OrderService, line_schema
from .relay import NotificationRelay, get_relay

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def init_db(bind=engine, session_factory: sessionmaker = SessionLocal) -> None:
    # Create tables if not existing. An existing order_items table keeps its shape.
    models.create_schema(bind)
    db = session_factory()
    try:
        crud.ensure_roles(db)
    finally:
        db.close()


try:
    init_db()
except SQLAlchemyError:
    logger.exception("database bootstrap failed")

app = FastAPI(title="Cafe Orders")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

staff_only = require_roles(models.ROLE_ADMIN, models.ROLE_PERSONAL)
admin_only = require_roles(models.ROLE_ADMIN)


def get_order_service(
    session_factory: sessionmaker = Depends(get_session_factory),
    relay: NotificationRelay = Depends(get_relay),
) -> OrderService:
    return OrderService(session_factory, line_schema, relay)


# -------------------- Errors --------------------

@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    messages = []
    for error in exc.errors():
        loc = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{loc}: {error.get('msg')}" if loc else str(error.get("msg")))
    return JSONResponse(status_code=400, content={"detail": "; ".join(messages) or "Invalid request"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=Internal.status_code, content={"detail": Internal.default_detail})


# -------------------- Meta --------------------

@app.get("/health")
async def health():
    return {"status": "ok", "env": settings.env}


@app.get("/")
async def root():
    return {"name": "Cafe Orders", "version": "1.0.0"}


# -------------------- Auth --------------------

def _auth_response(user: models.User) -> dict:
    token = create_access_token(user.id, user.email, user.role_name)
    return {"token": token, "user": schemas.UserRead.from_user(user)}


@app.post("/api/auth/register", response_model=schemas.AuthResponse, status_code=201)
async def register(payload: schemas.RegisterIn, db: Session = Depends(get_db)):
    user = crud.register_user(db, payload)
    return _auth_response(user)


@app.post("/api/auth/login", response_model=schemas.AuthResponse)
async def login(payload: schemas.LoginIn, db: Session = Depends(get_db)):
    user = crud.authenticate(db, payload.email, payload.password)
    return _auth_response(user)


# -------------------- Users --------------------

@app.get("/api/users/me", response_model=schemas.UserRead)
async def get_me(principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    user = crud.get_user(db, principal.id)
    if not user:
        raise NotFound("User not found")
    return schemas.UserRead.from_user(user)


@app.put("/api/users/me", response_model=schemas.UserRead)
async def update_me(
    payload: schemas.ProfileUpdate,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    user = crud.update_profile(db, principal.id, name=payload.name, password=payload.password)
    return schemas.UserRead.from_user(user)


@app.get("/api/users", response_model=List[schemas.UserRead])
async def list_users(db: Session = Depends(get_db), _: Principal = Depends(staff_only)):
    return [schemas.UserRead.from_user(user) for user in crud.list_users(db)]


@app.post("/api/users", response_model=schemas.UserRead, status_code=201)
async def create_user(payload: schemas.UserCreate, db: Session = Depends(get_db), _: Principal = Depends(admin_only)):
    user = crud.create_user(db, payload.name, payload.email, payload.password, role=payload.role)
    return schemas.UserRead.from_user(user)


@app.put("/api/users/{user_id}", response_model=schemas.UserRead)
async def update_user(
    user_id: int,
    payload: schemas.UserUpdate,
    db: Session = Depends(get_db),
    _: Principal = Depends(admin_only),
):
    user = crud.update_user(db, user_id, name=payload.name, role=payload.role)
    return schemas.UserRead.from_user(user)


@app.delete("/api/users/{user_id}", status_code=204)
async def delete_user(user_id: int, db: Session = Depends(get_db), _: Principal = Depends(admin_only)):
    crud.delete_user(db, user_id)
    return Response(status_code=204)


# -------------------- Categories --------------------

@app.get("/api/categories", response_model=List[schemas.CategoryRead])
async def list_categories(db: Session = Depends(get_db)):
    return crud.list_categories(db)


@app.get("/api/categories/{category_id}", response_model=schemas.CategoryRead)
async def get_category(category_id: int, db: Session = Depends(get_db)):
    return crud.get_category(db, category_id)


@app.post("/api/categories", response_model=schemas.CategoryRead, status_code=201)
async def create_category(payload: schemas.CategoryIn, db: Session = Depends(get_db), _: Principal = Depends(admin_only)):
    return crud.create_category(db, payload)


@app.put("/api/categories/{category_id}", response_model=schemas.CategoryRead)
async def update_category(
    category_id: int,
    payload: schemas.CategoryIn,
    db: Session = Depends(get_db),
    _: Principal = Depends(admin_only),
):
    return crud.update_category(db, category_id, payload)


@app.delete("/api/categories/{category_id}", status_code=204)
async def delete_category(category_id: int, db: Session = Depends(get_db), _: Principal = Depends(admin_only)):
    crud.delete_category(db, category_id)
    return Response(status_code=204)


# -------------------- Products --------------------

@app.get("/api/products", response_model=List[schemas.ProductRead])
async def list_products(category_id: Optional[int] = None, db: Session = Depends(get_db)):
    return crud.list_products(db, category_id)


@app.get("/api/products/items", response_model=List[schemas.ProductItemRead])
async def list_product_items(db: Session = Depends(get_db)):
    return crud.list_available_items(db)


@app.get("/api/products/{product_id}", response_model=schemas.ProductDetail)
async def get_product(product_id: int, db: Session = Depends(get_db)):
    return crud.get_product_detail(db, product_id)


@app.post("/api/products", response_model=schemas.Created, status_code=201)
async def create_product(payload: schemas.ProductIn, db: Session = Depends(get_db), _: Principal = Depends(admin_only)):
    product = crud.create_product(db, payload)
    return {"id": product.id}


@app.put("/api/products/items/{item_id}", response_model=schemas.ProductItemRead)
async def update_product_item(
    item_id: int,
    payload: schemas.ProductItemIn,
    db: Session = Depends(get_db),
    _: Principal = Depends(admin_only),
):
    return crud.update_item(db, item_id, payload)


@app.delete("/api/products/items/{item_id}", status_code=204)
async def delete_product_item(item_id: int, db: Session = Depends(get_db), _: Principal = Depends(admin_only)):
    crud.delete_item(db, item_id)
    return Response(status_code=204)


@app.put("/api/products/options/{option_id}", response_model=schemas.ProductOptionRead)
async def update_product_option(
    option_id: int,
    payload: schemas.ProductOptionIn,
    db: Session = Depends(get_db),
    _: Principal = Depends(admin_only),
):
    return crud.update_option(db, option_id, payload)


@app.delete("/api/products/options/{option_id}", status_code=204)
async def delete_product_option(option_id: int, db: Session = Depends(get_db), _: Principal = Depends(admin_only)):
    crud.delete_option(db, option_id)
    return Response(status_code=204)


@app.put("/api/products/{product_id}", response_model=schemas.ProductDetail)
async def update_product(
    product_id: int,
    payload: schemas.ProductIn,
    db: Session = Depends(get_db),
    _: Principal = Depends(admin_only),
):
    product = crud.update_product(db, product_id, payload)
    return crud.get_product_detail(db, product.id)


@app.delete("/api/products/{product_id}", status_code=204)
async def delete_product(product_id: int, db: Session = Depends(get_db), _: Principal = Depends(admin_only)):
    crud.delete_product(db, product_id)
    return Response(status_code=204)


@app.post("/api/products/{product_id}/items", response_model=schemas.Created, status_code=201)
async def add_product_item(
    product_id: int,
    payload: schemas.ProductItemIn,
    db: Session = Depends(get_db),
    _: Principal = Depends(admin_only),
):
    item = crud.add_item(db, product_id, payload)
    return {"id": item.id}


@app.post("/api/products/{product_id}/options", response_model=schemas.Created, status_code=201)
async def add_product_option(
    product_id: int,
    payload: schemas.ProductOptionIn,
    db: Session = Depends(get_db),
    _: Principal = Depends(admin_only),
):
    option = crud.add_option(db, product_id, payload)
    return {"id": option.id}


# -------------------- Orders --------------------
# Order endpoints are plain functions so FastAPI runs them in its threadpool.

@app.post("/api/orders", response_model=schemas.OrderCreated, status_code=201)
def create_order(
    payload: dict,
    principal: Principal = Depends(get_current_principal),
    orders: OrderService = Depends(get_order_service),
):
    return orders.create_order(principal.id, payload.get("items"))


@app.get("/api/orders/me", response_model=List[schemas.OrderRead])
def list_my_orders(
    principal: Principal = Depends(get_current_principal),
    orders: OrderService = Depends(get_order_service),
):
    return orders.list_for_user(principal.id)


@app.get("/api/orders", response_model=List[schemas.StaffOrderRead])
def list_orders(_: Principal = Depends(staff_only), orders: OrderService = Depends(get_order_service)):
    return orders.list_all()


@app.get("/api/orders/{order_id}", response_model=schemas.OrderDetail)
def get_order(
    order_id: int,
    principal: Principal = Depends(get_current_principal),
    orders: OrderService = Depends(get_order_service),
):
    return orders.get_order(order_id, principal)


@app.put("/api/orders/{order_id}/status")
def update_order_status(
    order_id: int,
    payload: dict,
    _: Principal = Depends(staff_only),
    orders: OrderService = Depends(get_order_service),
):
    orders.update_status(order_id, payload.get("status"))
    return {"success": True}


# -------------------- Realtime --------------------

@app.websocket("/ws")
async def events_socket(websocket: WebSocket, relay: NotificationRelay = Depends(get_relay)):
    """Push order events to the caller's user room and, for staff, the staff room.

    The bearer token comes from the ``token`` query parameter or the
    ``Authorization`` header.
    """
    token = websocket.query_params.get("token") or bearer_token(websocket.headers.get("authorization"))
    try:
        if token is None:
            raise Unauthorized()
        principal = principal_from_token(token)
    except Unauthorized:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    sub = relay.subscribe(principal.id, principal.role)
    await websocket.send_json({"event": "socket:ready", "data": {"userId": principal.id, "role": principal.role}})

    async def forward():
        while True:
            message = await sub.queue.get()
            await websocket.send_json(message)

    writer = asyncio.create_task(forward())
    try:
        while True:
            # clients do not send anything meaningful; this only waits for disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        relay.unsubscribe(sub)
        writer.cancel()
        # collect the writer's outcome, including a failed send
        await asyncio.gather(writer, return_exceptions=True)


def run():
    import uvicorn
    uvicorn.run("cafe.main:app", host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
