"""Stock service API built with FastAPI.

Read snapshots of variant stock for the storefront's carts, plus the
back-office inventory screen: listing with low/out-of-stock status, setting
stock and reorder levels, and restocking. Validation is done with Pydantic
models; persistence lives in ``repo.InventoryRepo``.

Administrative routes require the ``X-Admin-Token`` header to match the
``INVENTORY_ADMIN_TOKEN`` environment variable.
"""

import logging
import os
import secrets
import time
import uuid
from contextlib import asynccontextmanager
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pythonjsonlogger import jsonlogger
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

import repo
from repo import InventoryRepo, UnknownVariant

logger = logging.getLogger("inventory")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())


def wait_for_db(timeout: float = 30.0) -> None:
    """Block until the database accepts connections or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            with repo.engine.connect() as conn:
                conn.execute(text("select 1"))
            return
        except OperationalError:
            if time.monotonic() > deadline:
                raise
            time.sleep(1)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    wait_for_db(float(os.getenv("DB_WAIT_SECS", "30")))
    yield


app = FastAPI(title="Stock Service", lifespan=lifespan)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StockSnapshot(BaseModel):
    stock: dict[str, int]


class InventoryRow(CamelModel):
    product_id: uuid.UUID
    variant_id: uuid.UUID
    product_name: str
    variant_label: str
    stock: int
    min_stock: int
    status: Literal["ok", "low", "out"]


class InventoryStats(CamelModel):
    total: int
    ok: int
    low: int
    out: int


class InventoryListing(CamelModel):
    inventory: List[InventoryRow]
    stats: InventoryStats


class LevelUpdate(CamelModel):
    variant_id: uuid.UUID
    stock: Optional[int] = Field(default=None, ge=0)
    min_stock: Optional[int] = Field(default=None, ge=0)


class LevelsRequest(CamelModel):
    updates: List[LevelUpdate] = Field(min_length=1)


class LevelsResponse(CamelModel):
    updated: int
    message: str


class RestockRequest(CamelModel):
    variant_id: uuid.UUID
    quantity: int = Field(gt=0, le=100000)


class RestockResponse(CamelModel):
    variant_id: uuid.UUID
    stock: int


def get_repo() -> InventoryRepo:
    return InventoryRepo()


def require_admin(x_admin_token: Optional[str] = Header(default=None)) -> None:
    expected = os.getenv("INVENTORY_ADMIN_TOKEN")
    if not expected or not x_admin_token or not secrets.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/stock", response_model=StockSnapshot)
def stock(variant_id: List[uuid.UUID] = Query(default=[]), inventory: InventoryRepo = Depends(get_repo)):
    """Current stock for the requested variants; unknown ids are left out."""
    return StockSnapshot(stock=inventory.snapshot(variant_id))


@app.get("/inventory", response_model=InventoryListing, response_model_by_alias=True,
         dependencies=[Depends(require_admin)])
def list_inventory(filter: Literal["all", "low", "out"] = "all",
                   inventory: InventoryRepo = Depends(get_repo)):
    rows = [InventoryRow(**r) for r in inventory.list_inventory()]
    stats = InventoryStats(
        total=len(rows),
        ok=sum(1 for r in rows if r.status == "ok"),
        low=sum(1 for r in rows if r.status == "low"),
        out=sum(1 for r in rows if r.status == "out"),
    )
    if filter != "all":
        rows = [r for r in rows if r.status == filter]
    return InventoryListing(inventory=rows, stats=stats)


@app.patch("/inventory", response_model=LevelsResponse, response_model_by_alias=True,
           dependencies=[Depends(require_admin)])
def set_levels(req: LevelsRequest, inventory: InventoryRepo = Depends(get_repo)):
    try:
        count = inventory.set_levels([u.model_dump() for u in req.updates])
    except UnknownVariant as exc:
        raise HTTPException(status_code=404, detail={"detail": "NOT_FOUND", "variantId": str(exc.variant_id)})
    logger.info("stock levels updated", extra={"updated": count})
    return LevelsResponse(updated=count, message=f"Updated {count} variant(s)")


@app.post("/restock", response_model=RestockResponse, response_model_by_alias=True,
          dependencies=[Depends(require_admin)])
def restock(req: RestockRequest, inventory: InventoryRepo = Depends(get_repo)):
    try:
        new_stock = inventory.restock(req.variant_id, req.quantity)
    except UnknownVariant:
        raise HTTPException(status_code=404, detail={"detail": "NOT_FOUND", "variantId": str(req.variant_id)})
    logger.info(
        "variant restocked",
        extra={"variant_id": str(req.variant_id), "quantity": req.quantity, "stock": new_stock},
    )
    return RestockResponse(variant_id=req.variant_id, stock=new_stock)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "9001")),
        workers=int(os.getenv("UVICORN_WORKERS", str(max(2, os.cpu_count() or 1)))),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )
