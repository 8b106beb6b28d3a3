"""FastAPI entrypoint exposing the personal shopper search, library and personalization APIs."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

import sys

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from personal_shopper.config import AssistantConfig
from personal_shopper.service import ShoppingAssistantService


class SearchRequest(BaseModel):
    query: str = ""
    image_base64: str | None = None
    discovery_percentage: int | None = Field(default=None, ge=0, le=100)


class SaveProductRequest(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    price: float = Field(default=0.0, ge=0)
    image: str = ""
    url: str = ""
    description: str = ""
    brand: str = ""
    categories: list[str] = Field(default_factory=list)
    source_index: str = ""


class ViewRequest(BaseModel):
    time_spent: float = Field(default=0.0, ge=0)


class ClickRequest(BaseModel):
    url: str = ""


class SelectionRequest(BaseModel):
    product_id: str = Field(min_length=1)
    product_index: int = Field(ge=0)
    source_index: str | None = None


class DiscoverySettingRequest(BaseModel):
    percentage: int = Field(ge=0, le=100)


load_dotenv(ROOT_DIR / ".env")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Personal Shopper Assistant", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

service = ShoppingAssistantService(AssistantConfig.from_env(ROOT_DIR))


@app.get("/api/health")
def health() -> dict:
    return {
        "status": "ok",
        "app": "personal-shopper",
        "stats": service.stats(),
    }


@app.post("/api/search")
def search(request: SearchRequest) -> dict:
    if not request.query.strip() and not request.image_base64:
        raise HTTPException(status_code=400, detail="Provide a query or an image.")
    result = service.search(
        request.query,
        image=request.image_base64 or None,
        discovery_percentage=request.discovery_percentage,
    )
    return result.to_dict()


@app.post("/api/image-search")
async def image_search(
    image: UploadFile = File(...),
    query: str = Form(default=""),
    discovery_percentage: int | None = Form(default=None),
) -> dict:
    if not image.filename:
        raise HTTPException(status_code=400, detail="Missing image filename.")

    payload = await image.read()
    if not payload:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")

    if discovery_percentage is not None and not 0 <= discovery_percentage <= 100:
        raise HTTPException(status_code=400, detail="discovery_percentage must be between 0 and 100.")
    return service.search(query, image=payload, discovery_percentage=discovery_percentage).to_dict()


@app.post("/api/search/{search_log_id}/selection")
def log_selection(search_log_id: int, request: SelectionRequest) -> dict:
    try:
        service.log_product_selection(
            search_log_id=search_log_id,
            product_id=request.product_id,
            product_index=request.product_index,
            source_index=request.source_index,
        )
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"status": "ok"}


@app.get("/api/products")
def saved_products() -> dict:
    return {"products": service.list_saved_products()}


@app.post("/api/products")
def save_product(request: SaveProductRequest) -> dict:
    try:
        return service.save_product(request.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@app.delete("/api/products/{product_id}")
def remove_product(product_id: str) -> dict:
    try:
        service.remove_product(product_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"status": "removed", "product_id": product_id}


@app.post("/api/products/{product_id}/view")
def track_view(product_id: str, request: ViewRequest) -> dict:
    return {"tracked": service.track_product_view(product_id, request.time_spent)}


@app.post("/api/products/{product_id}/click")
def track_click(product_id: str, request: ClickRequest) -> dict:
    return {"tracked": service.track_product_click(product_id, request.url)}


@app.get("/api/profile")
def profile() -> dict:
    return service.get_personalization_profile()


@app.get("/api/profile/export")
def export_profile() -> dict:
    return service.export_profile()


@app.post("/api/ml/reset")
def reset_ml_data() -> dict:
    service.reset_ml_data()
    return {"status": "reset"}


@app.get("/api/settings/discovery")
def get_discovery_setting() -> dict:
    return {"percentage": service.get_discovery_percentage()}


@app.put("/api/settings/discovery")
def set_discovery_setting(request: DiscoverySettingRequest) -> dict:
    try:
        return {"percentage": service.set_discovery_percentage(request.percentage)}
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
