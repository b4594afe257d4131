# toolbox/main.py
"""Точка входа FastAPI: CRUD API товаров.

MCP-сервер (ToolBox) запускается отдельно, см. `toolbox.core.server`.
"""
from __future__ import annotations

import logging

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api import items_router
from .api.middleware import AccessLogMiddleware
from .core.config import IS_DEVELOPMENT, PORT

logger = logging.getLogger("toolbox")
if not logger.handlers:
    logging.basicConfig(level=logging.INFO)


app = FastAPI(title="CRUD API", version="1.0.0")
app.add_middleware(AccessLogMiddleware)
# CORS добавляется последним, чтобы стать внешним слоем и отвечать на preflight.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(items_router)


@app.get("/")
def api_info():
    return {
        "message": "Welcome to the CRUD API",
        "version": "1.0.0",
        "endpoints": {
            "GET /api/items": "Get all items",
            "GET /api/items/:id": "Get item by ID",
            "POST /api/items": "Create new item",
            "PUT /api/items/:id": "Update item by ID",
            "DELETE /api/items/:id": "Delete item by ID",
        },
    }


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Неизвестный путь и неподдерживаемый метод отвечают одинаково.
    if exc.status_code in (404, 405):
        return JSONResponse(status_code=404, content={"success": False, "message": "Route not found"})
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [str(error.get("msg", "")) for error in exc.errors()]
    return JSONResponse(status_code=400, content={"success": False, "message": "Validation failed", "errors": errors})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Something went wrong!",
            "error": str(exc) if IS_DEVELOPMENT else "Internal server error",
        },
    )


if __name__ == "__main__":
    logger.info("Server is running on port %s", PORT)
    uvicorn.run(app, host="0.0.0.0", port=PORT)
