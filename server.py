"""
server.py — aiohttp web service for the product capture front-end.

Endpoints:
  POST   /upload-image      multipart "image" → {"imagePath": "/uploads/<uuid>.<ext>"}
  POST   /analyze           {"imagePaths": [...], "photoCount": n} → AI-extracted fields
  POST   /save-product      product fields → {"serialNumber", "productId"}
  GET    /products          all products, newest first
  DELETE /products/{id}     delete a product and its photos
  GET    /export-excel      .xlsx download of all products
  GET    /system-status     liveness, version, process metrics
  GET    /uploads/...       stored photos (static)

Every JSON response carries "success"; failures add "error".  API routes are
rate limited per client socket address (X-Real-IP when TRUST_PROXY_HEADERS);
static files are not.
"""
from __future__ import annotations

import json
import logging
import ssl
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import psutil
from aiohttp import web

from excel_export import XLSX_CONTENT_TYPE, export_filename, export_products
from file_lock import LockTimeoutError
from images import delete_images, store_upload
from product_store import NotFoundError, ProductStore, ValidationError
from providers.manager import AnalysisDispatcher
from rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

STORE_KEY       = web.AppKey("store", ProductStore)
DISPATCHER_KEY  = web.AppKey("dispatcher", AnalysisDispatcher)
LIMITER_KEY     = web.AppKey("rate_limiter", RateLimiter)
UPLOADS_KEY     = web.AppKey("uploads_dir", Path)
VERSION_KEY     = web.AppKey("version", str)
TRUST_PROXY_KEY = web.AppKey("trust_proxy_headers", bool)

RATE_LIMITED_MESSAGE = "请求过于频繁，请稍后再试"


def _error(status: int, message: str, **extra) -> web.Response:
    return web.json_response({"success": False, "error": message, **extra}, status=status)


async def _read_json(request: web.Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise web.HTTPBadRequest(
            text=json.dumps({"success": False, "error": "请求体不是有效的JSON"}, ensure_ascii=False),
            content_type="application/json",
        )
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(
            text=json.dumps({"success": False, "error": "请求体必须是JSON对象"}, ensure_ascii=False),
            content_type="application/json",
        )
    return body


def client_id(request: web.Request) -> str:
    """Socket peer address; X-Real-IP only when a trusted proxy sets it."""
    if request.app[TRUST_PROXY_KEY]:
        forwarded = request.headers.get("X-Real-IP", "").strip()
        if forwarded:
            return forwarded
    return request.remote or "unknown"


# ── Middleware ────────────────────────────────────────────────────────────────

@web.middleware
async def rate_limit_middleware(request: web.Request, handler):
    route = request.match_info.route
    if isinstance(getattr(route, "resource", None), web.StaticResource):
        return await handler(request)

    cid = client_id(request)
    if not request.app[LIMITER_KEY].is_allowed(cid):
        logger.warning("Rate limit hit for %s on %s", cid, request.path)
        return _error(429, RATE_LIMITED_MESSAGE)
    return await handler(request)


# ── Request handlers ──────────────────────────────────────────────────────────

async def handle_upload(request: web.Request) -> web.Response:
    post = await request.post()
    image = post.get("image")
    if not isinstance(image, web.FileField):
        return _error(400, "未收到图片文件")

    try:
        image_path = store_upload(image.file.read(), image.filename, request.app[UPLOADS_KEY])
    except OSError as exc:
        logger.error("Upload could not be stored: %s", exc)
        return _error(500, f"图片保存失败: {exc}")

    return web.json_response({
        "success":   True,
        "imagePath": image_path,
        "filename":  image_path.rsplit("/", 1)[-1],
    })


async def handle_analyze(request: web.Request) -> web.Response:
    body = await _read_json(request)
    image_paths = body.get("imagePaths")
    if (
        not isinstance(image_paths, list)
        or not image_paths
        or not all(isinstance(p, str) for p in image_paths)
    ):
        return _error(400, "缺少图片路径或图片路径格式错误")

    photo_count = body.get("photoCount")
    if not isinstance(photo_count, int) or isinstance(photo_count, bool) or photo_count <= 0:
        photo_count = len(image_paths)

    logger.info("Analysing %d image(s)", len(image_paths))
    outcome = await request.app[DISPATCHER_KEY].analyse(image_paths, photo_count)
    return web.json_response(outcome.to_response(), status=200 if outcome.success else 500)


async def handle_save_product(request: web.Request) -> web.Response:
    body = await _read_json(request)
    try:
        record = await request.app[STORE_KEY].add_product(
            name=body.get("name"),
            brand=body.get("brand"),
            price=body.get("price"),
            barcode=body.get("barcode"),
            description=body.get("description"),
            image_paths=body.get("imagePaths"),
        )
    except ValidationError as exc:
        return _error(400, str(exc))
    except (LockTimeoutError, OSError) as exc:
        logger.error("Saving product failed: %s", exc)
        return _error(500, f"保存失败: {exc}")

    return web.json_response({
        "success":      True,
        "serialNumber": record.serial_number,
        "productId":    record.id,
    })


async def handle_list_products(request: web.Request) -> web.Response:
    try:
        records = await request.app[STORE_KEY].list_products()
    except (LockTimeoutError, OSError) as exc:
        logger.error("Listing products failed: %s", exc)
        return _error(500, f"获取产品列表失败: {exc}")

    return web.json_response({
        "success":  True,
        "products": [r.to_dict() for r in records],
        "total":    len(records),
    })


async def handle_delete_product(request: web.Request) -> web.Response:
    product_id = request.match_info["product_id"]
    try:
        record = await request.app[STORE_KEY].delete_product(product_id)
    except NotFoundError as exc:
        return _error(404, str(exc))
    except (LockTimeoutError, OSError) as exc:
        logger.error("Deleting product %s failed: %s", product_id, exc)
        return _error(500, f"删除失败: {exc}")

    removed = delete_images(record.image_paths, request.app[UPLOADS_KEY])
    logger.info("Removed %d image file(s) for %s", removed, record.serial_number)
    return web.json_response({"success": True})


async def handle_export_excel(request: web.Request) -> web.Response:
    try:
        records = await request.app[STORE_KEY].read_all()
    except (LockTimeoutError, OSError) as exc:
        logger.error("Excel export failed: %s", exc)
        return _error(500, f"Excel导出失败: {exc}")

    if not records:
        return _error(404, "没有产品数据可导出")

    filename = quote(export_filename())
    logger.info("Exporting %d products to Excel", len(records))
    return web.Response(
        body=export_products(records),
        content_type=XLSX_CONTENT_TYPE,
        headers={
            "Content-Disposition": f"attachment; filename=\"{filename}\"; filename*=UTF-8''{filename}",
        },
    )


async def handle_system_status(request: web.Request) -> web.Response:
    process = psutil.Process()
    mem     = process.memory_info()
    store   = request.app[STORE_KEY]
    return web.json_response({
        "success":   True,
        "status":    "running",
        "version":   request.app[VERSION_KEY],
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "memory_usage": {
            "rss_mb": round(mem.rss / 1024 / 1024, 2),
            "vms_mb": round(mem.vms / 1024 / 1024, 2),
        },
        "uptime":       round(time.time() - process.create_time(), 1),
        "lock_waiters": store.locks.queue_length(store.lock_key),
        "providers":    [p.full_name for p in request.app[DISPATCHER_KEY].providers],
    })


# ── App factory ───────────────────────────────────────────────────────────────

def build_web_app(
    store: ProductStore,
    dispatcher: AnalysisDispatcher,
    rate_limiter: RateLimiter,
    uploads_dir: Path,
    version: str = "dev",
    static_dir: Optional[Path] = None,
    max_upload_mb: int = 50,
    trust_proxy_headers: bool = False,
) -> web.Application:
    uploads_dir = Path(uploads_dir)
    uploads_dir.mkdir(parents=True, exist_ok=True)

    app = web.Application(
        middlewares=[rate_limit_middleware],
        client_max_size=max_upload_mb * 1024 * 1024,
    )
    app[STORE_KEY]       = store
    app[DISPATCHER_KEY]  = dispatcher
    app[LIMITER_KEY]     = rate_limiter
    app[UPLOADS_KEY]     = uploads_dir
    app[VERSION_KEY]     = version
    app[TRUST_PROXY_KEY] = trust_proxy_headers

    app.router.add_post("/upload-image",             handle_upload)
    app.router.add_post("/analyze",                  handle_analyze)
    app.router.add_post("/save-product",             handle_save_product)
    app.router.add_get("/products",                  handle_list_products)
    app.router.add_delete("/products/{product_id}",  handle_delete_product)
    app.router.add_get("/export-excel",              handle_export_excel)
    app.router.add_get("/system-status",             handle_system_status)
    app.router.add_static("/uploads", uploads_dir)
    if static_dir is not None:
        app.router.add_static("/", static_dir)
    return app


async def start_server(
    app: web.Application,
    host: str,
    port: int,
    ssl_context: Optional[ssl.SSLContext] = None,
) -> web.AppRunner:
    """Start the web server.  Returns runner so caller can shut it down cleanly."""
    runner = web.AppRunner(app, access_log=logger)
    await runner.setup()
    site = web.TCPSite(runner, host, port, ssl_context=ssl_context)
    await site.start()
    logger.info(
        "Product capture service listening on %s://%s:%d",
        "https" if ssl_context else "http", host, port,
    )
    return runner
