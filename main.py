"""
FastAPI application for RunPod-backed AI art transforms.
"""
import asyncio
import json
import logging
import sys
import time
import uuid
from contextlib import asynccontextmanager, contextmanager
from functools import lru_cache
from typing import AsyncGenerator, Iterator, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response

from clients.runpod_client import RunpodClient, runpod_client_from_settings
from clients.storage_client import SupabaseStorageClient
from config import AI_EXECUTION_MODE, AI_PROVIDER, ConfigError, get_settings
from database import OrderStatus, get_db, init_db
from models.schemas import ErrorResponse, JobStatusResponse, TransformInput, TransformRequest, TransformResponse
from services.commerce_webhook import (
    CommerceWebhookError,
    dispatch_order_job,
    extract_image_url,
    extract_order_ref,
    extract_style,
    should_skip_in_mock_mode,
    verify_shopify_hmac,
)
from services.connectivity import format_db_connectivity_message, format_tls_error_message
from services.job_store import JobStore, MockJobStore, SqlJobStore, new_manual_ref
from services.job_submitter import JobSubmitter
from services.output_extraction import extract_immediate_output
from services.payload_builder import PayloadBuilder, resolve_seed
from services.status_poller import StatusPoller
from services.storage import (
    UPLOADS_PREFIX,
    extract_storage_key_from_public_url,
    get_public_domain,
    get_storage_client,
    head_stored_object,
)
from services.upload_validation import UploadValidationError, validate_mime, validate_size
from services.webhook_ingestor import InvalidCallback, handle_callback, verify_webhook_token
from services.writeback import WritebackNotifier, WritebackRequest

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)
# Reduce noisy per-request logs from httpx/httpcore.
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

MOCK_SWEEP_INTERVAL_SECONDS = 60


class ApiError(Exception):
    """Rendered as {"error": message, "code": code} with the given status."""

    def __init__(self, status: int, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.message = message
        self.code = code


def _as_api_error(error: Exception, prefix: str, code: Optional[str] = "INTERNAL_ERROR") -> ApiError:
    db_message = format_db_connectivity_message(error)
    if db_message:
        return ApiError(503, db_message, "DB_CONNECTIVITY_ERROR")
    tls_message = format_tls_error_message(error)
    if tls_message:
        return ApiError(502, tls_message, "TLS_CERT_ERROR")
    return ApiError(500, f"{prefix}: {error}", code)


# ── Dependencies ─────────────────────────────────────────────

@lru_cache
def get_mock_store() -> MockJobStore:
    return MockJobStore(ttl_seconds=get_settings().mock_data_ttl_seconds)


@contextmanager
def open_store() -> Iterator[JobStore]:
    """Mock store in POC mode, otherwise a SQL store on a fresh session."""
    if get_settings().mock_mode:
        yield get_mock_store()
        return
    with contextmanager(get_db)() as db:
        yield SqlJobStore(db)


def get_store() -> Iterator[JobStore]:
    with open_store() as store:
        yield store


def get_storage() -> Optional[SupabaseStorageClient]:
    return get_storage_client(get_settings())


def get_runpod_client() -> Optional[RunpodClient]:
    """RunPod client for status refresh, or None when credentials are not configured."""
    try:
        return runpod_client_from_settings(get_settings())
    except ConfigError:
        return None


def get_submitter(storage: Optional[SupabaseStorageClient] = Depends(get_storage)) -> JobSubmitter:
    settings = get_settings()
    return JobSubmitter(settings, PayloadBuilder(settings, storage))


def get_notifier() -> WritebackNotifier:
    return WritebackNotifier(get_settings())


# ── Background work ──────────────────────────────────────────

async def _complete_mock_job(runpod_id: str, output_url: str, delay_seconds: float) -> None:
    await asyncio.sleep(delay_seconds)
    get_mock_store().mark_succeeded(runpod_id, output_url, None)
    logger.info("Mock job %s completed", runpod_id)


def _dispatch_order_in_background(submitter: JobSubmitter, order_id: str, image_url: str, style: str) -> None:
    with open_store() as store:
        dispatch_order_job(store, submitter, order_id, image_url, style)


def _schedule_writeback(
    background_tasks: BackgroundTasks, notifier: WritebackNotifier, writeback: Optional[WritebackRequest]
) -> None:
    if writeback is not None and notifier.should_notify(writeback.external_ref):
        background_tasks.add_task(notifier.notify_safely, writeback)


async def _mock_sweep_loop() -> None:
    while True:
        try:
            await asyncio.sleep(MOCK_SWEEP_INTERVAL_SECONDS)
            removed = get_mock_store().sweep_expired()
            if removed:
                logger.info("Mock store sweep removed %s expired entries", removed)
        except asyncio.CancelledError:
            break


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("Transform service starting (provider=%s, mode=%s)", AI_PROVIDER, AI_EXECUTION_MODE)
    s = get_settings()
    sweep_task = None
    if s.mock_mode:
        logger.warning("POC mock mode enabled: no RunPod calls, in-memory state only")
        sweep_task = asyncio.create_task(_mock_sweep_loop())
    else:
        try:
            await asyncio.to_thread(init_db)
            logger.info("Database initialized")
        except Exception as e:
            logger.exception("Automatic DB init failed: %s", e)
    if not s.shopify_integration_enabled:
        logger.info("Shopify integration disabled (SHOPIFY_ENABLED=false)")
    yield
    if sweep_task:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    logger.info("Transform service shutting down")


app = FastAPI(
    title="AI Art Transform",
    description="Submit images to RunPod ComfyUI workflows and track results",
    version="1.0.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    if request.url.path != "/health":
        logger.info(
            "%s %s -> %s (%.0f ms)",
            request.method, request.url.path, response.status_code, (time.perf_counter() - started) * 1000,
        )
    return response


@app.exception_handler(UploadValidationError)
async def upload_validation_error_handler(request: Request, exc: UploadValidationError) -> JSONResponse:
    return JSONResponse({"error": exc.message, "code": exc.code}, status_code=exc.status)


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    body = {"error": exc.message}
    if exc.code:
        body["code"] = exc.code
    return JSONResponse(body, status_code=exc.status)


@app.get("/health")
async def health() -> JSONResponse:
    """Lightweight health endpoint for uptime checks."""
    return JSONResponse({"status": "ok", "provider": AI_PROVIDER, "mockMode": get_settings().mock_mode})


# ── Transform ────────────────────────────────────────────────

def _validate_source_object(image_url: str, storage: Optional[SupabaseStorageClient]) -> None:
    settings = get_settings()
    key = extract_storage_key_from_public_url(image_url, get_public_domain(settings))
    meta = head_stored_object(
        key,
        storage_client=storage,
        mock_store=get_mock_store() if settings.mock_mode else None,
        timeout=settings.storage_head_timeout_seconds,
    )
    validate_mime(meta.content_type)
    validate_size(meta.content_length)


def _submit_transform_sync(store: JobStore, submitter: JobSubmitter, data: TransformInput) -> TransformResponse:
    order_id = store.create_order(external_ref=new_manual_ref(), image_url=data.image_url, style=data.style)
    try:
        result = submitter.submit(data.image_url, data.style, data.seed)
        completed = result.status == "COMPLETED"
        image_url, video_url = extract_immediate_output(result.response)
        status = OrderStatus.SUCCEEDED.value if completed else OrderStatus.PROCESSING.value
        store.attach_job(
            order_id,
            result.runpod_id,
            status=status,
            image_url=image_url,
            video_url=video_url,
            seed=result.seed,
        )
    except Exception:
        store.set_order_status(order_id, OrderStatus.FAILED.value)
        raise
    logger.info("Order %s submitted as RunPod job %s (%s)", order_id, result.runpod_id, status)
    return TransformResponse(
        order_id=order_id,
        runpod_id=result.runpod_id,
        provider_job_id=result.runpod_id,
        seed=result.seed,
        status=status,
        provider=AI_PROVIDER,
        mode=AI_EXECUTION_MODE,
    )


ERROR_RESPONSES = {code: {"model": ErrorResponse} for code in (400, 404, 413, 415, 500, 502, 503)}


@app.post("/api/transform", response_model=TransformResponse, responses=ERROR_RESPONSES)
async def transform(
    request: Request,
    background_tasks: BackgroundTasks,
    store: JobStore = Depends(get_store),
    storage: Optional[SupabaseStorageClient] = Depends(get_storage),
    submitter: JobSubmitter = Depends(get_submitter),
) -> TransformResponse:
    try:
        raw = await request.json()
    except ValueError:
        raw = None
    if not isinstance(raw, dict):
        raise ApiError(400, "Invalid payload. Expected { imageUrl, style, seed? }", "INVALID_PAYLOAD")

    try:
        data = TransformRequest.model_validate(raw).validated()
        await asyncio.to_thread(_validate_source_object, data.image_url, storage)

        settings = get_settings()
        if settings.mock_mode:
            runpod_id = f"mock-{uuid.uuid4()}"
            seed = resolve_seed(data.seed)
            order_id = store.create_order(external_ref=new_manual_ref(), image_url=data.image_url, style=data.style)
            store.attach_job(order_id, runpod_id, status=OrderStatus.PROCESSING.value, seed=seed)
            background_tasks.add_task(_complete_mock_job, runpod_id, data.image_url, settings.mock_job_delay_seconds)
            return TransformResponse(
                order_id=order_id,
                runpod_id=runpod_id,
                provider_job_id=runpod_id,
                seed=seed,
                status=OrderStatus.PROCESSING.value,
                provider=AI_PROVIDER,
                mode=AI_EXECUTION_MODE,
            )

        return await asyncio.to_thread(_submit_transform_sync, store, submitter, data)
    except (UploadValidationError, ApiError):
        raise
    except Exception as e:
        logger.exception("Transform API failed: %s", e)
        raise _as_api_error(e, "Failed to submit transform job") from e


# ── Job status ───────────────────────────────────────────────

@app.get("/api/jobs/{runpod_id}", response_model=JobStatusResponse, responses=ERROR_RESPONSES)
async def get_job(
    runpod_id: str,
    background_tasks: BackgroundTasks,
    store: JobStore = Depends(get_store),
    runpod_client: Optional[RunpodClient] = Depends(get_runpod_client),
    notifier: WritebackNotifier = Depends(get_notifier),
) -> JobStatusResponse:
    runpod_id = (runpod_id or "").strip()
    if not runpod_id:
        raise ApiError(400, "runpodId is required")

    try:
        if get_settings().mock_mode:
            record = store.get(runpod_id)
            if record is None:
                raise ApiError(404, "Job not found")
            return JobStatusResponse(
                runpod_id=runpod_id,
                order_id=record.order_id,
                status=record.status,
                output_image_url=record.output_image_url,
                output_video_url=record.output_video_url,
            )

        poller = StatusPoller(store, runpod_client)
        result = await asyncio.to_thread(poller.poll, runpod_id)
        if result is None:
            raise ApiError(404, "Job not found")
        _schedule_writeback(background_tasks, notifier, result.writeback)
        return JobStatusResponse(**result.to_response())
    except ApiError:
        raise
    except Exception as e:
        logger.exception("Jobs API failed: %s", e)
        raise _as_api_error(e, "Failed to load job status") from e


# ── Webhooks ─────────────────────────────────────────────────

@app.post("/api/webhooks/runpod")
async def runpod_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    store: JobStore = Depends(get_store),
    notifier: WritebackNotifier = Depends(get_notifier),
) -> JSONResponse:
    settings = get_settings()
    token_param = (settings.runpod_webhook_token_param or "").strip() or "token"
    if not verify_webhook_token(request.query_params.get(token_param), settings.runpod_webhook_secret):
        return JSONResponse({"error": "Invalid webhook token"}, status_code=401)

    try:
        payload = await request.json()
        body, writeback = handle_callback(store, payload)
    except (InvalidCallback, ValueError) as e:
        return JSONResponse({"error": f"RunPod webhook failed: {e}"}, status_code=400)
    except Exception as e:
        logger.exception("RunPod webhook failed: %s", e)
        return JSONResponse({"error": f"RunPod webhook failed: {e}"}, status_code=500)

    _schedule_writeback(background_tasks, notifier, writeback)
    return JSONResponse(body)


@app.post("/api/webhooks/shopify")
async def shopify_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    store: JobStore = Depends(get_store),
    submitter: JobSubmitter = Depends(get_submitter),
) -> JSONResponse:
    settings = get_settings()
    if not settings.shopify_integration_enabled:
        return JSONResponse({"ok": True, "disabled": True, "skipped": True})
    if should_skip_in_mock_mode(settings):
        logger.warning("Shopify webhook skipped in POC mock mode due to missing Shopify config.")
        return JSONResponse({"ok": True, "mock": True, "skipped": True})

    incoming_hmac = request.headers.get("X-Shopify-Hmac-Sha256")
    if not incoming_hmac:
        return JSONResponse({"error": "Missing Shopify HMAC header"}, status_code=401)
    event_id = request.headers.get("X-Shopify-Event-Id")
    if not event_id:
        return JSONResponse({"error": "Missing Shopify event id header"}, status_code=400)
    topic = request.headers.get("X-Shopify-Topic") or "unknown"

    raw_body = await request.body()
    if not raw_body:
        return JSONResponse({"error": "Empty request body"}, status_code=400)

    try:
        secret = settings.require("shopify_webhook_secret")
        if not verify_shopify_hmac(raw_body, incoming_hmac, secret):
            return JSONResponse({"error": "Invalid Shopify webhook signature"}, status_code=401)

        if not store.record_webhook_event(event_id, topic):
            logger.info("Duplicate Shopify webhook %s (%s) ignored", event_id, topic)
            return JSONResponse({"ok": True, "duplicate": True})

        payload = json.loads(raw_body.decode("utf-8"))
        if not isinstance(payload, dict):
            raise CommerceWebhookError("Invalid payload: expected an order object")
        order_ref = extract_order_ref(payload)
        if not order_ref:
            return JSONResponse({"error": "Invalid payload: missing order id"}, status_code=400)

        image_url = extract_image_url(payload)
        style = extract_style(payload)
        order_id = store.create_order(external_ref=order_ref, image_url=image_url, style=style)
    except Exception as e:
        logger.exception("Shopify webhook failed: %s", e)
        return JSONResponse({"error": f"Shopify webhook failed: {e}"}, status_code=500)

    # Shopify expects an acknowledgement within a few seconds; dispatch continues after the response.
    background_tasks.add_task(_dispatch_order_in_background, submitter, order_id, image_url, style)
    logger.info("Shopify order %s accepted as %s (style=%r)", order_ref, order_id, style)
    return JSONResponse({"ok": True})


# ── Mock object storage (POC mode only) ──────────────────────

def _resolve_mock_key(key: str) -> str:
    normalized = "/".join(segment.strip() for segment in key.split("/") if segment.strip())
    if not normalized:
        raise UploadValidationError("INVALID_PAYLOAD", "Object key is required", 400)
    if not normalized.startswith(UPLOADS_PREFIX):
        raise UploadValidationError("INVALID_PAYLOAD", "Object key must start with uploads/", 400)
    return normalized


def _ensure_mock_mode() -> None:
    if not get_settings().mock_mode:
        raise ApiError(404, "Not found")


@app.put("/api/mock/storage/{key:path}")
async def mock_storage_put(key: str, request: Request) -> JSONResponse:
    _ensure_mock_mode()
    object_key = _resolve_mock_key(key)
    content_type = validate_mime(request.headers.get("content-type", ""))
    body = await request.body()
    validate_size(len(body))
    stored = get_mock_store().put_object(object_key, body, content_type)
    return JSONResponse(
        {"ok": True, "key": stored.key, "contentType": stored.content_type, "contentLength": stored.content_length}
    )


@app.head("/api/mock/storage/{key:path}")
async def mock_storage_head(key: str) -> Response:
    _ensure_mock_mode()
    stored = get_mock_store().get_object(_resolve_mock_key(key))
    if stored is None:
        return Response(status_code=404)
    return Response(
        status_code=200,
        headers={
            "Content-Type": stored.content_type,
            "Content-Length": str(stored.content_length),
            "Cache-Control": "no-store",
        },
    )


@app.get("/api/mock/storage/{key:path}")
async def mock_storage_get(key: str) -> Response:
    _ensure_mock_mode()
    stored = get_mock_store().get_object(_resolve_mock_key(key))
    if stored is None:
        raise UploadValidationError("OBJECT_NOT_FOUND", "Object not found", 404)
    return Response(
        content=stored.body,
        media_type=stored.content_type,
        headers={"Cache-Control": "no-store"},
    )
