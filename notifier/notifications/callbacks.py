"""Endpoints called by the message queue: delivery worker, success and failure callbacks.

Every request carries an `Upstash-Signature` JWT. Callback bodies wrap the
original message (`sourceBody`) and the worker's response (`body`), both
base64-encoded.
"""

import base64
import binascii
import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from ..config import settings
from ..dependencies import get_verifier, get_worker
from ..integrations.qstash import QueueSignatureVerifier, SignatureError
from .models import QueueBatchPayload, WorkerResponse
from .store import JobStoreError
from .worker import DeliveryNotReadyError, DeliveryRetryError, NotificationWorker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/queue", tags=["queue"])


def _check_signature(request: Request, body: bytes, verifier: QueueSignatureVerifier, url: str) -> JSONResponse | None:
    """None when the request may proceed, otherwise the 401 to return."""
    if not verifier.configured:
        if settings.is_production:
            logger.error("Queue signing keys missing in production; rejecting %s", request.url.path)
            return JSONResponse({"error": "Signature verification not configured"}, status_code=401)
        return None
    try:
        verifier.verify(request.headers.get("Upstash-Signature"), body, url=url)
    except SignatureError as exc:
        logger.warning("Rejected queue request to %s: %s", request.url.path, exc)
        return JSONResponse({"error": "Invalid signature"}, status_code=401)
    return None


def decode_field(value) -> object | None:
    """Decode a callback field that is base64-encoded JSON, plain JSON, or already parsed."""
    if value is None or isinstance(value, (dict, list)):
        return value
    text = str(value)
    try:
        text = base64.b64decode(text, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        pass
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def _parse_payload(raw) -> QueueBatchPayload | None:
    decoded = decode_field(raw)
    if not isinstance(decoded, dict):
        return None
    try:
        return QueueBatchPayload.model_validate(decoded)
    except ValidationError:
        return None


def _error_text(data: dict) -> str:
    if data.get("error"):
        return str(data["error"])
    response = decode_field(data.get("body") or data.get("responseBody"))
    if isinstance(response, dict) and response.get("error"):
        return str(response["error"])
    if isinstance(response, str) and response:
        return response[:500]
    status = data.get("status") or data.get("responseStatus")
    return f"Worker responded with status {status}" if status else "Unknown delivery error"


async def _read_callback(request: Request, verifier: QueueSignatureVerifier, url: str):
    body = await request.body()
    rejected = _check_signature(request, body, verifier, url)
    if rejected is not None:
        return rejected, None, None
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400), None, None
    if not isinstance(data, dict):
        return JSONResponse({"error": "Invalid callback body"}, status_code=400), None, None
    payload = _parse_payload(data.get("sourceBody"))
    if payload is None:
        return JSONResponse({"error": "Missing or invalid source payload"}, status_code=400), None, None
    return None, data, payload


@router.post("/worker")
async def worker_endpoint(
    request: Request,
    worker: NotificationWorker = Depends(get_worker),
    verifier: QueueSignatureVerifier = Depends(get_verifier),
):
    body = await request.body()
    rejected = _check_signature(request, body, verifier, settings.worker_url)
    if rejected is not None:
        return rejected
    try:
        payload = QueueBatchPayload.model_validate_json(body)
    except ValidationError as exc:
        logger.error("Queue delivered an unparseable payload: %s", exc)
        return JSONResponse({"error": "Invalid payload"}, status_code=400)

    message_id = request.headers.get("Upstash-Message-Id")
    try:
        results = await run_in_threadpool(worker.deliver, payload, message_id)
    except DeliveryNotReadyError as exc:
        logger.info("Delivery of %s not ready yet: %s", message_id, exc)
        return JSONResponse({"error": str(exc)}, status_code=503)
    except DeliveryRetryError as exc:
        return JSONResponse({"error": str(exc)}, status_code=500)
    except JobStoreError as exc:
        logger.error("Job store unavailable during delivery of %s: %s", message_id, exc)
        return JSONResponse({"error": "Job store unavailable"}, status_code=500)

    return JSONResponse(WorkerResponse(success=True, results=results).model_dump(mode="json"))


@router.post("/callback")
async def success_callback(
    request: Request,
    worker: NotificationWorker = Depends(get_worker),
    verifier: QueueSignatureVerifier = Depends(get_verifier),
):
    rejected, data, payload = await _read_callback(request, verifier, settings.callback_url)
    if rejected is not None:
        return rejected

    response = decode_field(data.get("body"))
    try:
        results = WorkerResponse.model_validate(response).results if isinstance(response, dict) else []
    except ValidationError:
        results = []
    if not results:
        logger.warning("Callback for batch %s carried no worker results", payload.batch_id)
        return JSONResponse({"ok": True, "updated": 0})

    try:
        updated = await run_in_threadpool(worker.apply_results, payload, results)
    except Exception as exc:
        # The queue must not retry a callback we cannot apply
        logger.exception("Failed to apply delivery results for batch %s", payload.batch_id)
        return JSONResponse({"ok": False, "error": str(exc)})
    return JSONResponse({"ok": True, "updated": len(updated)})


@router.post("/failure")
async def failure_callback(
    request: Request,
    worker: NotificationWorker = Depends(get_worker),
    verifier: QueueSignatureVerifier = Depends(get_verifier),
):
    rejected, data, payload = await _read_callback(request, verifier, settings.failure_url)
    if rejected is not None:
        return rejected

    error = _error_text(data)
    try:
        attempts = int(data.get("retried") or 0) + 1
    except (TypeError, ValueError):
        attempts = 1

    try:
        failed = await run_in_threadpool(worker.handle_exhausted, payload, error, attempts)
    except Exception as exc:
        logger.exception("Failed to record exhausted delivery for batch %s", payload.batch_id)
        return JSONResponse({"ok": False, "error": str(exc)})
    return JSONResponse({"ok": True, "failed": len(failed)})
