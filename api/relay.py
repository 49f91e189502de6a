"""
Relay protocol routes used by the R session.

Push path:
- POST /review          R sends a whole data frame (REView(df))

Pull path (R polls, the extension waits):
- POST /register        R announces itself
- POST /heartbeat       R extends its liveness
- GET  /pending         R asks for the oldest unanswered request
- POST /respond/{id}    R answers a request

Every state change finishes before the response is returned, so the
next request always observes it.
"""

import time
from typing import Any, Optional

import orjson
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ValidationError

from .context import RelayContext, get_relay
from .errors import EntityTooLarge, MalformedPayload, UnknownRequestId
from .normalizer import normalize_payload
from .shared.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["relay"])


class RegisterRequest(BaseModel):
    rVersion: Optional[str] = None
    pid: Optional[int] = None


class RespondRequest(BaseModel):
    data: Any = None
    error: Any = None


async def read_body(request: Request, max_bytes: int) -> bytes:
    """Read the request body, refusing to buffer more than ``max_bytes``."""
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise EntityTooLarge(max_bytes)

    chunks = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > max_bytes:
            raise EntityTooLarge(max_bytes)
        chunks.append(chunk)
    return b"".join(chunks)


def decode_json(body: bytes) -> Any:
    if not body.strip():
        raise MalformedPayload("Invalid JSON: empty body")
    try:
        return orjson.loads(body)
    except orjson.JSONDecodeError as e:
        raise MalformedPayload(f"Invalid JSON: {e}") from None


@router.post("/register")
async def register(
    body: Optional[RegisterRequest] = None,
    relay: RelayContext = Depends(get_relay),
):
    """Register the R session and mark it attached."""
    body = body or RegisterRequest()
    relay.register_session(body.rVersion, body.pid)
    return {"status": "registered", "port": relay.port}


@router.post("/heartbeat")
async def heartbeat(relay: RelayContext = Depends(get_relay)):
    """Extend liveness; 400 if R never registered."""
    relay.session.heartbeat()
    return {"status": "ok"}


@router.get("/pending")
async def pending(relay: RelayContext = Depends(get_relay)):
    """Return the oldest pending pull request, or ``{"id": null}``.

    Polling counts as a heartbeat. The request stays pending until R
    responds to it or it times out.
    """
    relay.session.touch()
    request = relay.correlator.take_oldest_pending()
    if request is None:
        return {"id": None}
    return request.to_dict()


@router.post("/respond/{request_id}")
async def respond(
    request_id: str,
    request: Request,
    relay: RelayContext = Depends(get_relay),
):
    """Resolve a pending pull request with R's answer.

    Only /review is size-capped; a response carries whatever R was asked for.
    """
    correlator = relay.correlator
    if not correlator.is_pending(request_id):
        raise UnknownRequestId(request_id)

    try:
        raw = decode_json(await request.body())
        body = RespondRequest.model_validate(raw)
    except ValidationError as e:
        error = MalformedPayload(f"Invalid response body: {e.errors()[0]['msg']}")
        correlator.fail(request_id, error)
        raise error from None
    except MalformedPayload as e:
        correlator.fail(request_id, e)
        raise

    error = str(body.error) if body.error else None
    if not correlator.resolve(request_id, data=body.data, error=error):
        # timed out while the body was being read
        raise UnknownRequestId(request_id)
    return {"status": "ok"}


@router.post("/review")
async def review(request: Request, relay: RelayContext = Depends(get_relay)):
    """Receive a data frame pushed by REView() and hand it to the sinks."""
    body = await read_body(request, relay.config.max_body_bytes)

    start = time.perf_counter()
    snapshot = normalize_payload(decode_json(body), now_ms=relay.clock())
    parse_time = int((time.perf_counter() - start) * 1000)

    logger.info(
        "Received %r: %d rows x %d cols (parsed in %dms)",
        snapshot.name,
        snapshot.total_row_count,
        snapshot.total_column_count,
        parse_time,
    )
    logger.debug("Columns: %s", snapshot.column_names)

    relay.deliver(snapshot)

    return {
        "status": "success",
        "message": f"Viewing {snapshot.name}",
        "rows": snapshot.total_row_count,
        "columns": snapshot.total_column_count,
        "parseTime": parse_time,
    }
