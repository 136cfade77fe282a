"""HTTP API for the conversation buffer.

Endpoints write straight into the MemoryService shared with the MCP
server, so a tag or mode set here applies to messages added there:
- POST /api/message - Add a conversation message
- POST /api/set-conversation-tag, GET /api/get-conversation-tag
- POST /api/set-tagging-mode, GET /api/get-tagging-mode
- GET /api/stats - Message and project file counts
- GET /health - Store reachability and buffer state
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .api import MemoryService
from .store import StoreError

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Request models
# -----------------------------------------------------------------------------

class MessageRequest(BaseModel):
    role: str = Field(description="user, assistant or system")
    content: str
    tags: Optional[list[str]] = None


class TagRequest(BaseModel):
    tag: str = ""


class ModeRequest(BaseModel):
    mode: str


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------

router = APIRouter()


def get_service(request: Request) -> MemoryService:
    return request.app.state.service


@router.post("/api/message")
def add_message(
    body: MessageRequest,
    service: MemoryService = Depends(get_service),
) -> dict[str, Any]:
    message = service.add_message(body.role, body.content, tags=body.tags)
    logger.info("API message added: %s (%s)", message.id, message.role)
    return {
        "success": True,
        "message": "Message added successfully",
        "id": message.id,
        "tags": message.tags,
    }


@router.post("/api/set-conversation-tag")
def set_conversation_tag(
    body: TagRequest,
    service: MemoryService = Depends(get_service),
) -> dict[str, Any]:
    tag = service.set_conversation_tag(body.tag)
    return {"success": True, "message": f"Conversation tag set to '{tag}'"}


@router.get("/api/get-conversation-tag")
def get_conversation_tag(service: MemoryService = Depends(get_service)) -> dict[str, Any]:
    return {"tag": service.get_conversation_tag()}


@router.post("/api/set-tagging-mode")
def set_tagging_mode(
    body: ModeRequest,
    service: MemoryService = Depends(get_service),
) -> dict[str, Any]:
    dispatched = service.set_tagging_mode(body.mode)
    mode = service.get_tagging_mode()
    return {
        "success": True,
        "message": f"Tagging mode set to {mode}",
        "dispatched": dispatched,
    }


@router.get("/api/get-tagging-mode")
def get_tagging_mode(service: MemoryService = Depends(get_service)) -> dict[str, Any]:
    return {"mode": service.get_tagging_mode()}


@router.get("/api/stats")
def stats(service: MemoryService = Depends(get_service)) -> dict[str, Any]:
    return service.client.get_stats()


@router.get("/health")
def health(service: MemoryService = Depends(get_service)) -> dict[str, Any]:
    return service.health()


# -----------------------------------------------------------------------------
# App
# -----------------------------------------------------------------------------

async def _value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = sorted({".".join(str(p) for p in e.get("loc", ())) for e in exc.errors()})
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Invalid request body", "fields": fields},
    )


async def _store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    logger.warning("Store error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=502, content={"success": False, "error": str(exc)})


def create_app(service: MemoryService) -> FastAPI:
    """Build the HTTP app bound to one MemoryService."""
    app = FastAPI(title="memsync", description="Conversation memory API")
    app.state.service = service
    app.include_router(router)
    app.add_exception_handler(ValueError, _value_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(StoreError, _store_error_handler)
    return app
