"""FastAPI application receiving LINE webhooks and relaying them to the LLM."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .config import load_config
from .dispatcher import EventDispatcher
from .history import load_preamble, load_window
from .llm import CompletionClient
from .llm import create_from_config as create_completion
from .models import WebhookBody
from .reply import ReplyClient
from .reply import create_from_config as create_replier
from .store import MessageStore
from .store import create_from_config as create_store

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Line-Signature"


# -----------------------------
# Utilities
# -----------------------------
def _make_signature_check(cfg: Dict[str, Any]):
    line_cfg = cfg.get("line", {})
    if not line_cfg.get("verify_signature", True):
        return lambda body, signature: True

    from linebot.v3.webhook import SignatureValidator

    validator = SignatureValidator(str(line_cfg.get("channel_secret") or ""))
    return lambda body, signature: bool(signature) and validator.validate(body, signature)


def _call_timeout(cfg: Dict[str, Any]) -> Optional[float]:
    value = cfg.get("dispatcher", {}).get("call_timeout")
    if value is None or float(value) <= 0:
        return None
    return float(value)


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    store: Optional[MessageStore] = None,
    completion: Optional[CompletionClient] = None,
    replier: Optional[ReplyClient] = None,
) -> FastAPI:
    cfg = load_config(config_path)

    # Services
    store = store or create_store(cfg)
    completion = completion or create_completion(cfg)
    replier = replier or create_replier(cfg)
    dispatcher = EventDispatcher(
        store,
        completion,
        replier,
        preamble=load_preamble(cfg),
        window=load_window(cfg),
        call_timeout=_call_timeout(cfg),
    )
    signature_ok = _make_signature_check(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await replier.aclose()

    app = FastAPI(title="Chat Relay", version="0.1.0", lifespan=lifespan)
    app.state.dispatcher = dispatcher

    cors_origins = cfg.get("server", {}).get("cors_origins") or []
    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "store": type(store).__name__,
            "model": getattr(completion, "model", None),
        }

    @app.post("/webhook")
    async def webhook(request: Request):
        try:
            body = (await request.body()).decode("utf-8")
        except UnicodeDecodeError:
            raise HTTPException(status_code=400, detail="Webhook body is not UTF-8.")
        if not signature_ok(body, request.headers.get(SIGNATURE_HEADER, "")):
            raise HTTPException(status_code=400, detail="Invalid signature.")

        try:
            payload = WebhookBody.model_validate_json(body)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=f"Malformed webhook body: {e.error_count()} error(s)")

        try:
            results = await request.app.state.dispatcher.dispatch(payload.events)
        except Exception:
            logger.exception("Dispatcher failed for batch of %d event(s)", len(payload.events))
            return Response(status_code=500)

        return JSONResponse([r.model_dump() if r is not None else None for r in results])

    return app
