"""FastAPI app exposing one inference session over HTTP.

The HTTP layer lives under `apps/` and can depend on heavier deps (FastAPI, uvicorn).
All model execution is delegated to the core engine (`infersession/engine`).
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable

from fastapi import FastAPI, HTTPException, Request
from starlette.responses import JSONResponse, StreamingResponse

from infersession.engine.errors import DecodeFailure, InvalidSessionState
from infersession.engine.session import InferenceSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionRequest:
    prompt: str
    system: str | None = None
    max_tokens: int | None = None
    max_user_tokens: int | None = None
    stream: bool = False


def create_app(
    *,
    session: InferenceSession,
    model_id: str,
    http_max_completion_tokens: int | None = None,
) -> FastAPI:
    app = FastAPI(title="Inference Session Server", version="0.1.0")

    if http_max_completion_tokens is not None:
        try:
            http_max_completion_tokens = int(http_max_completion_tokens)
        except (TypeError, ValueError) as exc:
            raise ValueError("http_max_completion_tokens must be an integer") from exc
        if http_max_completion_tokens <= 0:
            raise ValueError("http_max_completion_tokens must be > 0")

    # One generation (or bench / clear) at a time; requests arriving while busy get 429.
    _busy = threading.Lock()
    app.state.busy_lock = _busy

    def _try_acquire() -> None:
        if not _busy.acquire(blocking=False):
            raise HTTPException(status_code=429, detail="Server is busy")

    async def _json_dict_or_empty(request: Request) -> dict[str, Any]:
        try:
            payload = await request.json()
        except json.JSONDecodeError:
            return {}
        if isinstance(payload, dict):
            return payload
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")

    # -------------------------------------------------------------------------
    # Health & Model
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/v1/model")
    async def model() -> dict[str, Any]:
        info = session.model_info()
        return {
            "id": model_id,
            "object": "model",
            "description": info.description,
            "size_bytes": info.size_bytes,
            "size_gib": info.size_gib,
            "param_count": info.param_count,
            "params_billions": info.params_billions,
            "backend": info.backend,
            "context_window": info.context_window,
            "stop_strings": list(session.stop_strings),
        }

    # -------------------------------------------------------------------------
    # Metrics & Session control
    # -------------------------------------------------------------------------

    @app.get("/v1/metrics")
    async def metrics() -> dict[str, Any]:
        # Both take the session lock, which a running step() holds for a whole forward pass.
        report = await asyncio.to_thread(session.performance_report)
        info = await asyncio.to_thread(session.info)
        return {"session": info, "metrics": report.to_dict()}

    @app.post("/v1/clear")
    async def clear() -> dict[str, Any]:
        _try_acquire()
        try:
            await asyncio.to_thread(session.clear)
        finally:
            _busy.release()
        return {"status": "cleared", "state": session.state.value}

    @app.post("/v1/bench")
    async def bench(request: Request) -> dict[str, Any]:
        payload = await _json_dict_or_empty(request)
        try:
            pp = int(payload.get("pp", 512))
            tg = int(payload.get("tg", 128))
            pl = int(payload.get("pl", 1))
            nr = int(payload.get("nr", 1))
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail="'pp', 'tg', 'pl' and 'nr' must be integers.") from exc

        _try_acquire()
        try:
            report = await asyncio.to_thread(session.bench, pp, tg, pl, nr)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        finally:
            _busy.release()

        out = report.to_dict()
        out["markdown"] = report.to_markdown()
        return out

    # -------------------------------------------------------------------------
    # Completions
    # -------------------------------------------------------------------------

    @app.post("/v1/completions")
    async def completions(request: Request) -> Any:
        payload = await _json_dict_or_empty(request)

        req_model = payload.get("model")
        if req_model is not None and req_model != model_id:
            raise HTTPException(status_code=404, detail=f"Unknown model: {req_model}")

        req = _parse_completion_request(payload, http_max_completion_tokens=http_max_completion_tokens)
        created = int(time.time())
        cmpl_id = f"cmpl-{uuid.uuid4().hex}"

        _try_acquire()

        if req.stream:
            event_iter = _stream_completion(
                session=session,
                req=req,
                model_id=model_id,
                created=created,
                cmpl_id=cmpl_id,
                request=request,
            )
            return LockedStreamingResponse(event_iter, release=_busy.release, media_type="text/event-stream")

        finish_reason: str | None = None
        try:
            await asyncio.to_thread(session.clear)
            fit = await asyncio.to_thread(
                session.init_prefill,
                req.prompt,
                system=req.system,
                max_new_tokens=req.max_tokens,
                max_user_tokens=req.max_user_tokens,
            )
            while True:
                if await request.is_disconnected():
                    logger.info("client disconnected; stopping generation %s", cmpl_id)
                    raise HTTPException(status_code=499, detail="Client disconnected")
                result = await asyncio.to_thread(session.step)
                if result.done:
                    finish_reason = result.finish_reason
                    break
            # The accumulated text is clipped at the stop string; streamed pieces may not be.
            text = session.output_text
            snapshot = session.metrics_snapshot()
        except DecodeFailure as exc:
            return JSONResponse(
                status_code=500,
                content={
                    "error": {
                        "message": str(exc),
                        "type": "server_error",
                        "phase": exc.phase,
                        "output_text": exc.output_text,
                    }
                },
            )
        except InvalidSessionState as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        finally:
            _busy.release()

        resp: dict[str, Any] = {
            "id": cmpl_id,
            "object": "text_completion",
            "created": created,
            "model": model_id,
            "choices": [{"index": 0, "text": text, "finish_reason": finish_reason}],
            "usage": _usage(len(fit.tokens), snapshot.decode_tokens),
            "metrics": snapshot.to_dict(),
        }
        if fit.truncated:
            resp["prompt_truncated"] = {"dropped_tokens": fit.dropped}
        return JSONResponse(resp)

    return app


class LockedStreamingResponse(StreamingResponse):
    """Streaming response that releases the server busy lock once the response is over.

    The body iterator may never start (client gone before the response
    starts), so its own `finally` cannot be relied on to release.
    """

    def __init__(self, content: Any, *, release: Callable[[], None], **kwargs: Any) -> None:
        super().__init__(content, **kwargs)
        self._release = release

    async def __call__(self, scope: Any, receive: Any, send: Any) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self._release()


def _sse(data: str) -> str:
    return f"data: {data}\n\n"


def _usage(prompt_tokens: int, completion_tokens: int) -> dict[str, int]:
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": prompt_tokens + completion_tokens,
    }


def _error_event(message: str, err_type: str, **extra: Any) -> str:
    err: dict[str, Any] = {"message": message, "type": err_type}
    err.update(extra)
    return _sse(json.dumps({"error": err}, ensure_ascii=False))


async def _stream_completion(
    *,
    session: InferenceSession,
    req: CompletionRequest,
    model_id: str,
    created: int,
    cmpl_id: str,
    request: Request,
) -> AsyncIterator[str]:
    def chunk(text: str, finish_reason: str | None) -> dict[str, Any]:
        return {
            "id": cmpl_id,
            "object": "text_completion",
            "created": created,
            "model": model_id,
            "choices": [{"index": 0, "text": text, "finish_reason": finish_reason}],
        }

    final_finish_reason: str | None = None
    prompt_tokens = 0
    cancelled = False
    failed = False

    try:
        await asyncio.to_thread(session.clear)
        fit = await asyncio.to_thread(
            session.init_prefill,
            req.prompt,
            system=req.system,
            max_new_tokens=req.max_tokens,
            max_user_tokens=req.max_user_tokens,
        )
        prompt_tokens = len(fit.tokens)

        while True:
            # Stop stepping promptly once the client goes away.
            if await request.is_disconnected():
                logger.info("client disconnected; stopping generation %s", cmpl_id)
                cancelled = True
                break

            result = await asyncio.to_thread(session.step)
            if result.text:
                yield _sse(json.dumps(chunk(result.text, None), ensure_ascii=False))
            if result.done:
                final_finish_reason = result.finish_reason
                break
    except asyncio.CancelledError:
        cancelled = True
        raise
    except DecodeFailure as exc:
        failed = True
        if exc.text:
            yield _sse(json.dumps(chunk(exc.text, None), ensure_ascii=False))
        yield _error_event(str(exc), "server_error", phase=exc.phase)
    except ValueError as exc:
        failed = True
        yield _error_event(str(exc), "invalid_request_error")

    # Terminal chunk + DONE (skip if the request was cancelled/disconnected).
    if not cancelled and not failed:
        snapshot = session.metrics_snapshot()
        terminal = chunk("", final_finish_reason)
        terminal["usage"] = _usage(prompt_tokens, snapshot.decode_tokens)
        terminal["metrics"] = snapshot.to_dict()
        yield _sse(json.dumps(terminal, ensure_ascii=False))
    if not cancelled:
        yield "data: [DONE]\n\n"


def _parse_completion_request(payload: Any, *, http_max_completion_tokens: int | None = None) -> CompletionRequest:
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")

    prompt = payload.get("prompt")
    if not isinstance(prompt, str) or not prompt:
        raise HTTPException(status_code=400, detail="'prompt' must be a non-empty string.")

    system = payload.get("system")
    if system is not None and not isinstance(system, str):
        raise HTTPException(status_code=400, detail="'system' must be a string.")

    max_tokens: int | None = None
    if payload.get("max_tokens") is not None:
        try:
            max_tokens = int(payload["max_tokens"])
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail="'max_tokens' must be an integer.") from exc
        if max_tokens <= 0:
            raise HTTPException(status_code=400, detail="'max_tokens' must be > 0.")
    if http_max_completion_tokens is not None:
        if max_tokens is None:
            max_tokens = http_max_completion_tokens
        elif max_tokens > http_max_completion_tokens:
            raise HTTPException(
                status_code=400,
                detail=f"'max_tokens' exceeds the server limit ({http_max_completion_tokens}).",
            )

    max_user_tokens: int | None = None
    if payload.get("max_user_tokens") is not None:
        try:
            max_user_tokens = int(payload["max_user_tokens"])
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail="'max_user_tokens' must be an integer.") from exc
        if max_user_tokens <= 0:
            raise HTTPException(status_code=400, detail="'max_user_tokens' must be > 0.")

    return CompletionRequest(
        prompt=prompt,
        system=system,
        max_tokens=max_tokens,
        max_user_tokens=max_user_tokens,
        stream=bool(payload.get("stream", False)),
    )
