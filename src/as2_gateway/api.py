from __future__ import annotations

import logging

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from .errors import As2Error, ValidationError
from .lifecycle import LifecycleStateMachine
from .models import Outcome

logger = logging.getLogger(__name__)


def _to_response(outcome: Outcome) -> Response:
    return Response(content=outcome.body, status_code=outcome.status, headers=outcome.headers)


def _required_header(request: Request, name: str, api: str) -> str:
    value = request.headers.get(name, "").strip()
    if not value:
        logger.error("%s not given %s header", api, name)
        raise ValidationError(f"{api} requires the {name} header")
    return value


def create_app(machine: LifecycleStateMachine) -> FastAPI:
    """Build the AS2 HTTP surface around a lifecycle state machine.

    The partnership is the remainder of the path after the API name and may
    contain slashes. Lifecycle calls block on disk and network I/O, so they
    run in the threadpool.
    """
    app = FastAPI(title="as2-gateway")
    app.state.machine = machine

    @app.exception_handler(As2Error)
    async def _as2_error(request: Request, exc: As2Error) -> Response:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        else:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
        return Response(status_code=exc.status_code)

    @app.post("/send/{partnership:path}")
    async def send(partnership: str, request: Request) -> Response:
        message_id = _required_header(request, "MessageId", "send")
        content = await request.body()
        outcome = await run_in_threadpool(
            machine.begin_send, partnership, message_id, content, dict(request.headers)
        )
        return _to_response(outcome)

    @app.post("/receive/{partnership:path}")
    async def receive(partnership: str, request: Request) -> Response:
        message_id = _required_header(request, "Message-Id", "receive")
        body = await request.body()
        outcome = await run_in_threadpool(
            machine.begin_receive, partnership, message_id, dict(request.headers), body
        )
        return _to_response(outcome)

    @app.post("/MDNsend/{partnership:path}")
    async def mdn_send(partnership: str, request: Request) -> Response:
        message_id = _required_header(request, "MessageId", "MDNsend")
        outcome = await run_in_threadpool(machine.deliver_deferred_receipt, partnership, message_id)
        return _to_response(outcome)

    @app.post("/MDNreceive/{partnership:path}")
    async def mdn_receive(partnership: str, request: Request) -> Response:
        message_id = _required_header(request, "Message-Id", "MDNreceive")
        body = await request.body()
        outcome = await run_in_threadpool(
            machine.accept_receipt, partnership, message_id, dict(request.headers), body
        )
        return _to_response(outcome)

    @app.get("/view/{partnership:path}")
    async def view(partnership: str) -> JSONResponse:
        settings = await run_in_threadpool(machine.resolver.view, partnership)
        return JSONResponse(settings)

    return app
