"""
Inbound WhatsApp Webhook

Accepts Twilio form posts and the provider-agnostic JSON payload
``{"from", "to", "body", "providerMessageId"}``.
"""

import json
import logging
from typing import Any

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from agenda.core.ingress import WebhookIngress
from agenda.infra.messaging import SignedRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["Webhook"])

# Twilio expects TwiML; an empty response means "no synchronous reply"
EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def get_ingress(request: Request) -> WebhookIngress:
    return request.app.state.ingress


@router.post("/whatsapp", summary="Inbound WhatsApp message")
async def whatsapp_webhook(request: Request) -> Response:
    """
    Receive one inbound message.

    Returns 401 on bad signature, 400 on missing fields, 404 for an unknown
    recipient number, 503 when the conversation cannot be stored and 200
    for everything else.
    """
    body = await request.body()
    is_json = "application/json" in request.headers.get("content-type", "")

    params: dict[str, str] = {}
    if is_json:
        try:
            payload: dict[str, Any] = json.loads(body or b"{}")
        except ValueError:
            return JSONResponse(status_code=400, content={"status": "invalid_payload"})
        if not isinstance(payload, dict):
            return JSONResponse(status_code=400, content={"status": "invalid_payload"})
    else:
        form = await request.form()
        params = {key: str(value) for key, value in form.items()}
        payload = params

    signed = SignedRequest(
        url=str(request.url),
        headers=dict(request.headers),
        body=body,
        params=params,
    )
    result = await get_ingress(request).handle(signed, payload)

    if result.status_code == 200 and not is_json:
        return Response(content=EMPTY_TWIML, media_type="application/xml")
    return JSONResponse(status_code=result.status_code, content=result.to_dict())
