from __future__ import annotations

import json

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse, Response

from twitch_exporter.eventsub.client import EventSubClient
from twitch_exporter.eventsub.signature import MESSAGE_ID_HEADER, MESSAGE_TYPE_HEADER


def register_webhook_routes(
    app: FastAPI,
    *,
    path: str,
    eventsub: EventSubClient,
) -> None:
    @app.post(path)
    async def twitch_eventsub_webhook(request: Request):
        # Signatures cover the exact bytes received, so verify before parsing.
        raw_body = await request.body()
        if not eventsub.verify(request.headers, raw_body):
            raise HTTPException(status_code=403, detail="Invalid Twitch signature")
        message_id = request.headers.get(MESSAGE_ID_HEADER, "")
        message_type = request.headers.get(MESSAGE_TYPE_HEADER, "").lower()
        try:
            payload = json.loads(raw_body)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON body") from None
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON body")

        if message_type == "webhook_callback_verification":
            challenge = payload.get("challenge", "")
            return PlainTextResponse(content=str(challenge), status_code=200)

        if message_type == "notification":
            if not await eventsub.is_new_message_id(message_id):
                return Response(status_code=204)
            subscription = payload.get("subscription") or {}
            eventsub.dispatch(str(subscription.get("type", "")), payload.get("event") or {})
            return Response(status_code=204)

        if message_type == "revocation":
            eventsub.handle_revocation(payload)
            return Response(status_code=204)

        return Response(status_code=204)
