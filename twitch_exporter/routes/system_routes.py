from __future__ import annotations

from fastapi import FastAPI
from fastapi.responses import HTMLResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest

LANDING_PAGE = """<html>
<head><title>Twitch Exporter</title></head>
<body>
<h1>Twitch Exporter</h1>
<p><a href="{metrics_path}">Metrics</a></p>
</body>
</html>
"""


def register_system_routes(
    app: FastAPI,
    *,
    registry: CollectorRegistry,
    metrics_path: str,
) -> None:
    @app.get("/", response_class=HTMLResponse)
    async def index():
        return LANDING_PAGE.format(metrics_path=metrics_path)

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.get(metrics_path)
    async def metrics():
        return Response(content=generate_latest(registry), media_type=CONTENT_TYPE_LATEST)
