# backend/api/main.py
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from backend.listings.config import ScraperConfig, configure_logging
from backend.listings.errors import InputError, ListingError
from backend.listings.service import ListingService

log = logging.getLogger("listings.api")


def _cors_headers(origin: str, allowed: tuple) -> dict:
    headers = {"Vary": "Origin"}
    if origin and origin.rstrip("/") in allowed:
        headers["Access-Control-Allow-Origin"] = origin
        headers["Access-Control-Allow-Methods"] = "GET,OPTIONS"
        headers["Access-Control-Allow-Headers"] = "Content-Type"
    return headers


def create_app(config: Optional[ScraperConfig] = None, service: Optional[ListingService] = None) -> FastAPI:
    config = config if config is not None else ScraperConfig()
    service = service if service is not None else ListingService(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        try:
            yield
        finally:
            await service.close()

    app = FastAPI(title="Listing Extractor", lifespan=lifespan)
    app.state.service = service

    @app.middleware("http")
    async def cors(request: Request, call_next):
        origin = request.headers.get("origin", "")
        headers = _cors_headers(origin, config.allowed_origins)
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=headers)
        response = await call_next(request)
        for k, v in headers.items():
            response.headers[k] = v
        return response

    app.add_middleware(GZipMiddleware, minimum_size=500)

    @app.get("/", response_class=PlainTextResponse)
    async def health():
        return "OK"

    @app.get("/api/listing")
    async def get_listing(
        url: str = Query(""),
        address_hint: str = Query("", alias="addressHint"),
        refresh: str = Query(""),
    ):
        try:
            lookup = await service.get_listing(url, address_hint=address_hint, refresh=refresh == "1")
        except InputError as e:
            return JSONResponse(status_code=400, content={"ok": False, "error": str(e)})
        except ListingError as e:
            log.warning("API listing failed | %s | %s", url, e)
            return JSONResponse(status_code=500, content={"ok": False, "error": str(e)})
        return lookup.to_json()

    return app


app = create_app()


def run() -> None:
    import uvicorn

    config = ScraperConfig()
    configure_logging(debug=config.debug)
    port = int(os.getenv("PORT", "3000"))
    log.info("API listening on :%d", port)
    uvicorn.run(app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    run()
