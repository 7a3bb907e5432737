"""Uvicorn entrypoint for the CMS proxy."""

from __future__ import annotations

import uvicorn

from .app import create_app

app = create_app()


def serve() -> None:
    settings = app.state.settings
    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_config=None,
        log_level=settings.log_level.lower(),
        # client addresses are resolved against CMSPROXY_TRUSTED_PROXY_CIDRS instead
        proxy_headers=False,
    )
    uvicorn.Server(config).run()


if __name__ == "__main__":
    serve()
