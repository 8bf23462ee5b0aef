from __future__ import annotations

from idsync.core.config import load_config
from idsync.features.bootstrap.service import AppServices, bootstrap_services


def open_services(config_path: str) -> AppServices:
    cfg = load_config(config_path)
    return bootstrap_services(cfg)


def serve(config_path: str, *, host: str = "127.0.0.1", port: int = 8000) -> None:
    import uvicorn

    from idsync.app.api import create_app

    services = open_services(config_path)
    try:
        uvicorn.run(create_app(services), host=host, port=port)
    finally:
        services.close()
