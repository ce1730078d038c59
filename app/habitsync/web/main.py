from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from habitsync import __version__
from habitsync.core.config import load_config
from habitsync.core.engine import build_engine
from habitsync.web import api as api_module


def build_app() -> FastAPI:
    cfg = load_config()

    @asynccontextmanager
    async def lifespan(_api: FastAPI):
        engine = build_engine(cfg)
        api_module.set_engine(engine)
        engine.attach()
        engine.enable_automatic(cfg.sync.poll_interval_sec)
        try:
            yield
        finally:
            engine.shutdown()
            api_module.set_engine(None)

    api = FastAPI(title="habitsync", version=__version__, lifespan=lifespan)
    api.include_router(api_module.router)
    return api


def main():
    import uvicorn

    cfg = load_config()

    from habitsync.core.logging_setup import setup_logging

    setup_logging(cfg.logging.level, cfg.logging.file)

    uvicorn.run(
        build_app(),
        host=cfg.web_bind_host,
        port=cfg.web_port,
        log_level=cfg.logging.level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
