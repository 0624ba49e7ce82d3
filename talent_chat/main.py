import logging

from fastapi import FastAPI

import talent_chat.config.config as configs
from talent_chat.api.v1.route import api_router as MainRouter
from talent_chat.api.v1.route import close_clients
from talent_chat.db import models  # noqa: F401
from talent_chat.db.session import Base, engine

logging.basicConfig(level=configs.LOG_LEVEL)

app = FastAPI(title="talent_chat", version="0.1.0")
app.include_router(router=MainRouter, prefix="/api/v1")


@app.on_event("startup")
def create_tables() -> None:
    Base.metadata.create_all(bind=engine)


@app.on_event("shutdown")
async def shutdown_event() -> None:
    await close_clients()
