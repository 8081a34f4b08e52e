from __future__ import annotations

from typing import Generator

from fastapi import Depends, HTTPException
from sqlalchemy.orm import Session
from starlette.requests import Request

from sefdispatch.runtime import Dispatcher


def get_dispatcher(request: Request) -> Dispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Dispatcher not initialised")
    return dispatcher


def get_dispatch_db(
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> Generator[Session, None, None]:
    db = dispatcher.session_factory()
    try:
        yield db
    finally:
        db.close()
