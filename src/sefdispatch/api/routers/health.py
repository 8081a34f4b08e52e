from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import text

from sefdispatch import __version__
from sefdispatch.api.dependencies.dispatch import get_dispatcher
from sefdispatch.integrations.authority import AuthorityClient
from sefdispatch.models.invoice import Company
from sefdispatch.runtime import Dispatcher

router = APIRouter(tags=["system"])


@router.get("/health")
def health(
    authority: bool = Query(False, description="Also probe the authority API"),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> dict:
    settings = dispatcher.settings
    overall_ok = True
    deps: dict = {}

    try:
        with dispatcher.session_factory() as db:
            db.execute(text("SELECT 1"))
            company = (
                db.query(Company).filter(Company.authority_api_key.isnot(None)).first()
                if authority
                else None
            )
        deps["db"] = {"ok": True}
    except Exception as exc:
        deps["db"] = {"ok": False, "error": str(exc)}
        company = None
        overall_ok = False

    if authority:
        if company is None:
            deps["authority"] = {"ok": None, "configured": False}
        else:
            client_factory = dispatcher.client_factory or AuthorityClient.for_company
            reachable = client_factory(company).health()
            deps["authority"] = {
                "ok": reachable,
                "configured": True,
                "environment": company.authority_environment,
            }
            overall_ok = overall_ok and reachable

    return {
        "ok": overall_ok,
        "service": "sefdispatch",
        "version": __version__,
        "environment": settings.ENVIRONMENT,
        "schema_mode": settings.SCHEMA_MODE,
        "quiet_hours_active": dispatcher.queue.quiet_hours.is_active(dispatcher.queue.clock()),
        "deps": deps,
    }
