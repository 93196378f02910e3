from __future__ import annotations

from datetime import datetime
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from loguru import logger

from . import schemas
from .core.config import settings
from .db import get_db, init_db
from .domain import InvariantViolation
from .repositories import Store
from .services.market_service import MarketService
from .services.notifications import ResolutionNotifier, build_notifier
from .services.resolution_service import ResolutionService
from .services.sale_service import SaleService

app = FastAPI(title="Market Resolution API", version="0.1.0", debug=settings.debug)

_STATUS_BY_ERROR = {
    "validation": 400,
    "conflict": 409,
    "partial_failure": 207,
}


@app.on_event("startup")
def on_startup() -> None:
    """Initialize database connections when the API boots."""

    init_db()


@app.on_event("shutdown")
def on_shutdown() -> None:
    """Release the notifier's HTTP connections."""

    if _notifier.cache_info().currsize:
        close = getattr(_notifier(), "close", None)
        if close is not None:
            close()
        _notifier.cache_clear()


@app.exception_handler(InvariantViolation)
async def invariant_violation_handler(request: Request, exc: InvariantViolation) -> JSONResponse:
    logger.error("Invariant violated while handling {}: {}", request.url.path, exc)
    return JSONResponse(status_code=500, content={"status": "error", "message": str(exc)})


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


def _store() -> Store:
    return Store.from_settings(settings)


def _market_service(db=Depends(get_db)) -> MarketService:
    """Provide the read service wired with a SQLAlchemy session."""

    return MarketService(db)


@lru_cache
def _notifier() -> ResolutionNotifier:
    """One notifier, and one webhook client, per process."""

    return build_notifier(settings)


def _resolution_service(
    store: Store = Depends(_store),
    notifier: ResolutionNotifier = Depends(_notifier),
) -> ResolutionService:
    return ResolutionService(store, notifier=notifier, settings=settings)


def _sale_service(store: Store = Depends(_store)) -> SaleService:
    return SaleService(store, settings=settings)


def _respond(result: schemas.OperationResult) -> JSONResponse:
    status_code = 200
    if result.status == "error":
        status_code = _STATUS_BY_ERROR.get(result.error_type or "validation", 400)
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


@app.post("/markets/{contract_id}/resolve", response_model=schemas.OperationResult, tags=["markets"])
def resolve_market(
    contract_id: str,
    payload: schemas.ResolveMarketRequest,
    service: ResolutionService = Depends(_resolution_service),
):
    result = service.resolve_market(
        user_id=payload.user_id,
        contract_id=contract_id,
        outcome=payload.outcome,
        probability_int=payload.probability_int,
        resolutions=payload.resolutions,
    )
    return _respond(result)


@app.post(
    "/markets/{contract_id}/bets/{bet_id}/sell",
    response_model=schemas.OperationResult,
    tags=["markets"],
)
def sell_bet(
    contract_id: str,
    bet_id: str,
    payload: schemas.SellBetRequest,
    service: SaleService = Depends(_sale_service),
):
    result = service.sell_bet(user_id=payload.user_id, contract_id=contract_id, bet_id=bet_id)
    return _respond(result)


@app.get("/markets/{contract_id}", response_model=schemas.ContractWithBets, tags=["markets"])
def get_market(contract_id: str, service: MarketService = Depends(_market_service)):
    market = service.get_market(contract_id)
    if not market:
        raise HTTPException(status_code=404, detail="Market not found")
    return market


@app.get("/users/{user_id}", response_model=schemas.User, tags=["users"])
def get_user(user_id: str, service: MarketService = Depends(_market_service)):
    user = service.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@app.get("/users/{user_id}/portfolio", response_model=schemas.Portfolio, tags=["users"])
def get_portfolio(
    user_id: str,
    since: Annotated[datetime | None, Query(description="Only return snapshots taken after this time")] = None,
    service: MarketService = Depends(_market_service),
):
    portfolio = service.get_portfolio(user_id, since=since)
    if portfolio is None:
        raise HTTPException(status_code=404, detail="User not found")
    return portfolio
