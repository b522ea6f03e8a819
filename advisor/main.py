import logging

from fastapi import Depends, FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import create_async_engine

from advisor.config import AdvisorSettings
from advisor.errors import AdvisorError, AdvisorRateLimitError
from advisor.insights import AdvisorInsightService
from advisor.periods import current_month
from advisor.provider import ProviderError
from advisor.store import SqlFinanceStore, metadata

logger = logging.getLogger(__name__)

settings = AdvisorSettings.from_env()

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

engine = create_async_engine(settings.database_url)
insight_service = AdvisorInsightService(SqlFinanceStore(engine), settings=settings)


@app.on_event("startup")
async def on_startup() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    logger.info(
        "Advisor API started (provider=%s, configured=%s)",
        settings.provider,
        settings.provider_configured,
    )


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await engine.dispose()


def get_settings() -> AdvisorSettings:
    return settings


def get_insight_service() -> AdvisorInsightService:
    return insight_service


def get_user_id(x_user_id: str | None = Header(None, alias="x-user-id")) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    return str(user_id)


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/advisor/insights")
async def advisor_insights(
    month: str | None = Query(None),
    language: str = Query("tr"),
    regenerate: bool = Query(False),
    user_id: str = Depends(get_user_id),
    service: AdvisorInsightService = Depends(get_insight_service),
):
    target_month = month or current_month()
    try:
        insight = await service.generate_advisor_insight(
            user_id, target_month, language, regenerate=regenerate
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except AdvisorError as exc:
        headers = None
        if isinstance(exc, AdvisorRateLimitError):
            headers = {"Retry-After": str(exc.retry_after_sec)}
        raise HTTPException(status_code=exc.status_code, detail=exc.as_dict(), headers=headers) from exc
    return insight.model_dump(mode="json", by_alias=True)


@app.get("/advisor/provider-health")
async def advisor_provider_health(
    user_id: str = Depends(get_user_id),
    current_settings: AdvisorSettings = Depends(get_settings),
    service: AdvisorInsightService = Depends(get_insight_service),
):
    if current_settings.is_production:
        raise HTTPException(status_code=404, detail="Not found.")
    client = service.provider_client
    if client is None:
        return {"ok": False, "modelConfigured": False, "modelExists": False, "latencyMs": None}
    try:
        health = await client.check_health(sink=service.sink)
    except ProviderError as exc:
        raise HTTPException(
            status_code=502,
            detail={"reason": exc.reason, "providerStatus": exc.status, "message": str(exc)},
        ) from exc
    return {
        "ok": True,
        "provider": health.provider,
        "modelConfigured": True,
        "modelExists": health.model_exists,
        "latencyMs": health.latency_ms,
    }
