import logging
import os
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from services.api.risk_service import RiskService
from services.api.schemas import BatchRiskRequest, ClusterRequest, EntityClusterRequest
from services.api.settings import ServiceSettings
from services.errors import AddressInvalid, BatchTooLarge, DataUnavailable, InvariantViolation

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def get_service(request: Request) -> RiskService:
    return request.app.state.service


def create_app(service: Optional[RiskService] = None) -> FastAPI:
    app = FastAPI(title="Wallet Risk Engine API", version="0.3.0")
    app.state.service = service or RiskService.from_settings(ServiceSettings.from_env())

    @app.on_event("startup")
    async def startup():
        s = app.state.service.settings
        logger.info("=" * 60)
        logger.info("Starting wallet risk API")
        logger.info(
            "TX_SOURCE=%s depth=%d cache_ttl=%ss max_batch=%d tz=%s",
            s.tx_source,
            s.graph_depth,
            s.cache_ttl_seconds,
            s.max_batch_size,
            s.reference_tz,
        )
        logger.info("=" * 60)

    @app.exception_handler(AddressInvalid)
    async def address_invalid(request: Request, exc: AddressInvalid):
        return JSONResponse(status_code=400, content={"error": exc.reason, "address": exc.address})

    @app.exception_handler(RequestValidationError)
    async def request_invalid(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400, content={"error": "invalid request", "details": jsonable_encoder(exc.errors())}
        )

    @app.exception_handler(BatchTooLarge)
    async def batch_too_large(request: Request, exc: BatchTooLarge):
        return JSONResponse(
            status_code=400,
            content={"error": str(exc), "size": exc.size, "limit": exc.limit},
        )

    @app.exception_handler(DataUnavailable)
    async def data_unavailable(request: Request, exc: DataUnavailable):
        logger.warning("Upstream data unavailable for %s: %s", request.url.path, exc)
        return JSONResponse(status_code=502, content={"error": str(exc)})

    @app.exception_handler(InvariantViolation)
    async def invariant_violation(request: Request, exc: InvariantViolation):
        logger.error(
            "Invariant violation on %s %s", request.method, request.url, exc_info=exc
        )
        return JSONResponse(status_code=500, content={"error": "internal consistency error"})

    @app.get("/health")
    def health(service: RiskService = Depends(get_service)):
        return {
            "status": "ok",
            "tx_source": service.settings.tx_source,
            "graph_depth": service.settings.graph_depth,
            "cache_entries": len(service.cache),
        }

    @app.get("/risk/score")
    def risk_score(
        address: Optional[str] = None,
        include_details: bool = Query(False, alias="includeDetails"),
        service: RiskService = Depends(get_service),
    ):
        return service.risk_query(address, include_details=include_details)

    @app.post("/risk/batch")
    def risk_batch(body: BatchRiskRequest, service: RiskService = Depends(get_service)):
        results = service.batch_risk_query(body.addresses, include_details=body.include_details)
        return {"results": results, "count": len(results)}

    @app.get("/risk/transaction")
    def risk_transaction(
        address: Optional[str] = None,
        tx_id: str = Query(..., alias="txId", min_length=1),
        service: RiskService = Depends(get_service),
    ):
        try:
            return service.transaction_risk_query(address, tx_id)
        except LookupError as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.get("/risk/explain")
    def risk_explain(address: Optional[str] = None, service: RiskService = Depends(get_service)):
        return service.explain_query(address)

    @app.post("/clusters")
    def clusters(body: ClusterRequest, service: RiskService = Depends(get_service)):
        try:
            result = service.cluster_query(
                address=body.address,
                graph=body.graph.model_dump(exclude_none=True) if body.graph else None,
                passes=body.passes,
                thresholds=body.thresholds.model_dump(exclude_none=True) if body.thresholds else None,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"clusters": result, "count": len(result)}

    @app.post("/entities/clusters")
    def entity_clusters(body: EntityClusterRequest, service: RiskService = Depends(get_service)):
        try:
            entities = [e.to_entity() for e in body.entities]
            result = service.entity_cluster_query(entities, min_similarity=body.min_similarity)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"clusters": result, "count": len(result)}

    @app.post("/cache/cleanup")
    def cache_cleanup(service: RiskService = Depends(get_service)):
        return {"evicted": service.cache.cleanup()}

    @app.get("/cache/stats")
    def cache_stats(service: RiskService = Depends(get_service)):
        return service.cache.stats()

    return app


app = create_app()
