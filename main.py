import logging
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from models.schemas import (
    OptimizeRequest,
    OptimizeResult,
    RecalculateRequest,
    RecalculationResult,
    StoredItineraryResponse,
    TripOptimizeRequest,
    ValidateItineraryRequest,
    ValidateItineraryResponse,
)
from services.database import ItineraryPersistenceError
from services.itinerary_assembler import validate_itinerary
from services.optimizer import TripNotFoundError, optimizer_service
from utils.diagnostics import LoggingDiagnostics
from utils.json_encoder import NumpyJSONEncoder
import json

# 로깅 설정
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

diagnostics = LoggingDiagnostics()


# NumPy/날짜 타입을 처리하는 커스텀 JSONResponse
class NumpyJSONResponse(JSONResponse):
    def render(self, content) -> bytes:
        return json.dumps(
            content,
            cls=NumpyJSONEncoder,
            ensure_ascii=False,
            allow_nan=False,
            indent=None,
            separators=(",", ":"),
        ).encode("utf-8")


# FastAPI 앱 생성
app = FastAPI(
    title="Trip Itinerary Optimizer API",
    description="여행 일정 경로 최적화 API",
    version="1.0.0",
    default_response_class=NumpyJSONResponse,
)

# CORS 설정
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _persistence_http_error(e: ItineraryPersistenceError) -> HTTPException:
    return HTTPException(
        status_code=500,
        detail={"message": str(e), "degraded": e.degraded},
    )


@app.get("/")
async def root():
    """Health check 엔드포인트"""
    return {"status": "ok", "message": "Trip Itinerary Optimizer API is running"}


@app.post("/api/optimize", response_model=OptimizeResult)
async def optimize(request: OptimizeRequest):
    """
    DB 없이 요청 본문만으로 일정 최적화

    Args:
        request: 여행, 장소, 고정 일정, 옵션

    Returns:
        최적화 결과 (입력 오류는 success=False와 오류 코드로 반환)
    """
    logger.info(
        f"Received optimize request: trip={request.trip.id}, {len(request.places)} places, "
        f"{len(request.fixed_schedules)} fixed schedules"
    )
    return await optimizer_service.optimize(
        request.trip,
        request.places,
        request.fixed_schedules,
        use_external_provider=request.use_external_provider,
        config=request.options,
        diagnostics=diagnostics,
    )


@app.post("/api/trips/{trip_id}/optimize", response_model=OptimizeResult)
async def optimize_trip(trip_id: str, request: TripOptimizeRequest = None):
    """저장된 여행 최적화 후 일정 교체 (성공 시 상태 optimized)"""
    request = request or TripOptimizeRequest()
    try:
        return await optimizer_service.optimize_trip(
            trip_id,
            use_external_provider=request.use_external_provider,
            config=request.options,
            diagnostics=diagnostics,
        )
    except TripNotFoundError:
        raise HTTPException(status_code=404, detail="Trip not found")
    except ItineraryPersistenceError as e:
        logger.error(f"Failed to save optimized itinerary for trip {trip_id}: {str(e)}")
        raise _persistence_http_error(e)


@app.get("/api/trips/{trip_id}/itinerary", response_model=StoredItineraryResponse)
async def get_itinerary(trip_id: str):
    """저장된 일정 조회"""
    itinerary = optimizer_service.gateway.load_stored_itinerary(trip_id)
    if not itinerary and optimizer_service.gateway.load_trip(trip_id) is None:
        raise HTTPException(status_code=404, detail="Trip not found")
    return StoredItineraryResponse(trip_id=trip_id, itinerary=itinerary)


@app.post("/api/trips/{trip_id}/itinerary/recalculate", response_model=RecalculationResult)
async def recalculate_itinerary(trip_id: str, request: RecalculateRequest):
    """
    편집된 일정 재계산

    바뀐 구간만 외부 API로 조회하고, 일자별로 저장한 결과를 save_report로 반환한다.
    """
    logger.info(f"Received recalculate request: trip={trip_id}, {len(request.itineraries)} days")
    try:
        return await optimizer_service.recalculate_trip(
            trip_id,
            request.itineraries,
            save=request.save,
            diagnostics=diagnostics,
        )
    except TripNotFoundError:
        raise HTTPException(status_code=404, detail="Trip not found")


@app.post("/api/itinerary/validate", response_model=ValidateItineraryResponse)
async def validate(request: ValidateItineraryRequest):
    """일정 검증 (빈 날, 체류 시간, 일과 시간, 도착/출발 순서)"""
    issues = validate_itinerary(
        request.itineraries,
        request.daily_start_time,
        request.daily_end_time,
    )
    return ValidateItineraryResponse(is_valid=not issues, issues=issues)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8001, reload=True)
